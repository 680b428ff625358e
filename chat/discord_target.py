"""
Discord ChatTarget (discord.py)

Owns the Discord gateway connection used to post, edit and delete relay
messages. Runs inside the relay's event loop.
"""
import asyncio
import logging
from typing import Optional

import discord

from chat.base import ChatError, ChatPayload, ChatTarget, MessageGone

LOGGER = logging.getLogger(__name__)

UNKNOWN_MESSAGE = 10008
UNKNOWN_CHANNEL = 10003


class DiscordTarget(ChatTarget):
    """Thin wrapper around discord.Client."""

    def __init__(self, token: str, ready_timeout: float = 60.0):
        if not token:
            raise RuntimeError("Discord token missing (discord.token or DISCORD_TOKEN)")
        self._token = token
        self._ready_timeout = ready_timeout
        self.client = discord.Client(intents=discord.Intents.default())
        self._task: Optional[asyncio.Task] = None

        @self.client.event
        async def on_ready():
            LOGGER.info(f"✅ Discord connected as {self.client.user} ({len(self.client.guilds)} guilds)")

    async def start(self) -> None:
        if self._task:
            raise RuntimeError("Discord client already running")
        self._task = asyncio.create_task(self.client.start(self._token))
        await asyncio.wait_for(self.client.wait_until_ready(), timeout=self._ready_timeout)

    async def close(self) -> None:
        if self._task is None:
            return
        LOGGER.info("🛑 Closing Discord client...")
        await self.client.close()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _channel(self, channel_id: str) -> discord.abc.Messageable:
        channel = self.client.get_channel(int(channel_id))
        if channel is None:
            try:
                channel = await self.client.fetch_channel(int(channel_id))
            except discord.NotFound as e:
                raise MessageGone(f"Channel {channel_id} not found") from e
            except discord.HTTPException as e:
                raise ChatError(f"Cannot fetch channel {channel_id}: {e}") from e

        if not isinstance(channel, discord.abc.Messageable):
            raise ChatError(f"Channel {channel_id} is not messageable")
        return channel

    @staticmethod
    def _embed(payload: ChatPayload) -> Optional[discord.Embed]:
        return discord.Embed.from_dict(payload.embed) if payload.embed else None

    async def send(self, channel_id: str, payload: ChatPayload) -> str:
        channel = await self._channel(channel_id)
        try:
            message = await channel.send(content=payload.content or None, embed=self._embed(payload))
        except discord.Forbidden as e:
            raise ChatError(f"No permission to send in channel {channel_id}") from e
        except discord.HTTPException as e:
            raise ChatError(f"Send failed in channel {channel_id}: {e}") from e
        return str(message.id)

    async def edit(self, channel_id: str, message_id: str, payload: ChatPayload) -> None:
        channel = await self._channel(channel_id)
        message = channel.get_partial_message(int(message_id))
        try:
            await message.edit(content=payload.content or None, embed=self._embed(payload))
        except discord.NotFound as e:
            raise MessageGone(f"Message {message_id} already deleted") from e
        except discord.HTTPException as e:
            raise ChatError(f"Edit failed for message {message_id}: {e}") from e

    async def delete(self, channel_id: str, message_id: str) -> None:
        channel = await self._channel(channel_id)
        message = channel.get_partial_message(int(message_id))
        try:
            await message.delete()
        except discord.NotFound as e:
            raise MessageGone(f"Message {message_id} already deleted") from e
        except discord.HTTPException as e:
            if e.code in (UNKNOWN_MESSAGE, UNKNOWN_CHANNEL):
                raise MessageGone(f"Message {message_id} already deleted") from e
            raise ChatError(f"Delete failed for message {message_id}: {e}") from e
