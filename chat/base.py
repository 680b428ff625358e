"""
💬 Chat delivery target - interface

The relay only needs three operations from a chat platform: send a
message to a channel, edit it, delete it. "Already gone" on edit/delete is
reported as MessageGone so callers can treat it as success.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional


class ChatError(Exception):
    """The chat platform refused or failed the operation."""


class MessageGone(ChatError):
    """The message (or its channel) no longer exists."""


@dataclass
class ChatPayload:
    """Texte + embed optionnel (dict au format embed Discord)."""
    content: str = ""
    embed: Optional[Dict[str, Any]] = None


class ChatTarget(ABC):
    """Destination des notifications (un salon = un channel_id)."""

    @abstractmethod
    async def send(self, channel_id: str, payload: ChatPayload) -> str:
        """Post a message and return its handle (message id)."""

    @abstractmethod
    async def edit(self, channel_id: str, message_id: str, payload: ChatPayload) -> None:
        ...

    @abstractmethod
    async def delete(self, channel_id: str, message_id: str) -> None:
        """Raises MessageGone when the message was already removed."""

    async def start(self) -> None:
        pass

    async def close(self) -> None:
        pass
