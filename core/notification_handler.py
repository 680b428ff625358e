"""
🔔 NotificationHandler - chemin de livraison commun (webhook + polling)

- stream.online : délai initial, retries sur /streams, payload dégradé,
  cooldown par salon
- clip créé : une livraison par salon, dédupliquée via DeliveryRecord
- clip supprimé : rétractation de tous les messages livrés
- clip renommé : édition des messages déjà livrés
"""
import asyncio
import logging
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, Optional, Tuple

from chat.base import ChatTarget, MessageGone
from core.config import LiveConfig
from core.delivery_tracker import DeliveryTracker
from core.message_builder import MessageBuilder
from core.models import (
    EVENT_CLIP_DELETE,
    EVENT_STREAM_ONLINE,
    FOLLOW_CLIPS,
    FOLLOW_LIVE,
    DesiredFollow,
    normalize_entity_name,
)

if TYPE_CHECKING:
    from database.manager import DatabaseManager
    from twitchapi.helix_client import HelixClient

LOGGER = logging.getLogger(__name__)

DEGRADED_STREAM = {"title": "Live Stream", "viewer_count": 0, "thumbnail_url": None}


class NotificationHandler:

    def __init__(
        self,
        db: "DatabaseManager",
        helix: "HelixClient",
        tracker: DeliveryTracker,
        builder: MessageBuilder,
        chat: ChatTarget,
        live_config: Optional[LiveConfig] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.db = db
        self.helix = helix
        self.tracker = tracker
        self.builder = builder
        self.chat = chat
        self.live_config = live_config or LiveConfig()
        self._sleep = sleep

    async def handle_notification(self, subscription: Dict[str, Any], event: Dict[str, Any]) -> None:
        """Dispatch a webhook notification by subscription type."""
        kind = subscription.get("type")
        if kind == EVENT_STREAM_ONLINE:
            await self.handle_stream_online(event)
        elif kind == EVENT_CLIP_DELETE:
            await self.handle_clip_deleted(event)
        else:
            LOGGER.warning(f"⚠️ Unhandled notification type: {kind}")

    # ========================================================================
    # Live
    # ========================================================================

    async def handle_stream_online(self, event: Dict[str, Any]) -> int:
        """
        Annonce un passage en live à tous les salons qui suivent le streamer.

        A live event always produces a delivery: when /streams never returns
        the stream, a degraded payload is announced.

        Returns:
            Nombre de salons notifiés
        """
        entity_name = normalize_entity_name(event.get("broadcaster_user_login", ""))
        entity_id = event.get("broadcaster_user_id", "")
        LOGGER.info(f"🔴 {event.get('broadcaster_user_name', entity_name)} went live")

        follows = self.db.get_entity_follows(entity_name, FOLLOW_LIVE)
        if not follows:
            LOGGER.warning(f"⚠️ No channels following {entity_name}, but received notification")
            return 0

        # preview image and category are often missing right after go-live
        await self._sleep(self.live_config.initial_delay)

        stream, game, follower_count = await self._fetch_stream_details(entity_name, entity_id, event)
        user = await self.helix.get_user_by_id(entity_id) if entity_id else None
        profile_image_url = user.get("profile_image_url") if user else None

        results = await asyncio.gather(*(
            self._deliver_live(follow, event, stream, game, follower_count, profile_image_url)
            for follow in follows
        ))
        delivered = sum(1 for ok in results if ok)
        LOGGER.info(f"📣 Live notification for {entity_name}: {delivered}/{len(follows)} channel(s)")
        return delivered

    async def _fetch_stream_details(
        self, entity_name: str, entity_id: str, event: Dict[str, Any]
    ) -> Tuple[Dict[str, Any], Optional[Dict[str, Any]], int]:
        max_attempts = max(1, self.live_config.max_attempts)
        for attempt in range(1, max_attempts + 1):
            if attempt > 1:
                LOGGER.info(f"🔄 Retrying stream data fetch for {entity_name} (attempt {attempt}/{max_attempts})")
                await self._sleep(self.live_config.retry_delay)

            stream = await self.helix.get_stream_by_user_id(entity_id)
            if stream:
                game = await self.helix.get_game_by_id(stream["game_id"]) if stream.get("game_id") else None
                follower_count = await self.helix.get_follower_count(entity_id)
                return stream, game, follower_count

        LOGGER.warning(
            f"⚠️ Could not fetch stream data for {entity_name} after {max_attempts} attempts, "
            f"sending basic notification"
        )
        category_id = event.get("category_id")
        game = await self.helix.get_game_by_id(category_id) if category_id else None
        follower_count = await self.helix.get_follower_count(entity_id) if entity_id else 0
        return dict(DEGRADED_STREAM), game, follower_count

    async def _deliver_live(
        self,
        follow: DesiredFollow,
        event: Dict[str, Any],
        stream: Dict[str, Any],
        game: Optional[Dict[str, Any]],
        follower_count: int,
        profile_image_url: Optional[str],
    ) -> bool:
        channel_id = follow.channel_id
        entity_name = follow.entity_name
        try:
            if not self.tracker.should_deliver(channel_id, entity_name, self.live_config.cooldown_seconds):
                LOGGER.info(f"⏳ Notification for {entity_name} in channel {channel_id} is on cooldown")
                return False

            payload = self.builder.build_stream_online(
                event, stream, game, follower_count, profile_image_url, guild_id=follow.guild_id
            )
            await self.chat.send(channel_id, payload)
            self.tracker.record_delivery(channel_id, entity_name)
            LOGGER.info(f"✅ Sent live notification for {entity_name} to channel {channel_id}")
            return True
        except Exception as e:
            LOGGER.error(f"❌ Failed to send live notification for {entity_name} to channel {channel_id}: {e}")
            return False

    # ========================================================================
    # Clips
    # ========================================================================

    async def handle_clip_created(self, clip: Dict[str, Any]) -> int:
        """
        Livre un clip à chaque salon abonné aux clips du streamer.

        Destinations that already hold a message for this clip are skipped.
        Per-destination failures are logged and do not raise.
        """
        item_id = clip["id"]
        entity_name = normalize_entity_name(clip.get("broadcaster_user_login", ""))
        follows = self.db.get_entity_follows(entity_name, FOLLOW_CLIPS)
        if not follows:
            LOGGER.info(f"No channels following {entity_name} for clips")
            return 0

        delivered = 0
        for follow in follows:
            if self.tracker.has_delivery(item_id, follow.channel_id):
                LOGGER.debug(f"Clip {item_id} already delivered to channel {follow.channel_id}")
                continue
            try:
                payload = self.builder.build_clip(clip, guild_id=follow.guild_id)
                message_id = await self.chat.send(follow.channel_id, payload)
                self.tracker.track_item_delivery(
                    item_id, follow.channel_id, message_id, entity_name, clip.get("title") or ""
                )
                delivered += 1
                LOGGER.info(f"✅ Sent clip {item_id} for {entity_name} to channel {follow.channel_id} (message: {message_id})")
            except Exception as e:
                LOGGER.error(f"❌ Failed to send clip notification to channel {follow.channel_id}: {e}")
        return delivered

    async def handle_clip_deleted(self, event: Dict[str, Any]) -> int:
        item_id = event.get("id") or event.get("clip_id")
        if not item_id:
            LOGGER.warning(f"⚠️ Clip deletion event without id: {event}")
            return 0
        return await self.tracker.retract(item_id)

    async def handle_clip_updated(self, clip: Dict[str, Any]) -> int:
        """
        Réédite les messages d'un clip dont le titre a changé.

        Returns:
            Nombre de messages édités
        """
        title = clip.get("title") or ""
        records = [r for r in self.tracker.deliveries(clip["id"]) if r.item_title != title]
        if not records:
            return 0

        edited = 0
        for record in records:
            follow = self.db.get_follow(record.channel_id, record.entity_name, FOLLOW_CLIPS)
            payload = self.builder.build_clip(clip, guild_id=follow.guild_id if follow else None)
            try:
                await self.chat.edit(record.channel_id, record.message_id, payload)
                edited += 1
            except MessageGone:
                LOGGER.info(f"Message {record.message_id} was already deleted")
            except Exception as e:
                LOGGER.error(f"❌ Failed to edit message {record.message_id}: {e}")

        self.tracker.update_item_title(clip["id"], title)
        LOGGER.info(f"✏️ Clip {clip['id']} renamed, {edited} message(s) edited")
        return edited
