"""
👥 FollowService - opérations utilisateur follow / unfollow

Returns a FollowResult with a human-readable message instead of raising,
so the caller (chat command, relay_ctl) can show it as-is. A committed
follow row is never rolled back when the subscription step fails: every
operation is idempotent and can simply be retried.
"""
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, List, Optional

from core.models import (
    FOLLOW_CLIPS,
    FOLLOW_KINDS,
    FOLLOW_LIVE,
    DesiredFollow,
    is_valid_entity_name,
    normalize_entity_name,
)
from twitchapi.errors import HelixError

if TYPE_CHECKING:
    from core.reconciler import SubscriptionReconciler
    from database.manager import DatabaseManager
    from twitchapi.helix_client import HelixClient

LOGGER = logging.getLogger(__name__)


@dataclass
class FollowResult:
    ok: bool
    message: str
    entity_name: str = ""
    follow_kind: str = FOLLOW_LIVE


class FollowService:

    def __init__(self, db: "DatabaseManager", helix: "HelixClient",
                 reconciler: "SubscriptionReconciler"):
        self.db = db
        self.helix = helix
        self.reconciler = reconciler

    async def follow(self, guild_id: str, channel_id: str, entity_name: str,
                     follow_kind: str = FOLLOW_LIVE) -> FollowResult:
        """
        Suit un streamer dans un salon.

        The first follower of a streamer triggers the subscription create;
        a failure there is reported but the follow row is kept.
        """
        if follow_kind not in FOLLOW_KINDS:
            return FollowResult(False, f"Unknown follow kind: {follow_kind}", entity_name, follow_kind)

        name = normalize_entity_name(entity_name)
        if not is_valid_entity_name(name):
            return FollowResult(
                False,
                "Invalid streamer name. Use only letters, numbers and underscores (max 25 characters).",
                name, follow_kind,
            )

        if self.db.get_follow(channel_id, name, follow_kind):
            return FollowResult(False, f"This channel is already following {name} ({follow_kind}).", name, follow_kind)

        user = await self.helix.get_user_by_name(name)
        if not user:
            return FollowResult(False, f"Twitch user {name} was not found.", name, follow_kind)

        self.db.add_follow(guild_id, channel_id, name, follow_kind)
        LOGGER.info(f"➕ Channel {channel_id} now follows {name} ({follow_kind})")

        first_follower = self.db.count_entity_follows(name, follow_kind) == 1
        try:
            for event_kind in self.reconciler.required_event_kinds(follow_kind):
                await self.reconciler.ensure_subscribed(user["id"], name, event_kind)
        except HelixError as e:
            if not first_follower:
                LOGGER.warning(f"⚠️ Subscription check for {name} failed: {e}")
            else:
                LOGGER.error(f"❌ Subscription for {name} failed: {e}")
                return FollowResult(
                    False,
                    f"Now following {name}, but the Twitch subscription failed. "
                    f"It will be retried automatically.",
                    name, follow_kind,
                )

        label = "clips from" if follow_kind == FOLLOW_CLIPS else "live notifications for"
        return FollowResult(True, f"This channel will now receive {label} {user.get('display_name', name)}.", name, follow_kind)

    async def unfollow(self, channel_id: str, entity_name: str,
                       follow_kind: str = FOLLOW_LIVE) -> FollowResult:
        """
        Arrête de suivre un streamer.

        The last follower leaving releases the subscription (and, for clips,
        the poll checkpoint).
        """
        name = normalize_entity_name(entity_name)
        if not self.db.remove_follow(channel_id, name, follow_kind):
            return FollowResult(False, f"This channel is not following {name} ({follow_kind}).", name, follow_kind)
        LOGGER.info(f"➖ Channel {channel_id} unfollowed {name} ({follow_kind})")

        if self.db.count_entity_follows(name, follow_kind) > 0:
            return FollowResult(True, f"Stopped following {name}.", name, follow_kind)

        if follow_kind == FOLLOW_CLIPS:
            self.db.delete_checkpoint(name)

        try:
            for event_kind in self.reconciler.required_event_kinds(follow_kind):
                await self.reconciler.release_if_unneeded(name, event_kind)
        except HelixError as e:
            LOGGER.error(f"❌ Unsubscribe for {name} failed: {e}")
            return FollowResult(
                False,
                f"Stopped following {name}, but removing the Twitch subscription failed. "
                f"It will be cleaned up automatically.",
                name, follow_kind,
            )
        return FollowResult(True, f"Stopped following {name}.", name, follow_kind)

    async def follow_clips(self, guild_id: str, channel_id: str, entity_name: str) -> FollowResult:
        return await self.follow(guild_id, channel_id, entity_name, FOLLOW_CLIPS)

    async def unfollow_clips(self, channel_id: str, entity_name: str) -> FollowResult:
        return await self.unfollow(channel_id, entity_name, FOLLOW_CLIPS)

    def list_follows(self, channel_id: str, follow_kind: Optional[str] = None) -> List[DesiredFollow]:
        return self.db.get_channel_follows(channel_id, follow_kind)
