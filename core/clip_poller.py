#!/usr/bin/env python3
"""
🎬 Clip Poller - Polling-based clip discovery

Twitch offers no push topic for new clips, so every poll_interval the
poller fetches a recent window of clips per followed streamer, delivers the
ones newer than the stored checkpoint (oldest first), then re-checks
recently delivered clips for deletion or renaming.
"""
import asyncio
import logging
import math
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Callable, Dict, FrozenSet, Iterable, List, Optional

from core.config import ClipsConfig
from core.models import FOLLOW_CLIPS, parse_iso, utcnow
from twitchapi.errors import HelixError, NotFoundError

if TYPE_CHECKING:
    from core.delivery_tracker import DeliveryTracker
    from core.notification_handler import NotificationHandler
    from database.manager import DatabaseManager
    from twitchapi.helix_client import HelixClient

LOGGER = logging.getLogger(__name__)


class AbsencePolicy:
    """
    Which lookup failures prove that a clip was deleted.

    Fail-safe open: an empty lookup or a status listed in
    `definitive_statuses` means deleted, anything else means "still exists".
    """

    def __init__(self, definitive_statuses: Iterable[int] = (400, 404)):
        self.definitive_statuses: FrozenSet[int] = frozenset(definitive_statuses)

    def is_absent(self, error: HelixError) -> bool:
        if isinstance(error, NotFoundError) and error.status is None:
            return True
        return error.status in self.definitive_statuses


@dataclass
class PollReport:
    entities: int = 0
    checked: int = 0
    failed: int = 0
    timed_out: int = 0
    new_items: int = 0
    deleted_items: int = 0
    duration_ms: int = 0
    skipped: List[str] = field(default_factory=list)


def clip_event(clip: Dict[str, Any], entity_name: str = "") -> Dict[str, Any]:
    """Helix clip → payload shaped like a webhook clip event."""
    return {
        "id": clip["id"],
        "url": clip.get("url"),
        "embed_url": clip.get("embed_url"),
        "broadcaster_user_id": clip.get("broadcaster_id"),
        "broadcaster_user_login": entity_name,
        "broadcaster_user_name": clip.get("broadcaster_name"),
        "creator_id": clip.get("creator_id"),
        "creator_name": clip.get("creator_name"),
        "game_id": clip.get("game_id"),
        "title": clip.get("title"),
        "view_count": clip.get("view_count"),
        "created_at": clip.get("created_at"),
        "thumbnail_url": clip.get("thumbnail_url"),
        "duration": clip.get("duration"),
    }


class ClipPoller:
    """
    Polls Helix /clips for every streamer with at least one clips follow.

    Each streamer is handled under its own timeout; a failure or a hang on
    one streamer is logged and the cycle moves on to the next.
    """

    def __init__(
        self,
        db: "DatabaseManager",
        helix: "HelixClient",
        handler: "NotificationHandler",
        tracker: "DeliveryTracker",
        config: Optional[ClipsConfig] = None,
        policy: Optional[AbsencePolicy] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Args:
            db: follows + checkpoints
            helix: Helix client for clip queries
            handler: shared delivery path (same as webhooks)
            tracker: delivery records for the deletion check
            config: intervals, windows, timeouts
            policy: definitive-absence rules for the deletion check
            clock: injectable for tests
        """
        self.db = db
        self.helix = helix
        self.handler = handler
        self.tracker = tracker
        self.config = config or ClipsConfig()
        self.policy = policy or AbsencePolicy(self.config.absent_statuses)
        self.clock = clock

        self._running = False
        self._task: Optional[asyncio.Task] = None
        self.last_report: Optional[PollReport] = None

        LOGGER.info(
            f"🎬 ClipPoller initialized - interval={self.config.poll_interval}s, "
            f"window={self.window_minutes()}min"
        )

    def window_minutes(self) -> int:
        """Query window: at least twice the poll interval."""
        return max(self.config.lookback_minutes, math.ceil(2 * self.config.poll_interval / 60))

    # ========================================================================
    # Lifecycle
    # ========================================================================

    async def start(self):
        if self._running:
            LOGGER.warning("⚠️ ClipPoller already running")
            return
        self._running = True
        self._task = asyncio.create_task(self._polling_loop())
        LOGGER.info("✅ ClipPoller started")

    async def stop(self):
        if not self._running:
            return
        LOGGER.info("🛑 Stopping ClipPoller...")
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        LOGGER.info("✅ ClipPoller stopped")

    async def _polling_loop(self):
        try:
            await asyncio.sleep(self.config.initial_delay)
            while self._running:
                try:
                    await self.poll_once()
                except Exception as e:
                    LOGGER.error(f"❌ Clip polling error: {e}", exc_info=True)
                await asyncio.sleep(self.config.poll_interval)
        except asyncio.CancelledError:
            LOGGER.debug("🛑 ClipPoller loop cancelled")

    # ========================================================================
    # Poll cycle
    # ========================================================================

    async def poll_once(self) -> PollReport:
        report = PollReport()
        start_time = time.time()

        entities = self.db.get_followed_entities(FOLLOW_CLIPS)
        report.entities = len(entities)
        if not entities:
            LOGGER.debug("No streamers being followed for clips")
        else:
            LOGGER.info(f"🔍 Checking clips for {len(entities)} streamer(s)")

        for entity_name in entities:
            try:
                report.new_items += await asyncio.wait_for(
                    self.check_entity(entity_name), timeout=self.config.entity_timeout
                )
                report.checked += 1
            except asyncio.TimeoutError:
                report.timed_out += 1
                report.skipped.append(entity_name)
                LOGGER.warning(f"⏱️ Clip check for {entity_name} timed out, skipped this cycle")
            except Exception as e:
                report.failed += 1
                report.skipped.append(entity_name)
                LOGGER.error(f"❌ Error checking clips for {entity_name}: {e}")

        try:
            report.deleted_items = await self.check_deleted_items()
        except Exception as e:
            LOGGER.error(f"❌ Error checking for deleted clips: {e}", exc_info=True)

        report.duration_ms = int((time.time() - start_time) * 1000)
        self.last_report = report
        LOGGER.info(
            f"✅ Clip polling completed: new={report.new_items}, deleted={report.deleted_items}, "
            f"failed={report.failed}, timed_out={report.timed_out}, duration={report.duration_ms}ms"
        )
        return report

    async def check_entity(self, entity_name: str) -> int:
        """
        Deliver clips newer than the checkpoint, oldest first.

        The checkpoint advances to the newest processed timestamp. If the
        delivery path raises, the batch stops and the checkpoint only covers
        timestamps strictly older than the failing clip.

        Returns:
            Number of clips processed
        """
        try:
            user = await self.helix.fetch_user(login=entity_name)
        except NotFoundError:
            LOGGER.warning(f"⚠️ Streamer {entity_name} not found")
            return 0

        checkpoint = self.db.get_checkpoint(entity_name)
        if checkpoint is None:
            checkpoint = self.clock() - timedelta(hours=self.config.default_lookback_hours)

        clips = await self.helix.get_recent_clips(user["id"], self.window_minutes())
        fresh = [c for c in clips if parse_iso(c["created_at"]) > checkpoint]
        if not fresh:
            LOGGER.debug(f"No new clips found for {entity_name}")
            return 0

        fresh.sort(key=lambda c: (parse_iso(c["created_at"]), c["id"]))
        LOGGER.info(f"🎬 Found {len(fresh)} new clip(s) for {entity_name}")

        processed: List[datetime] = []
        for clip in fresh:
            created_at = parse_iso(clip["created_at"])
            try:
                await self.handler.handle_clip_created(clip_event(clip, entity_name))
            except Exception as e:
                LOGGER.error(f"❌ Error processing clip {clip['id']}, stopping batch: {e}")
                processed = [t for t in processed if t < created_at]
                break
            processed.append(created_at)

        if processed:
            self.db.advance_checkpoint(entity_name, max(processed))
        return len(processed)

    async def check_deleted_items(self) -> int:
        """
        Re-check clips delivered within the retention window.

        Returns:
            Number of clips found deleted (and retracted)
        """
        item_ids = self.tracker.recent_item_ids(timedelta(days=self.config.retention_days))
        if not item_ids:
            return 0

        LOGGER.info(f"🔍 Checking {len(item_ids)} clip(s) for deletion...")
        deleted = 0
        for item_id in item_ids:
            try:
                clip = await self.helix.get_clip_by_id(item_id)
            except HelixError as e:
                if self.policy.is_absent(e):
                    LOGGER.info(f"🗑️ Clip {item_id} was deleted, removing messages")
                    await self.handler.handle_clip_deleted({"id": item_id})
                    deleted += 1
                else:
                    LOGGER.warning(f"⚠️ Could not verify clip {item_id} existence: {e}")
                continue
            except Exception as e:
                LOGGER.error(f"❌ Error checking clip {item_id}: {e}")
                continue

            try:
                await self.handler.handle_clip_updated(clip_event(clip))
            except Exception as e:
                LOGGER.error(f"❌ Error refreshing clip {item_id}: {e}")
        return deleted
