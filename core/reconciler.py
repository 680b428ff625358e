"""
🔁 SubscriptionReconciler - ledger local ⇔ registre Twitch ⇔ follows

Three sources of truth are kept consistent:
- les subscriptions EventSub détenues par Twitch (filtrées sur notre callback)
- le ledger local (table remote_subscriptions)
- l'ensemble requis, dérivé des follows (une subscription par entité et type)

Every read-modify-write on an entity runs under that entity's lock, so the
sweep never interleaves with a follow/unfollow on the same streamer.
Sweep failures are logged and counted; they never leave the sweep.
"""
import asyncio
import logging
import random
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from core.config import ReconcileConfig
from core.keyed_lock import KeyedLock
from core.models import (
    EVENT_CLIP_DELETE,
    EVENT_STREAM_ONLINE,
    FOLLOW_CLIPS,
    FOLLOW_KINDS,
    FOLLOW_LIVE,
    HEALTHY_STATUSES,
    STATUS_ENABLED,
    RemoteSubscription,
    normalize_entity_name,
    utcnow,
)
from twitchapi.errors import ConflictError, HelixError, NotFoundError, TransientError

if TYPE_CHECKING:
    from database.manager import DatabaseManager
    from twitchapi.helix_client import HelixClient

LOGGER = logging.getLogger(__name__)

EVENT_FOLLOW_KIND = {
    EVENT_STREAM_ONLINE: FOLLOW_LIVE,
    EVENT_CLIP_DELETE: FOLLOW_CLIPS,
}


@dataclass
class SweepReport:
    remote_count: int = 0
    local_count: int = 0
    required_count: int = 0
    adopted: int = 0
    created: int = 0
    deleted_remote: int = 0
    dropped_local: int = 0
    errors: int = 0
    timed_out: bool = False
    duration_ms: int = 0
    skipped: List[str] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "remote": self.remote_count,
            "local": self.local_count,
            "required": self.required_count,
            "adopted": self.adopted,
            "created": self.created,
            "deleted_remote": self.deleted_remote,
            "dropped_local": self.dropped_local,
            "errors": self.errors,
            "timed_out": self.timed_out,
            "duration_ms": self.duration_ms,
        }


class SubscriptionReconciler:

    def __init__(
        self,
        db: "DatabaseManager",
        helix: "HelixClient",
        config: Optional[ReconcileConfig] = None,
        clip_deletion_webhooks: bool = False,
        locks: Optional[KeyedLock] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.helix = helix
        self.config = config or ReconcileConfig()
        self.clip_deletion_webhooks = clip_deletion_webhooks
        self.locks = locks or KeyedLock()
        self._sleep = sleep
        self._clock = clock

        self._sweep_lock = asyncio.Lock()
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self.last_report: Optional[SweepReport] = None

    # ========================================================================
    # Required set
    # ========================================================================

    def required_event_kinds(self, follow_kind: str) -> Tuple[str, ...]:
        """Event kinds a follow of this kind needs Twitch to push."""
        if follow_kind == FOLLOW_LIVE:
            return (EVENT_STREAM_ONLINE,)
        if follow_kind == FOLLOW_CLIPS and self.clip_deletion_webhooks:
            return (EVENT_CLIP_DELETE,)
        return ()

    def required_pairs(self) -> Set[Tuple[str, str]]:
        pairs = set()
        for follow_kind in FOLLOW_KINDS:
            event_kinds = self.required_event_kinds(follow_kind)
            if not event_kinds:
                continue
            for entity_name in self.db.get_followed_entities(follow_kind):
                for event_kind in event_kinds:
                    pairs.add((entity_name, event_kind))
        return pairs

    def is_required(self, entity_name: str, event_kind: str) -> bool:
        follow_kind = EVENT_FOLLOW_KIND.get(event_kind)
        if follow_kind is None or event_kind not in self.required_event_kinds(follow_kind):
            return False
        return self.db.count_entity_follows(entity_name, follow_kind) > 0

    # ========================================================================
    # Ensure subscribed / unsubscribed
    # ========================================================================

    async def ensure_subscribed(self, entity_id: str, entity_name: str,
                                event_kind: str) -> Optional[RemoteSubscription]:
        """
        Garantit une subscription active pour (entity_name, event_kind).

        Idempotent. Transient failures are retried with backoff, then raised
        to the caller (this path serves a user action).

        Returns:
            La subscription locale, ou None si Twitch signale un conflit
            sans qu'on retrouve la subscription existante
        """
        entity_name = normalize_entity_name(entity_name)
        async with self.locks.hold(entity_name):
            return await self._ensure_subscribed_locked(
                entity_id, entity_name, event_kind, attempts=self.config.create_attempts
            )

    async def _ensure_subscribed_locked(self, entity_id: str, entity_name: str,
                                        event_kind: str, attempts: int = 1) -> Optional[RemoteSubscription]:
        existing = self.db.get_subscription(entity_name, event_kind)
        if existing and existing.is_enabled:
            return existing

        condition = {"broadcaster_user_id": entity_id}
        attempts = max(1, attempts)
        remote = None
        for attempt in range(1, attempts + 1):
            try:
                remote = await self.helix.create_subscription(event_kind, condition)
                break
            except ConflictError:
                return await self._adopt_existing(entity_id, entity_name, event_kind)
            except TransientError as e:
                if attempt >= attempts:
                    raise
                delay = self.config.create_backoff * (2 ** (attempt - 1))
                LOGGER.warning(
                    f"⚠️ Create {event_kind} for {entity_name} failed ({e}), "
                    f"retry {attempt + 1}/{attempts} in {delay:.1f}s"
                )
                await self._sleep(delay)

        subscription = RemoteSubscription(
            subscription_id=remote["id"],
            entity_name=entity_name,
            entity_id=entity_id,
            event_kind=event_kind,
            status=STATUS_ENABLED,
        )
        self.db.upsert_subscription(subscription)
        self.db.log_audit("subscription_created", {
            "subscription_id": subscription.subscription_id,
            "entity_name": entity_name,
            "event_kind": event_kind,
            "remote_status": remote.get("status"),
        })
        LOGGER.info(f"✅ Subscribed {event_kind} for {entity_name} ({subscription.subscription_id})")
        return subscription

    async def _adopt_existing(self, entity_id: str, entity_name: str,
                              event_kind: str) -> Optional[RemoteSubscription]:
        LOGGER.info(f"🔎 {event_kind} for {entity_name} already exists on Twitch, looking it up...")
        remote = await self.helix.find_subscription(event_kind, entity_id)
        if remote is None:
            LOGGER.warning(
                f"⚠️ Conflict for {entity_name} ({event_kind}) but no enabled subscription found, "
                f"continuing without local record"
            )
            return None
        return self._adopt(remote, entity_name)

    def _adopt(self, remote: Dict[str, Any], entity_name: str) -> RemoteSubscription:
        subscription = RemoteSubscription(
            subscription_id=remote["id"],
            entity_name=entity_name,
            entity_id=(remote.get("condition") or {}).get("broadcaster_user_id", ""),
            event_kind=remote["type"],
            status=STATUS_ENABLED,
        )
        self.db.upsert_subscription(subscription)
        self.db.log_audit("subscription_adopted", {
            "subscription_id": subscription.subscription_id,
            "entity_name": entity_name,
            "event_kind": subscription.event_kind,
        })
        LOGGER.info(f"🔗 Adopted {subscription.event_kind} for {entity_name} ({subscription.subscription_id})")
        return subscription

    async def ensure_unsubscribed(self, entity_name: str, event_kind: str) -> bool:
        """
        Supprime la subscription (Twitch puis locale).

        A 404 from Twitch counts as already deleted. Other failures keep the
        local record (the sweep retries it) and are raised.

        Returns:
            True si une subscription locale existait
        """
        entity_name = normalize_entity_name(entity_name)
        async with self.locks.hold(entity_name):
            return await self._ensure_unsubscribed_locked(entity_name, event_kind)

    async def release_if_unneeded(self, entity_name: str, event_kind: str) -> bool:
        """ensure_unsubscribed, unless a follow came back before we got the lock."""
        entity_name = normalize_entity_name(entity_name)
        async with self.locks.hold(entity_name):
            if self.is_required(entity_name, event_kind):
                return False
            return await self._ensure_unsubscribed_locked(entity_name, event_kind)

    async def _ensure_unsubscribed_locked(self, entity_name: str, event_kind: str) -> bool:
        existing = self.db.get_subscription(entity_name, event_kind)
        if existing is None:
            return False

        try:
            await self.helix.delete_subscription(existing.subscription_id)
        except NotFoundError:
            LOGGER.info(f"Subscription {existing.subscription_id} already gone on Twitch")

        self.db.delete_subscription(entity_name, event_kind)
        self.db.log_audit("subscription_deleted", {
            "subscription_id": existing.subscription_id,
            "entity_name": entity_name,
            "event_kind": event_kind,
        })
        LOGGER.info(f"🗑️ Unsubscribed {event_kind} for {entity_name}")
        return True

    async def revoke(self, subscription: Dict[str, Any]) -> bool:
        """
        Révocation initiée par Twitch: supprime la ligne locale, ne recrée rien.

        Returns:
            True si une ligne locale a été supprimée
        """
        subscription_id = subscription.get("id", "")
        reason = subscription.get("status", "unknown")
        local = self.db.get_subscription_by_id(subscription_id)
        if local is None:
            LOGGER.info(f"Revocation for unknown subscription {subscription_id} ({reason})")
            return False

        async with self.locks.hold(local.entity_name):
            removed = self.db.delete_subscription_by_id(subscription_id)

        self.db.log_audit("subscription_revoked", {
            "subscription_id": subscription_id,
            "entity_name": local.entity_name,
            "event_kind": local.event_kind,
            "reason": reason,
        }, severity="warning")
        LOGGER.warning(f"⚠️ Subscription {local.event_kind} for {local.entity_name} revoked by Twitch ({reason})")
        return removed

    # ========================================================================
    # Full sweep
    # ========================================================================

    async def sweep(self) -> SweepReport:
        """
        Réconciliation complète, bornée par sweep_timeout.

        Sweeps never overlap; a second caller waits for the running one.
        """
        report = SweepReport()
        start_time = time.time()
        async with self._sweep_lock:
            try:
                await asyncio.wait_for(self._sweep(report), timeout=self.config.sweep_timeout)
            except asyncio.TimeoutError:
                report.timed_out = True
                LOGGER.error(f"⏱️ Sweep timed out after {self.config.sweep_timeout}s")

        report.duration_ms = int((time.time() - start_time) * 1000)
        self.last_report = report
        LOGGER.info(
            f"✅ Sweep complete: adopted={report.adopted}, created={report.created}, "
            f"deleted_remote={report.deleted_remote}, dropped_local={report.dropped_local}, "
            f"errors={report.errors}, duration={report.duration_ms}ms"
        )
        self.db.log_audit("subscription_sweep", report.as_dict(),
                          severity="error" if report.errors or report.timed_out else "info")
        return report

    async def _sweep(self, report: SweepReport) -> None:
        LOGGER.info("🔍 Starting subscription sweep...")
        listing_started = self._clock()
        try:
            remote_all = await self.helix.list_owned_subscriptions()
        except HelixError as e:
            report.errors += 1
            LOGGER.error(f"❌ Sweep aborted, cannot list remote subscriptions: {e}")
            return

        healthy = [s for s in remote_all if s.get("status") in HEALTHY_STATUSES]
        unhealthy = [s for s in remote_all if s.get("status") not in HEALTHY_STATUSES]
        healthy_ids = {s["id"] for s in healthy}

        local = self.db.list_subscriptions()
        local_ids = {s.subscription_id for s in local}
        required = self.required_pairs()

        report.remote_count = len(remote_all)
        report.local_count = len(local)
        report.required_count = len(required)
        LOGGER.info(
            f"📊 Sweep: remote={len(remote_all)} ({len(unhealthy)} unhealthy), "
            f"local={len(local)}, required={len(required)}"
        )

        for remote in unhealthy:
            await self._guarded(report, f"unhealthy {remote.get('id')}",
                                self._remove_unhealthy(remote, report))

        names: Dict[str, str] = {}
        for remote in healthy:
            if remote["id"] in local_ids:
                continue
            await self._guarded(report, f"remote {remote['id']}",
                                self._sync_remote(remote, healthy_ids, names, report))

        for subscription in local:
            if subscription.subscription_id in healthy_ids:
                continue
            await self._guarded(report, f"local {subscription.subscription_id}",
                                self._drop_stale_local(subscription, listing_started, report))

        for subscription in self.db.list_subscriptions():
            if (subscription.entity_name, subscription.event_kind) in required:
                continue
            await self._guarded(report, f"unneeded {subscription.entity_name}",
                                self._release_unneeded(subscription, report))

        for entity_name, event_kind in sorted(self.required_pairs()):
            await self._guarded(report, f"required {entity_name}/{event_kind}",
                                self._create_missing(entity_name, event_kind, report))

    async def _guarded(self, report: SweepReport, label: str, step: Awaitable[None]) -> None:
        try:
            await step
        except asyncio.CancelledError:
            raise
        except Exception as e:
            report.errors += 1
            report.skipped.append(label)
            LOGGER.error(f"❌ Sweep step failed ({label}): {e}")

    async def _delete_remote(self, subscription_id: str, report: SweepReport) -> None:
        try:
            await self.helix.delete_subscription(subscription_id)
        except NotFoundError:
            pass
        report.deleted_remote += 1

    async def _remove_unhealthy(self, remote: Dict[str, Any], report: SweepReport) -> None:
        LOGGER.info(f"🧹 Removing {remote.get('type')} {remote['id']} in status {remote.get('status')}")
        await self._delete_remote(remote["id"], report)
        local = self.db.get_subscription_by_id(remote["id"])
        if local is None:
            return
        async with self.locks.hold(local.entity_name):
            if self.db.delete_subscription_by_id(remote["id"]):
                report.dropped_local += 1

    async def _resolve_name(self, entity_id: str, names: Dict[str, str]) -> str:
        if entity_id not in names:
            user = await self.helix.fetch_user(user_id=entity_id)
            names[entity_id] = normalize_entity_name(user["login"])
        return names[entity_id]

    async def _sync_remote(self, remote: Dict[str, Any], healthy_ids: Set[str],
                           names: Dict[str, str], report: SweepReport) -> None:
        """Remote subscription with no local record: adopt it or delete it."""
        event_kind = remote.get("type", "")
        entity_id = (remote.get("condition") or {}).get("broadcaster_user_id", "")
        try:
            entity_name = await self._resolve_name(entity_id, names)
        except NotFoundError:
            LOGGER.info(f"🧹 Deleting {event_kind} {remote['id']}: broadcaster {entity_id} no longer exists")
            await self._delete_remote(remote["id"], report)
            return

        async with self.locks.hold(entity_name):
            current = self.db.get_subscription(entity_name, event_kind)
            backed = current is not None and current.is_enabled and current.subscription_id in healthy_ids
            if self.is_required(entity_name, event_kind) and not backed:
                self._adopt(remote, entity_name)
                report.adopted += 1
                return

            reason = "duplicate" if backed else "orphan"
            LOGGER.info(f"🧹 Deleting {reason} {event_kind} for {entity_name} ({remote['id']})")
            await self._delete_remote(remote["id"], report)

    async def _drop_stale_local(self, subscription: RemoteSubscription,
                                listing_started: datetime, report: SweepReport) -> None:
        """Local record unknown to Twitch; rows written after the listing started are kept."""
        async with self.locks.hold(subscription.entity_name):
            if self.db.delete_subscription_by_id(subscription.subscription_id, updated_before=listing_started):
                report.dropped_local += 1
                LOGGER.info(
                    f"🧹 Dropped stale local {subscription.event_kind} for "
                    f"{subscription.entity_name} ({subscription.subscription_id})"
                )

    async def _release_unneeded(self, subscription: RemoteSubscription, report: SweepReport) -> None:
        async with self.locks.hold(subscription.entity_name):
            if self.is_required(subscription.entity_name, subscription.event_kind):
                return
            if await self._ensure_unsubscribed_locked(subscription.entity_name, subscription.event_kind):
                report.deleted_remote += 1
                report.dropped_local += 1

    async def _create_missing(self, entity_name: str, event_kind: str, report: SweepReport) -> None:
        async with self.locks.hold(entity_name):
            existing = self.db.get_subscription(entity_name, event_kind)
            if existing and existing.is_enabled:
                return
            if not self.is_required(entity_name, event_kind):
                return
            try:
                user = await self.helix.fetch_user(login=entity_name)
            except NotFoundError:
                LOGGER.warning(f"⚠️ Followed streamer {entity_name} does not exist on Twitch")
                return
            created = await self._ensure_subscribed_locked(user["id"], entity_name, event_kind)
            if created is not None:
                report.created += 1

    # ========================================================================
    # Periodic loop
    # ========================================================================

    async def start(self) -> None:
        if self._running:
            LOGGER.warning("⚠️ Reconciler already running")
            return
        self._running = True
        self._task = asyncio.create_task(self._reconciliation_loop())

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        LOGGER.info("✅ Reconciler stopped")

    async def _reconciliation_loop(self) -> None:
        """Sweep at startup, then every sweep_interval (+ jitter)."""
        LOGGER.info(f"🔄 Reconciliation loop started (interval={self.config.sweep_interval}s)")
        while self._running:
            try:
                await self.sweep()
            except asyncio.CancelledError:
                break
            except Exception as e:
                LOGGER.error(f"❌ Reconciliation error: {e}", exc_info=True)

            if self.config.sweep_interval <= 0:
                LOGGER.info("Periodic sweep disabled, startup sweep done")
                break
            jitter = random.uniform(0, self.config.jitter_seconds)
            try:
                await asyncio.sleep(self.config.sweep_interval + jitter)
            except asyncio.CancelledError:
                break
        LOGGER.info("🛑 Reconciliation loop stopped")
