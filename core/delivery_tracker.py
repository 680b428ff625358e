"""
📬 DeliveryTracker - cooldowns + suivi des messages livrés

- should_deliver / record_delivery : cooldown par (salon, entité)
- track_item_delivery : handle du message posté pour un item (clip)
- retract : supprime tous les messages d'un item puis efface le suivi

The cooldown is a rate-limit heuristic, not a lock: two concurrent
deliveries can both pass should_deliver before either records.
"""
import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Callable, List

from chat.base import ChatTarget, MessageGone
from core.models import DeliveryRecord, utcnow

if TYPE_CHECKING:
    from database.manager import DatabaseManager

LOGGER = logging.getLogger(__name__)


class DeliveryTracker:

    def __init__(self, db: "DatabaseManager", chat: ChatTarget,
                 clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.chat = chat
        self.clock = clock

    # ========================================================================
    # Cooldown
    # ========================================================================

    def should_deliver(self, channel_id: str, entity_name: str, cooldown_seconds: float) -> bool:
        """False iff the pair was delivered less than cooldown_seconds ago."""
        last = self.db.get_cooldown(channel_id, entity_name)
        if last is None:
            return True
        elapsed = (self.clock() - last).total_seconds()
        return elapsed >= cooldown_seconds

    def record_delivery(self, channel_id: str, entity_name: str) -> None:
        """Call only after a successful send."""
        self.db.set_cooldown(channel_id, entity_name, self.clock())

    # ========================================================================
    # Item deliveries
    # ========================================================================

    def track_item_delivery(self, item_id: str, channel_id: str, message_id: str,
                            entity_name: str, item_title: str = "") -> None:
        self.db.upsert_delivery(DeliveryRecord(
            item_id=item_id,
            channel_id=channel_id,
            message_id=message_id,
            entity_name=entity_name,
            item_title=item_title,
            created_at=self.clock(),
        ))

    def deliveries(self, item_id: str) -> List[DeliveryRecord]:
        return self.db.get_deliveries(item_id)

    def update_item_title(self, item_id: str, item_title: str) -> int:
        return self.db.update_delivery_title(item_id, item_title)

    def has_delivery(self, item_id: str, channel_id: str) -> bool:
        return self.db.get_delivery(item_id, channel_id) is not None

    def recent_item_ids(self, retention: timedelta) -> List[str]:
        """Items delivered within the retention window (older ones are not rechecked)."""
        return self.db.get_recent_delivery_item_ids(self.clock() - retention)

    async def retract(self, item_id: str) -> int:
        """
        Supprime les messages livrés pour un item.

        Every handle is attempted; failures are logged and do not block the
        final cleanup, which erases all records of the item.

        Returns:
            Nombre de messages effectivement supprimés
        """
        records = self.db.get_deliveries(item_id)
        if not records:
            return 0

        LOGGER.info(f"🗑️ Retracting {len(records)} message(s) for item {item_id}")
        removed = 0
        for record in records:
            try:
                await self.chat.delete(record.channel_id, record.message_id)
                removed += 1
                LOGGER.info(f"✅ Deleted message {record.message_id} in channel {record.channel_id}")
            except MessageGone:
                LOGGER.info(f"Message {record.message_id} was already deleted")
            except Exception as e:
                LOGGER.error(f"❌ Failed to delete message {record.message_id}: {e}")

        self.db.delete_deliveries(item_id)
        LOGGER.info(f"🧹 Cleaned up delivery records for item {item_id}")
        return removed
