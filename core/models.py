"""
📦 LiveRelay data model

Dataclasses for the rows the relay keeps in SQLite, plus the small
timestamp helpers shared by every component (all instants are UTC).
"""
import re
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional


# ============================================================================
# Constants
# ============================================================================

FOLLOW_LIVE = "live"
FOLLOW_CLIPS = "clips"
FOLLOW_KINDS = (FOLLOW_LIVE, FOLLOW_CLIPS)

EVENT_STREAM_ONLINE = "stream.online"
EVENT_CLIP_DELETE = "channel.clip.delete"

STATUS_ENABLED = "enabled"
STATUS_PENDING = "webhook_callback_verification_pending"
HEALTHY_STATUSES = frozenset({STATUS_ENABLED, STATUS_PENDING})

ENTITY_NAME_RE = re.compile(r"^[a-z0-9_]{1,25}$")
_EXTRA_FRACTION_RE = re.compile(r"(\.\d{6})\d+")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    """
    Serialize an aware datetime (naive values are taken as UTC).

    Fixed width so stored values compare correctly as text in SQL.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_iso(value: str) -> datetime:
    """Parse ISO-8601 as emitted by Helix ("...Z"), EventSub (nanoseconds) or to_iso()."""
    value = _EXTRA_FRACTION_RE.sub(r"\1", value.strip())
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def normalize_entity_name(name: str) -> str:
    return name.strip().lower()


def is_valid_entity_name(name: str) -> bool:
    return bool(ENTITY_NAME_RE.match(normalize_entity_name(name)))


# ============================================================================
# Rows
# ============================================================================

@dataclass
class DesiredFollow:
    """Deliver entity_name's events to channel_id (owned by guild_id)."""
    guild_id: str
    channel_id: str
    entity_name: str
    follow_kind: str = FOLLOW_LIVE
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "DesiredFollow":
        return cls(
            guild_id=row["guild_id"],
            channel_id=row["channel_id"],
            entity_name=row["entity_name"],
            follow_kind=row["follow_kind"],
            created_at=parse_iso(row["created_at"]),
        )


@dataclass
class RemoteSubscription:
    """Local mirror of a push subscription held by Twitch."""
    subscription_id: str
    entity_name: str
    entity_id: str
    event_kind: str
    status: str = STATUS_ENABLED
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_enabled(self) -> bool:
        return self.status == STATUS_ENABLED

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "RemoteSubscription":
        return cls(
            subscription_id=row["subscription_id"],
            entity_name=row["entity_name"],
            entity_id=row["entity_id"],
            event_kind=row["event_kind"],
            status=row["status"],
            created_at=parse_iso(row["created_at"]),
            updated_at=parse_iso(row["updated_at"]),
        )


@dataclass
class DeliveryRecord:
    """Message handle produced by delivering item_id to channel_id."""
    item_id: str
    channel_id: str
    message_id: str
    entity_name: str
    item_title: str = ""
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "DeliveryRecord":
        return cls(
            item_id=row["item_id"],
            channel_id=row["channel_id"],
            message_id=row["message_id"],
            entity_name=row["entity_name"],
            item_title=row["item_title"],
            created_at=parse_iso(row["created_at"]),
        )


@dataclass
class Credential:
    """App access token (+ optional refresh token) with its expiry."""
    access_token: str
    expires_at: datetime
    refresh_token: Optional[str] = None

    def is_expired(self, skew_seconds: int = 60) -> bool:
        return (self.expires_at - utcnow()).total_seconds() <= skew_seconds
