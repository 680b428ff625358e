"""
Pytest configuration for CI tests
Provides common fixtures: temp database, fake chat target, fake clock, mocked Helix
"""
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from chat.base import ChatError, ChatPayload, ChatTarget, MessageGone
from database.manager import DatabaseManager
from twitchapi.helix_client import HelixClient

NOW = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Callable clock that tests move forward by hand."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeChat(ChatTarget):
    """In-memory chat target recording every send / edit / delete."""

    def __init__(self):
        self.sent = []      # (channel_id, payload, message_id)
        self.edited = []    # (channel_id, message_id, payload)
        self.deleted = []   # (channel_id, message_id)
        self.fail_channels = set()
        self.gone_messages = set()
        self.broken_messages = set()
        self._counter = 0

    async def send(self, channel_id: str, payload: ChatPayload) -> str:
        if channel_id in self.fail_channels:
            raise ChatError(f"cannot post in {channel_id}")
        self._counter += 1
        message_id = f"msg-{self._counter}"
        self.sent.append((channel_id, payload, message_id))
        return message_id

    async def edit(self, channel_id: str, message_id: str, payload: ChatPayload) -> None:
        if message_id in self.gone_messages:
            raise MessageGone(message_id)
        self.edited.append((channel_id, message_id, payload))

    async def delete(self, channel_id: str, message_id: str) -> None:
        if message_id in self.gone_messages:
            raise MessageGone(message_id)
        if message_id in self.broken_messages:
            raise ChatError(f"cannot delete {message_id}")
        self.deleted.append((channel_id, message_id))

    def sent_to(self, channel_id: str):
        return [s for s in self.sent if s[0] == channel_id]


@pytest.fixture
def db(tmp_path):
    """Fresh SQLite database (schema applied) in a temp dir."""
    return DatabaseManager(str(tmp_path / "test.db"), key_file=str(tmp_path / "test.key"))


@pytest.fixture
def chat():
    return FakeChat()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def helix():
    """HelixClient mock: async methods are AsyncMocks, owns() is a plain mock."""
    mock = MagicMock(spec=HelixClient)
    mock.get_user_by_name.return_value = None
    mock.get_user_by_id.return_value = None
    mock.get_stream_by_user_id.return_value = None
    mock.get_game_by_id.return_value = None
    mock.get_follower_count.return_value = 0
    mock.list_owned_subscriptions.return_value = []
    mock.find_subscription.return_value = None
    return mock


def remote_subscription(sub_id: str, entity_id: str, event_kind: str = "stream.online",
                        status: str = "enabled") -> dict:
    """Subscription object as listed by Helix."""
    return {
        "id": sub_id,
        "type": event_kind,
        "version": "1",
        "status": status,
        "condition": {"broadcaster_user_id": entity_id},
        "transport": {"method": "webhook", "callback": "https://relay.test/webhook"},
    }
