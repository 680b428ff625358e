"""
Tests ClipPoller (checkpoint, ordre, suppression) + AbsencePolicy
"""
import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, Mock

import pytest

from conftest import NOW
from core.clip_poller import AbsencePolicy, ClipPoller, clip_event
from core.config import AnnouncementConfig, ClipsConfig, LiveConfig
from core.delivery_tracker import DeliveryTracker
from core.message_builder import MessageBuilder
from core.notification_handler import NotificationHandler
from twitchapi.errors import HelixError, NotFoundError, TransientError, UnauthorizedError

T = NOW - timedelta(hours=1)


def clip(clip_id, created_at, title="A clip"):
    return {
        "id": clip_id,
        "url": f"https://clips.twitch.tv/{clip_id}",
        "broadcaster_id": "100",
        "broadcaster_name": "Alpha",
        "creator_name": "viewer",
        "title": title,
        "created_at": created_at.strftime("%Y-%m-%dT%H:%M:%SZ"),
    }


@pytest.fixture
def handler():
    mock = Mock()
    mock.handle_clip_created = AsyncMock(return_value=1)
    mock.handle_clip_deleted = AsyncMock(return_value=1)
    mock.handle_clip_updated = AsyncMock(return_value=0)
    return mock


@pytest.fixture
def poller(db, helix, handler, chat, clock):
    helix.fetch_user.return_value = {"id": "100", "login": "alpha"}
    db.add_follow("g1", "c1", "alpha", "clips")
    tracker = DeliveryTracker(db, chat, clock=clock)
    return ClipPoller(db, helix, handler, tracker, ClipsConfig(entity_timeout=1.0), clock=clock)


def created_ids(handler):
    return [c.args[0]["id"] for c in handler.handle_clip_created.await_args_list]


@pytest.mark.unit
class TestAbsencePolicy:

    def test_defaults(self):
        policy = AbsencePolicy()
        assert policy.is_absent(NotFoundError("empty lookup")) is True
        assert policy.is_absent(NotFoundError("404", 404)) is True
        assert policy.is_absent(HelixError("bad request", 400)) is True

    def test_transient_failures_mean_present(self):
        policy = AbsencePolicy()
        assert policy.is_absent(TransientError("timeout")) is False
        assert policy.is_absent(TransientError("503", 503)) is False
        assert policy.is_absent(UnauthorizedError("401", 401)) is False
        assert policy.is_absent(HelixError("forbidden", 403)) is False

    def test_configurable_statuses(self):
        policy = AbsencePolicy(definitive_statuses=[404])
        assert policy.is_absent(HelixError("bad request", 400)) is False
        assert policy.is_absent(NotFoundError("404", 404)) is True


@pytest.mark.unit
class TestWindow:

    def test_window_is_at_least_twice_the_interval(self, db, helix, handler, chat):
        tracker = DeliveryTracker(db, chat)
        assert ClipPoller(db, helix, handler, tracker, ClipsConfig(poll_interval=300)).window_minutes() == 120
        assert ClipPoller(db, helix, handler, tracker, ClipsConfig(poll_interval=7200)).window_minutes() == 240

    def test_clip_event_shape(self):
        event = clip_event(clip("c1", T), "alpha")
        assert event["broadcaster_user_login"] == "alpha"
        assert event["broadcaster_user_name"] == "Alpha"
        assert event["id"] == "c1"


@pytest.mark.integration
class TestCheckEntity:

    @pytest.mark.asyncio
    async def test_failure_stops_batch_and_holds_checkpoint(self, poller, helix, handler, db):
        db.advance_checkpoint("alpha", T)
        helix.get_recent_clips.return_value = [
            clip("c3", T + timedelta(seconds=3)),
            clip("c1", T + timedelta(seconds=1)),
            clip("c2", T + timedelta(seconds=2)),
            clip("old", T),
        ]

        async def created(event):
            if event["id"] == "c2":
                raise RuntimeError("discord down")
            return 1

        handler.handle_clip_created.side_effect = created
        assert await poller.check_entity("alpha") == 1
        assert created_ids(handler) == ["c1", "c2"]
        assert db.get_checkpoint("alpha") == T + timedelta(seconds=1)

        handler.handle_clip_created.side_effect = None
        handler.handle_clip_created.reset_mock()
        assert await poller.check_entity("alpha") == 2
        assert created_ids(handler) == ["c2", "c3"]
        assert db.get_checkpoint("alpha") == T + timedelta(seconds=3)

    @pytest.mark.asyncio
    async def test_same_timestamp_clips_are_ordered_by_id(self, poller, helix, handler, db):
        db.advance_checkpoint("alpha", T)
        at = T + timedelta(seconds=5)
        helix.get_recent_clips.return_value = [clip("b", at), clip("a", at)]

        await poller.check_entity("alpha")
        assert created_ids(handler) == ["a", "b"]

    @pytest.mark.asyncio
    async def test_failure_on_shared_timestamp_keeps_whole_second(self, poller, helix, handler, db):
        db.advance_checkpoint("alpha", T)
        at = T + timedelta(seconds=5)
        helix.get_recent_clips.return_value = [clip("a", at), clip("b", at)]
        handler.handle_clip_created.side_effect = [1, RuntimeError("boom")]

        assert await poller.check_entity("alpha") == 0
        assert db.get_checkpoint("alpha") == T

    @pytest.mark.asyncio
    async def test_first_poll_looks_back_default_hours(self, poller, helix, handler, db):
        helix.get_recent_clips.return_value = [
            clip("ancient", NOW - timedelta(hours=25)),
            clip("recent", NOW - timedelta(hours=1)),
        ]

        await poller.check_entity("alpha")
        assert created_ids(handler) == ["recent"]
        assert db.get_checkpoint("alpha") == NOW - timedelta(hours=1)

    @pytest.mark.asyncio
    async def test_unknown_streamer(self, poller, helix, handler):
        helix.fetch_user.side_effect = NotFoundError("User not found: alpha")
        assert await poller.check_entity("alpha") == 0
        helix.get_recent_clips.assert_not_awaited()


@pytest.mark.integration
class TestPollOnce:

    @pytest.mark.asyncio
    async def test_slow_entity_is_skipped(self, poller, helix, handler, db):
        db.add_follow("g1", "c1", "beta", "clips")
        poller.config.entity_timeout = 0.05

        async def user_by_name(login=None, user_id=None):
            if login == "alpha":
                await asyncio.sleep(1)
            return {"id": login, "login": login}

        helix.fetch_user.side_effect = user_by_name
        helix.get_recent_clips.return_value = [clip("c1", NOW - timedelta(minutes=5))]

        report = await poller.poll_once()
        assert report.timed_out == 1
        assert report.skipped == ["alpha"]
        assert report.checked == 1
        assert report.new_items == 1

    @pytest.mark.asyncio
    async def test_entity_error_is_isolated(self, poller, helix, db):
        db.add_follow("g1", "c1", "beta", "clips")
        helix.get_recent_clips.side_effect = [TransientError("503", 503), []]

        report = await poller.poll_once()
        assert report.failed == 1
        assert report.checked == 1


@pytest.mark.integration
class TestDeletionCheck:

    @pytest.mark.asyncio
    async def test_absent_clips_are_retracted(self, poller, helix, handler):
        for clip_id in ("gone", "flaky", "bad", "alive"):
            poller.tracker.track_item_delivery(clip_id, "c1", f"m-{clip_id}", "alpha", "A clip")

        async def by_id(clip_id):
            if clip_id == "gone":
                raise NotFoundError("Clip not found")
            if clip_id == "flaky":
                raise TransientError("timeout")
            if clip_id == "bad":
                raise HelixError("bad request", 400)
            return clip(clip_id, NOW, title="Renamed")

        helix.get_clip_by_id.side_effect = by_id

        assert await poller.check_deleted_items() == 2
        retracted = [c.args[0]["id"] for c in handler.handle_clip_deleted.await_args_list]
        assert sorted(retracted) == ["bad", "gone"]
        handler.handle_clip_updated.assert_awaited_once()
        assert handler.handle_clip_updated.await_args.args[0]["title"] == "Renamed"

    @pytest.mark.asyncio
    async def test_nothing_to_check(self, poller, helix):
        assert await poller.check_deleted_items() == 0
        helix.get_clip_by_id.assert_not_awaited()


@pytest.mark.integration
class TestLookupFailures:

    @pytest.mark.asyncio
    async def test_transient_user_lookup_counts_as_failed(self, poller, helix, handler):
        helix.fetch_user.side_effect = TransientError("timeout")

        report = await poller.poll_once()
        assert report.failed == 1
        assert report.checked == 0
        assert report.skipped == ["alpha"]
        handler.handle_clip_created.assert_not_awaited()


@pytest.mark.integration
class TestClipLifecycle:
    """Real handler + tracker: deliver, stay quiet, retract once."""

    @pytest.mark.asyncio
    async def test_clip_delivered_then_retracted_once(self, db, helix, chat, clock):
        created_at = NOW - timedelta(minutes=10)
        posted = clip("clip-1", created_at, title="Clutch")
        helix.fetch_user.return_value = {"id": "100", "login": "alpha"}
        helix.get_recent_clips.return_value = [posted]
        helix.get_clip_by_id.return_value = posted
        db.add_follow("g1", "chanA", "alpha", "clips")
        db.add_follow("g2", "chanB", "alpha", "clips")

        tracker = DeliveryTracker(db, chat, clock=clock)
        handler = NotificationHandler(
            db, helix, tracker, MessageBuilder(AnnouncementConfig(), db), chat, LiveConfig(), sleep=AsyncMock()
        )
        poller = ClipPoller(db, helix, handler, tracker, ClipsConfig(), clock=clock)

        report = await poller.poll_once()
        assert report.new_items == 1
        assert {s[0] for s in chat.sent} == {"chanA", "chanB"}
        assert db.get_checkpoint("alpha") == created_at
        assert len(tracker.deliveries("clip-1")) == 2

        clock.advance(300)
        report = await poller.poll_once()
        assert report.new_items == 0
        assert len(chat.sent) == 2
        assert db.get_checkpoint("alpha") == created_at

        helix.get_clip_by_id.return_value = None
        helix.get_clip_by_id.side_effect = NotFoundError("Clip not found: clip-1")
        clock.advance(300)
        report = await poller.poll_once()
        assert report.deleted_items == 1
        assert sorted(d[0] for d in chat.deleted) == ["chanA", "chanB"]
        assert tracker.deliveries("clip-1") == []

        lookups = helix.get_clip_by_id.await_count
        clock.advance(300)
        report = await poller.poll_once()
        assert report.deleted_items == 0
        assert len(chat.deleted) == 2
        assert helix.get_clip_by_id.await_count == lookups
