"""
Tests SubscriptionReconciler (ensure / revoke / sweep)
"""
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from conftest import remote_subscription
from core.config import ReconcileConfig
from core.models import RemoteSubscription, utcnow
from core.reconciler import SubscriptionReconciler
from twitchapi.errors import ConflictError, HelixError, NotFoundError, TransientError

USERS = {
    "100": {"id": "100", "login": "alpha"},
    "200": {"id": "200", "login": "beta"},
}


def fetch_user(login=None, user_id=None):
    for user in USERS.values():
        if user["id"] == user_id or user["login"] == login:
            return user
    raise NotFoundError(f"User not found: {login or user_id}")


@pytest.fixture
def reconciler(db, helix):
    helix.fetch_user.side_effect = fetch_user
    return SubscriptionReconciler(
        db,
        helix,
        ReconcileConfig(create_attempts=3, create_backoff=0.5),
        sleep=AsyncMock(),
        # rows written before the sweep count as written before the listing
        clock=lambda: utcnow() + timedelta(seconds=1),
    )


def local(db, sub_id, name="alpha", entity_id="100", kind="stream.online"):
    db.upsert_subscription(RemoteSubscription(sub_id, name, entity_id, kind))


@pytest.mark.unit
class TestEnsureSubscribed:

    @pytest.mark.asyncio
    async def test_creates_and_records(self, reconciler, helix, db):
        helix.create_subscription.return_value = {"id": "s1", "status": "webhook_callback_verification_pending"}

        sub = await reconciler.ensure_subscribed("100", "Alpha", "stream.online")
        assert sub.subscription_id == "s1"
        assert db.get_subscription("alpha", "stream.online").is_enabled
        helix.create_subscription.assert_awaited_once_with("stream.online", {"broadcaster_user_id": "100"})

    @pytest.mark.asyncio
    async def test_idempotent(self, reconciler, helix):
        helix.create_subscription.return_value = {"id": "s1", "status": "enabled"}
        await reconciler.ensure_subscribed("100", "alpha", "stream.online")
        await reconciler.ensure_subscribed("100", "alpha", "stream.online")
        assert helix.create_subscription.await_count == 1

    @pytest.mark.asyncio
    async def test_conflict_adopts_existing(self, reconciler, helix, db):
        helix.create_subscription.side_effect = ConflictError("exists", 409)
        helix.find_subscription.return_value = remote_subscription("remote-1", "100")

        sub = await reconciler.ensure_subscribed("100", "alpha", "stream.online")
        assert sub.subscription_id == "remote-1"
        assert db.get_subscription_by_id("remote-1").entity_name == "alpha"

    @pytest.mark.asyncio
    async def test_conflict_without_match_records_nothing(self, reconciler, helix, db):
        helix.create_subscription.side_effect = ConflictError("exists", 409)
        helix.find_subscription.return_value = None

        assert await reconciler.ensure_subscribed("100", "alpha", "stream.online") is None
        assert db.list_subscriptions() == []

    @pytest.mark.asyncio
    async def test_transient_is_retried_with_backoff(self, reconciler, helix):
        helix.create_subscription.side_effect = [
            TransientError("503", 503),
            TransientError("timeout"),
            {"id": "s1", "status": "enabled"},
        ]

        sub = await reconciler.ensure_subscribed("100", "alpha", "stream.online")
        assert sub.subscription_id == "s1"
        assert [c.args[0] for c in reconciler._sleep.await_args_list] == [0.5, 1.0]

    @pytest.mark.asyncio
    async def test_transient_exhausted_raises(self, reconciler, helix, db):
        helix.create_subscription.side_effect = TransientError("503", 503)

        with pytest.raises(TransientError):
            await reconciler.ensure_subscribed("100", "alpha", "stream.online")
        assert helix.create_subscription.await_count == 3
        assert db.list_subscriptions() == []

    @pytest.mark.asyncio
    async def test_other_errors_are_not_retried(self, reconciler, helix):
        helix.create_subscription.side_effect = HelixError("bad request", 400)
        with pytest.raises(HelixError):
            await reconciler.ensure_subscribed("100", "alpha", "stream.online")
        assert helix.create_subscription.await_count == 1


@pytest.mark.unit
class TestEnsureUnsubscribed:

    @pytest.mark.asyncio
    async def test_not_found_counts_as_deleted(self, reconciler, helix, db):
        local(db, "s1")
        helix.delete_subscription.side_effect = NotFoundError("gone", 404)

        assert await reconciler.ensure_unsubscribed("alpha", "stream.online") is True
        assert db.get_subscription("alpha", "stream.online") is None

    @pytest.mark.asyncio
    async def test_failure_keeps_local_record(self, reconciler, helix, db):
        local(db, "s1")
        helix.delete_subscription.side_effect = TransientError("503", 503)

        with pytest.raises(TransientError):
            await reconciler.ensure_unsubscribed("alpha", "stream.online")
        assert db.get_subscription("alpha", "stream.online") is not None

    @pytest.mark.asyncio
    async def test_nothing_to_remove(self, reconciler, helix):
        assert await reconciler.ensure_unsubscribed("alpha", "stream.online") is False
        helix.delete_subscription.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_release_skips_when_follow_came_back(self, reconciler, helix, db):
        local(db, "s1")
        db.add_follow("g1", "c1", "alpha", "live")

        assert await reconciler.release_if_unneeded("alpha", "stream.online") is False
        helix.delete_subscription.assert_not_awaited()


@pytest.mark.unit
class TestRevoke:

    @pytest.mark.asyncio
    async def test_revoke_matches_by_id_only(self, reconciler, db, helix):
        local(db, "s1", name="alpha", entity_id="100")
        local(db, "s2", name="beta", entity_id="200")

        assert await reconciler.revoke({"id": "s1", "status": "user_removed"}) is True
        assert db.get_subscription_by_id("s1") is None
        assert db.get_subscription_by_id("s2") is not None
        # revocation never recreates on its own
        helix.create_subscription.assert_not_awaited()
        assert db.get_audit_log(1)[0]["event_type"] == "subscription_revoked"

    @pytest.mark.asyncio
    async def test_revoke_unknown_id(self, reconciler):
        assert await reconciler.revoke({"id": "nope"}) is False


@pytest.mark.integration
class TestSweep:

    @pytest.mark.asyncio
    async def test_duplicate_remote_is_deleted(self, reconciler, helix, db):
        db.add_follow("g1", "c1", "alpha", "live")
        local(db, "s1")
        helix.list_owned_subscriptions.return_value = [
            remote_subscription("s1", "100"),
            remote_subscription("s2", "100"),
        ]

        report = await reconciler.sweep()
        helix.delete_subscription.assert_awaited_once_with("s2")
        assert db.get_subscription("alpha", "stream.online").subscription_id == "s1"
        assert report.deleted_remote == 1
        assert report.errors == 0
        helix.create_subscription.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unknown_remote_is_adopted_when_required(self, reconciler, helix, db):
        db.add_follow("g1", "c1", "alpha", "live")
        helix.list_owned_subscriptions.return_value = [remote_subscription("r1", "100")]

        report = await reconciler.sweep()
        assert report.adopted == 1
        assert db.get_subscription("alpha", "stream.online").subscription_id == "r1"
        helix.create_subscription.assert_not_awaited()
        helix.delete_subscription.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_orphan_remote_is_deleted(self, reconciler, helix, db):
        helix.list_owned_subscriptions.return_value = [remote_subscription("r1", "200")]

        await reconciler.sweep()
        helix.delete_subscription.assert_awaited_once_with("r1")
        assert db.list_subscriptions() == []

    @pytest.mark.asyncio
    async def test_remote_for_deleted_user_is_removed(self, reconciler, helix):
        helix.list_owned_subscriptions.return_value = [remote_subscription("r1", "999")]

        report = await reconciler.sweep()
        helix.delete_subscription.assert_awaited_once_with("r1")
        assert report.errors == 0

    @pytest.mark.asyncio
    async def test_stale_local_is_dropped_and_recreated(self, reconciler, helix, db):
        db.add_follow("g1", "c1", "alpha", "live")
        local(db, "ghost")
        helix.create_subscription.return_value = {"id": "fresh", "status": "enabled"}

        report = await reconciler.sweep()
        assert report.dropped_local == 1
        assert report.created == 1
        assert db.get_subscription("alpha", "stream.online").subscription_id == "fresh"

    @pytest.mark.asyncio
    async def test_unneeded_local_is_released(self, reconciler, helix, db):
        local(db, "s1")
        helix.list_owned_subscriptions.return_value = [remote_subscription("s1", "100")]

        await reconciler.sweep()
        helix.delete_subscription.assert_awaited_once_with("s1")
        assert db.list_subscriptions() == []

    @pytest.mark.asyncio
    async def test_unhealthy_remote_is_removed_and_recreated(self, reconciler, helix, db):
        db.add_follow("g1", "c1", "alpha", "live")
        local(db, "s1")
        helix.list_owned_subscriptions.return_value = [
            remote_subscription("s1", "100", status="authorization_revoked"),
        ]
        helix.create_subscription.return_value = {"id": "s2", "status": "enabled"}

        report = await reconciler.sweep()
        helix.delete_subscription.assert_awaited_once_with("s1")
        assert report.created == 1
        assert db.get_subscription("alpha", "stream.online").subscription_id == "s2"

    @pytest.mark.asyncio
    async def test_one_failure_does_not_stop_the_sweep(self, reconciler, helix, db):
        db.add_follow("g1", "c1", "alpha", "live")
        db.add_follow("g1", "c1", "beta", "live")

        async def create(event_kind, condition, version="1"):
            if condition["broadcaster_user_id"] == "100":
                raise HelixError("bad request", 400)
            return {"id": "s-beta", "status": "enabled"}

        helix.create_subscription.side_effect = create

        report = await reconciler.sweep()
        assert report.errors == 1
        assert report.created == 1
        assert db.get_subscription("beta", "stream.online").subscription_id == "s-beta"
        assert db.get_subscription("alpha", "stream.online") is None

    @pytest.mark.asyncio
    async def test_listing_failure_aborts_cleanly(self, reconciler, helix, db):
        db.add_follow("g1", "c1", "alpha", "live")
        helix.list_owned_subscriptions.side_effect = TransientError("timeout")

        report = await reconciler.sweep()
        assert report.errors == 1
        helix.create_subscription.assert_not_awaited()
        assert db.get_audit_log(1)[0]["severity"] == "error"

    @pytest.mark.asyncio
    async def test_clip_deletion_webhooks_are_opt_in(self, db, helix):
        helix.fetch_user.side_effect = fetch_user
        helix.create_subscription.return_value = {"id": "clip-sub", "status": "enabled"}
        db.add_follow("g1", "c1", "alpha", "clips")

        plain = SubscriptionReconciler(db, helix, sleep=AsyncMock())
        await plain.sweep()
        helix.create_subscription.assert_not_awaited()

        with_webhooks = SubscriptionReconciler(db, helix, clip_deletion_webhooks=True, sleep=AsyncMock())
        await with_webhooks.sweep()
        helix.create_subscription.assert_awaited_once_with("channel.clip.delete", {"broadcaster_user_id": "100"})
