"""
Tests des briques core: config, modèles, KeyedLock, DispatchQueue
"""
import asyncio
from datetime import datetime, timezone

import pytest

from core.config import RelayConfig, Secrets, load_config
from core.dispatch_queue import DispatchQueue
from core.keyed_lock import KeyedLock
from core.models import is_valid_entity_name, normalize_entity_name, parse_iso, to_iso


# ============================================================================
# Config
# ============================================================================

@pytest.mark.unit
class TestConfig:

    def test_defaults(self):
        config = RelayConfig.from_yaml(None)
        assert config.webhook.max_age_seconds == 600
        assert config.webhook.path == "/webhook"
        assert config.live.cooldown_seconds == 30
        assert config.clips.poll_interval == 300
        assert config.clips.absent_statuses == (400, 404)
        assert config.server.port == 3000

    def test_yaml_values(self):
        config = RelayConfig.from_yaml({
            "twitch": {"client_id": "abc", "helix_timeout": 3},
            "webhook": {"secret": "yaml-secret", "dedup_size": 10},
            "clips": {"absent_statuses": [404], "webhook_deletions": True},
            "database": {"path": "/tmp/relay.db"},
            "discord": {"token": "yaml-token"},
        })
        assert config.twitch.client_id == "abc"
        assert config.twitch.helix_timeout == 3.0
        assert config.webhook.secret == "yaml-secret"
        assert config.webhook.dedup_size == 10
        assert config.clips.absent_statuses == (404,)
        assert config.clips.webhook_deletions is True
        assert config.db_path == "/tmp/relay.db"
        assert config.discord_token == "yaml-token"

    def test_environment_wins_over_yaml(self, monkeypatch):
        monkeypatch.setenv("WEBHOOK_SECRET", "env-secret")
        monkeypatch.setenv("TWITCH_CLIENT_ID", "env-id")
        secrets = Secrets(_env_file=None)

        config = RelayConfig.from_yaml(
            {"webhook": {"secret": "yaml-secret"}, "twitch": {"client_secret": "yaml-cs"}},
            secrets=secrets,
        )
        assert config.webhook.secret == "env-secret"
        assert config.twitch.client_id == "env-id"
        # empty env values keep the YAML value
        assert config.twitch.client_secret == "yaml-cs"

    def test_load_config_file(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("live:\n  cooldown_seconds: 45\nserver:\n  port: 8080\n", encoding="utf-8")
        config = load_config(str(path))
        assert config.live.cooldown_seconds == 45
        assert config.server.port == 8080

    def test_missing_file_uses_defaults(self, tmp_path):
        config = load_config(str(tmp_path / "absent.yaml"))
        assert config.reconcile.sweep_interval == 3600


# ============================================================================
# Models
# ============================================================================

@pytest.mark.unit
class TestModels:

    def test_parse_helix_timestamp(self):
        assert parse_iso("2024-05-01T12:00:00Z") == datetime(2024, 5, 1, 12, tzinfo=timezone.utc)

    def test_parse_eventsub_nanoseconds(self):
        parsed = parse_iso("2024-05-01T12:00:00.123456789Z")
        assert parsed.microsecond == 123456
        assert parsed.tzinfo is not None

    def test_naive_is_utc(self):
        assert parse_iso("2024-05-01T12:00:00").tzinfo == timezone.utc

    def test_to_iso_is_fixed_width(self):
        a = to_iso(datetime(2024, 5, 1, 12, tzinfo=timezone.utc))
        b = to_iso(datetime(2024, 5, 1, 12, 0, 0, 5, tzinfo=timezone.utc))
        assert len(a) == len(b)
        assert a < b
        assert parse_iso(a) == datetime(2024, 5, 1, 12, tzinfo=timezone.utc)

    @pytest.mark.parametrize("name,valid", [
        ("alpha", True),
        ("  Alpha_42 ", True),
        ("a" * 25, True),
        ("a" * 26, False),
        ("", False),
        ("bad-name", False),
        ("two words", False),
    ])
    def test_entity_names(self, name, valid):
        assert is_valid_entity_name(name) is valid

    def test_normalize(self):
        assert normalize_entity_name("  AlPhA ") == "alpha"


# ============================================================================
# KeyedLock
# ============================================================================

@pytest.mark.unit
class TestKeyedLock:

    @pytest.mark.asyncio
    async def test_same_key_is_serialized(self):
        locks = KeyedLock()
        order = []

        async def step(tag):
            async with locks.hold("alpha"):
                order.append(f"{tag}-in")
                await asyncio.sleep(0.01)
                order.append(f"{tag}-out")

        await asyncio.gather(step("a"), step("b"))
        assert order == ["a-in", "a-out", "b-in", "b-out"]

    @pytest.mark.asyncio
    async def test_distinct_keys_do_not_block(self):
        locks = KeyedLock()
        async with locks.hold("alpha"):
            assert locks.locked("alpha")
            assert not locks.locked("beta")
            await asyncio.wait_for(_acquire(locks, "beta"), timeout=1.0)
        assert not locks.locked("alpha")
        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_released_keys_are_dropped(self):
        locks = KeyedLock()
        for name in ("alpha", "beta", "gamma"):
            async with locks.hold(name):
                assert len(locks) == 1
        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_lock_kept_while_someone_waits(self):
        locks = KeyedLock()
        entered = asyncio.Event()
        release = asyncio.Event()

        async def first():
            async with locks.hold("alpha"):
                entered.set()
                await release.wait()

        holder = asyncio.create_task(first())
        await entered.wait()
        waiter = asyncio.create_task(_acquire(locks, "alpha"))
        await asyncio.sleep(0)

        release.set()
        await holder
        # the waiter still serializes on the same lock
        assert len(locks) == 1
        await waiter
        assert len(locks) == 0


async def _acquire(locks: KeyedLock, key: str) -> None:
    async with locks.hold(key):
        pass


# ============================================================================
# DispatchQueue
# ============================================================================

@pytest.mark.unit
class TestDispatchQueue:

    @pytest.mark.asyncio
    async def test_submit_before_start_is_refused(self):
        queue = DispatchQueue()

        async def job():
            pass

        assert queue.submit("early", job) is False
        assert queue.dropped == 1

    @pytest.mark.asyncio
    async def test_jobs_run_and_failures_are_counted(self):
        queue = DispatchQueue(workers=2)
        await queue.start()
        seen = []

        async def ok(value):
            seen.append(value)

        async def boom():
            raise RuntimeError("handler crashed")

        assert queue.submit("ok-1", ok, 1)
        assert queue.submit("boom", boom)
        assert queue.submit("ok-2", ok, 2)
        await queue.join()

        assert sorted(seen) == [1, 2]
        assert queue.processed == 2
        assert queue.failed == 1
        await queue.stop()
        assert not queue.running

    @pytest.mark.asyncio
    async def test_full_queue_refuses_jobs(self):
        queue = DispatchQueue(maxsize=1, workers=1)
        await queue.start()
        release = asyncio.Event()

        async def blocking():
            await release.wait()

        assert queue.submit("first", blocking)
        await asyncio.sleep(0)  # worker picks up the first job
        assert queue.submit("second", blocking)
        assert queue.submit("third", blocking) is False
        assert queue.dropped == 1

        release.set()
        await queue.stop()

    @pytest.mark.asyncio
    async def test_stop_refuses_new_jobs(self):
        queue = DispatchQueue()
        await queue.start()
        await queue.stop()

        async def job():
            pass

        assert queue.submit("late", job) is False
