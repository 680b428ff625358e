"""
Tests d'intégration du Relay complet (build_relay + webhook -> Discord)
"""
import json

import httpx
import pytest
import respx

from core.config import RelayConfig
from core.models import utcnow
from core.relay import build_relay
from twitchapi.auth_manager import TOKEN_URL
from twitchapi.helix_client import HELIX_URL
from web.webhook_gate import compute_signature

SECRET = "relay-secret"


@pytest.fixture
def relay(db, chat):
    config = RelayConfig.from_yaml({
        "twitch": {"client_id": "cid", "client_secret": "csecret"},
        "webhook": {"secret": SECRET, "callback_url": "https://relay.test/webhook"},
        "live": {"initial_delay": 0},
    })
    return build_relay(config, chat=chat, http=httpx.AsyncClient(), db=db)


def helix_routes(mock):
    mock.post(TOKEN_URL).mock(return_value=httpx.Response(
        200, json={"access_token": "app-token", "expires_in": 3600, "token_type": "bearer"}
    ))
    mock.get(f"{HELIX_URL}/users").mock(return_value=httpx.Response(200, json={"data": [
        {"id": "100", "login": "alpha", "display_name": "Alpha", "profile_image_url": "https://img/alpha.png"},
    ]}))
    mock.get(f"{HELIX_URL}/streams").mock(return_value=httpx.Response(200, json={"data": [
        {"title": "Speedrun", "game_id": "1", "viewer_count": 10,
         "thumbnail_url": "https://thumb/{width}x{height}.jpg"},
    ]}))
    mock.get(f"{HELIX_URL}/games").mock(return_value=httpx.Response(200, json={"data": [{"id": "1", "name": "Tetris"}]}))
    mock.get(f"{HELIX_URL}/channels/followers").mock(return_value=httpx.Response(200, json={"total": 42, "data": []}))
    return mock.post(f"{HELIX_URL}/eventsub/subscriptions").mock(return_value=httpx.Response(
        202, json={"data": [{"id": "sub-1", "status": "webhook_callback_verification_pending"}]}
    ))


@pytest.mark.unit
class TestBuildRelay:

    def test_components_are_shared(self, relay):
        assert relay.handler.tracker is relay.tracker
        assert relay.poller.handler is relay.handler
        assert relay.gate.queue is relay.queue
        assert relay.gate.reconciler is relay.reconciler
        assert relay.follows.reconciler is relay.reconciler
        assert relay.helix.auth is relay.auth


@pytest.mark.integration
class TestRelayFlow:

    @pytest.mark.asyncio
    async def test_follow_then_webhook_announces(self, relay, chat, db):
        with respx.mock(assert_all_called=False) as mock:
            subscribe_route = helix_routes(mock)
            await relay.open(start_chat=False)

            result = await relay.follows.follow("g1", "c1", "alpha")
            assert result.ok
            assert subscribe_route.call_count == 1
            assert db.get_subscription("alpha", "stream.online").subscription_id == "sub-1"

            await relay.queue.start()
            body = json.dumps({
                "subscription": {"id": "sub-1", "type": "stream.online", "status": "enabled"},
                "event": {"broadcaster_user_id": "100", "broadcaster_user_login": "alpha",
                          "broadcaster_user_name": "Alpha"},
            }).encode()
            timestamp = utcnow().strftime("%Y-%m-%dT%H:%M:%S.%fZ")
            headers = {
                "Twitch-Eventsub-Message-Id": "m-1",
                "Twitch-Eventsub-Message-Timestamp": timestamp,
                "Twitch-Eventsub-Message-Type": "notification",
                "Twitch-Eventsub-Message-Signature": compute_signature(SECRET, "m-1", timestamp, body),
            }

            assert relay.gate.handle(headers, body).status == 200
            await relay.queue.join()
            await relay.queue.stop()

        assert len(chat.sent) == 1
        channel_id, payload, _ = chat.sent[0]
        assert channel_id == "c1"
        assert payload.embed["description"] == "**Speedrun**"
        assert db.get_cooldown("c1", "alpha") is not None
        await relay.close()
