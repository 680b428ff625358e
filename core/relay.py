"""
🗂️ Relay - assemblage des composants

Builds every component from a RelayConfig and owns their lifecycle, so
main.py (server) and scripts/relay_ctl.py (admin CLI) share one wiring.
"""
import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from chat.base import ChatTarget
from chat.discord_target import DiscordTarget
from core.clip_poller import ClipPoller
from core.config import RelayConfig
from core.delivery_tracker import DeliveryTracker
from core.dispatch_queue import DispatchQueue
from core.follow_service import FollowService
from core.keyed_lock import KeyedLock
from core.message_builder import MessageBuilder
from core.notification_handler import NotificationHandler
from core.reconciler import SubscriptionReconciler
from database.manager import DatabaseManager
from twitchapi.auth_manager import AuthManager
from twitchapi.helix_client import HelixClient
from web.webhook_gate import WebhookGate

LOGGER = logging.getLogger(__name__)


@dataclass
class Relay:
    config: RelayConfig
    db: DatabaseManager
    http: httpx.AsyncClient
    auth: AuthManager
    helix: HelixClient
    chat: ChatTarget
    tracker: DeliveryTracker
    builder: MessageBuilder
    handler: NotificationHandler
    queue: DispatchQueue
    reconciler: SubscriptionReconciler
    poller: ClipPoller
    follows: FollowService
    gate: WebhookGate

    async def open(self, start_chat: bool = True) -> None:
        """Credential + chat connection, no background loops."""
        await self.auth.initialize()
        if start_chat:
            await self.chat.start()

    async def start(self) -> None:
        """Open, then start the dispatch workers, the sweep loop and the clip poller."""
        await self.open()
        await self.queue.start()
        await self.reconciler.start()
        await self.poller.start()
        LOGGER.info("✅ LiveRelay running")

    async def stop(self) -> None:
        LOGGER.info("🛑 Stopping LiveRelay...")
        await self.poller.stop()
        await self.reconciler.stop()
        await self.queue.stop()
        await self.close()

    async def close(self) -> None:
        await self.chat.close()
        await self.http.aclose()


def build_relay(config: RelayConfig, chat: Optional[ChatTarget] = None,
                http: Optional[httpx.AsyncClient] = None,
                db: Optional[DatabaseManager] = None) -> Relay:
    """
    Instancie tous les composants (aucune I/O réseau ici).

    Args:
        config: loaded configuration
        chat: delivery target (default: DiscordTarget with config.discord_token)
        http: shared HTTP client (default: new httpx.AsyncClient)
        db: database (default: DatabaseManager on config.db_path)
    """
    db = db or DatabaseManager(config.db_path, key_file=config.key_file)
    http = http or httpx.AsyncClient()
    chat = chat or DiscordTarget(config.discord_token)

    auth = AuthManager(config.twitch.client_id, config.twitch.client_secret, db, http)
    helix = HelixClient(
        auth,
        http,
        config.twitch.client_id,
        config.webhook.callback_url,
        webhook_secret=config.webhook.secret,
        helix_timeout=config.twitch.helix_timeout,
    )

    tracker = DeliveryTracker(db, chat)
    builder = MessageBuilder(config.announcements, db)
    handler = NotificationHandler(db, helix, tracker, builder, chat, config.live)
    queue = DispatchQueue(config.webhook.queue_size, config.webhook.workers)
    reconciler = SubscriptionReconciler(
        db,
        helix,
        config.reconcile,
        clip_deletion_webhooks=config.clips.webhook_deletions,
        locks=KeyedLock(),
    )
    poller = ClipPoller(db, helix, handler, tracker, config.clips)
    follows = FollowService(db, helix, reconciler)
    gate = WebhookGate(config.webhook, queue, handler, reconciler)

    return Relay(
        config=config,
        db=db,
        http=http,
        auth=auth,
        helix=helix,
        chat=chat,
        tracker=tracker,
        builder=builder,
        handler=handler,
        queue=queue,
        reconciler=reconciler,
        poller=poller,
        follows=follows,
        gate=gate,
    )
