"""
🚪 Webhook Gate - authentification + routage des messages EventSub

Framework-free: `handle(headers, body)` returns a GateResult that the HTTP
layer (web/server.py) turns into a response. Downstream work is only
enqueued on the DispatchQueue, never awaited here.
"""
import hashlib
import hmac
import json
import logging
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any, Callable, Dict, Mapping, Optional, Tuple

from core.config import WebhookConfig
from core.models import parse_iso, utcnow

if TYPE_CHECKING:
    from core.dispatch_queue import DispatchQueue
    from core.notification_handler import NotificationHandler
    from core.reconciler import SubscriptionReconciler

LOGGER = logging.getLogger(__name__)

# Twitch header names first, generic aliases after
HEADER_SIGNATURE = ("twitch-eventsub-message-signature", "x-signature")
HEADER_MESSAGE_ID = ("twitch-eventsub-message-id", "x-message-id")
HEADER_MESSAGE_TYPE = ("twitch-eventsub-message-type", "x-message-type")
HEADER_TIMESTAMP = ("twitch-eventsub-message-timestamp", "x-timestamp")

MESSAGE_VERIFICATION = "webhook_callback_verification"
MESSAGE_NOTIFICATION = "notification"
MESSAGE_REVOCATION = "revocation"

SIGNATURE_PREFIX = "sha256="


@dataclass
class GateResult:
    status: int
    body: Any
    media_type: str = "application/json"


def _ok() -> GateResult:
    return GateResult(200, {"status": "ok"})


def _error(status: int, message: str) -> GateResult:
    return GateResult(status, {"error": message})


def compute_signature(secret: str, message_id: str, timestamp: str, body: bytes) -> str:
    """HMAC-SHA256 over message_id + timestamp + raw body, as sent by Twitch."""
    digest = hmac.new(
        secret.encode("utf-8"),
        message_id.encode("utf-8") + timestamp.encode("utf-8") + body,
        hashlib.sha256,
    ).hexdigest()
    return SIGNATURE_PREFIX + digest


class WebhookGate:
    """
    Authentifie et route les callbacks EventSub.

    Args:
        config: secret, freshness window, dedup size
        queue: where notifications and revocations are enqueued
        handler: receives (subscription, event) for notifications
        reconciler: receives the subscription object for revocations
        clock: injectable for tests
    """

    def __init__(
        self,
        config: WebhookConfig,
        queue: "DispatchQueue",
        handler: "NotificationHandler",
        reconciler: "SubscriptionReconciler",
        clock: Callable[[], datetime] = utcnow,
    ):
        self.config = config
        self.queue = queue
        self.handler = handler
        self.reconciler = reconciler
        self.clock = clock
        self._seen: "OrderedDict[str, None]" = OrderedDict()

        if not config.secret:
            LOGGER.warning(
                "⚠️⚠️⚠️ WEBHOOK SECRET NOT SET - signature verification is DISABLED, "
                "anyone can post events to this endpoint ⚠️⚠️⚠️"
            )

    # ========================================================================
    # Entry point
    # ========================================================================

    def handle(self, headers: Mapping[str, str], body: bytes) -> GateResult:
        try:
            return self._handle(headers, body)
        except Exception as e:
            LOGGER.error(f"❌ Webhook gate error: {e}", exc_info=True)
            return _error(500, "internal error")

    def _handle(self, headers: Mapping[str, str], body: bytes) -> GateResult:
        lowered = {k.lower(): v for k, v in headers.items()}
        message_id = self._header(lowered, HEADER_MESSAGE_ID)
        timestamp = self._header(lowered, HEADER_TIMESTAMP)
        message_type = self._header(lowered, HEADER_MESSAGE_TYPE)

        if not self.config.secret:
            LOGGER.warning(f"⚠️ Unverified webhook accepted (no secret set), message {message_id or '?'}")
        elif not self.verify_signature(
            self._header(lowered, HEADER_SIGNATURE), message_id, timestamp, body
        ):
            LOGGER.warning(f"🚫 Invalid webhook signature (message {message_id or '?'})")
            return _error(403, "invalid signature")

        if not self.is_fresh(timestamp):
            LOGGER.warning(f"⚠️ Stale or missing webhook timestamp: {timestamp!r}")
            return _error(400, "stale timestamp")

        try:
            payload = json.loads(body)
        except ValueError:
            return _error(400, "invalid JSON body")
        if not isinstance(payload, dict):
            return _error(400, "invalid JSON body")

        subscription = payload.get("subscription") or {}

        if message_type == MESSAGE_VERIFICATION:
            challenge = payload.get("challenge")
            if not isinstance(challenge, str):
                return _error(400, "missing challenge")
            LOGGER.info(f"✅ Verification challenge for {subscription.get('type')} ({subscription.get('id')})")
            return GateResult(200, challenge, "text/plain")

        if message_type == MESSAGE_NOTIFICATION:
            return self._on_notification(message_id, subscription, payload.get("event") or {})

        if message_type == MESSAGE_REVOCATION:
            LOGGER.warning(
                f"🔄 Subscription {subscription.get('id')} revoked by Twitch "
                f"(status={subscription.get('status')})"
            )
            if not self.queue.submit(f"revocation:{subscription.get('id')}", self.reconciler.revoke, subscription):
                return _error(503, "busy")
            return _ok()

        LOGGER.warning(f"⚠️ Unknown webhook message type: {message_type!r}")
        return _error(400, "unknown message type")

    def _on_notification(self, message_id: str, subscription: Dict[str, Any],
                         event: Dict[str, Any]) -> GateResult:
        if message_id and message_id in self._seen:
            LOGGER.debug(f"Duplicate notification {message_id}, ignored")
            return _ok()

        label = f"{subscription.get('type')}:{message_id}"
        if not self.queue.submit(label, self.handler.handle_notification, subscription, event):
            return _error(503, "busy")

        if message_id:
            self._remember(message_id)
        return _ok()

    # ========================================================================
    # Checks
    # ========================================================================

    def verify_signature(self, signature: str, message_id: str, timestamp: str, body: bytes) -> bool:
        if not signature or not message_id or not timestamp:
            return False
        expected = compute_signature(self.config.secret, message_id, timestamp, body)
        return hmac.compare_digest(expected.encode("utf-8"), signature.encode("utf-8"))

    def is_fresh(self, timestamp: str) -> bool:
        if not timestamp:
            return False
        try:
            sent_at = parse_iso(timestamp)
        except ValueError:
            return False
        age = (self.clock() - sent_at).total_seconds()
        return abs(age) <= self.config.max_age_seconds

    def _remember(self, message_id: str) -> None:
        self._seen[message_id] = None
        while len(self._seen) > self.config.dedup_size:
            self._seen.popitem(last=False)

    @staticmethod
    def _header(headers: Dict[str, str], names: Tuple[str, ...]) -> str:
        for name in names:
            value: Optional[str] = headers.get(name)
            if value:
                return value
        return ""
