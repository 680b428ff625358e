#!/usr/bin/env python3
"""Helix Client - App Token + EventSub webhook subscriptions

Requêtes Helix utilisées par le relay :
- eventsub/subscriptions : create / list (paginé) / delete
- users, streams, games, channels/followers : données d'annonce
- clips : fenêtre récente par broadcaster, lookup par id

Every call is bounded by `helix_timeout` and surfaces failures as the
typed errors of twitchapi.errors. A 401 triggers one coalesced credential
refresh and one retry of the same call.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import httpx

from core.models import STATUS_ENABLED, to_iso, utcnow
from twitchapi.auth_manager import AuthManager
from twitchapi.errors import (
    AuthError,
    HelixError,
    NotFoundError,
    TransientError,
    UnauthorizedError,
    error_for_status,
)

LOGGER = logging.getLogger(__name__)

HELIX_URL = "https://api.twitch.tv/helix"


class HelixClient:
    """
    Client Helix authentifié avec l'app token de l'AuthManager.

    Args:
        auth: owner of the app credential
        http: shared httpx.AsyncClient
        client_id: Twitch application client id
        callback_url: public URL of our webhook endpoint
        webhook_secret: secret sent to Twitch when creating subscriptions
        helix_timeout: per-call timeout in seconds
    """

    def __init__(
        self,
        auth: AuthManager,
        http: httpx.AsyncClient,
        client_id: str,
        callback_url: str,
        webhook_secret: str = "",
        helix_timeout: float = 8.0,
        base_url: str = HELIX_URL,
    ):
        self.auth = auth
        self.http = http
        self.client_id = client_id
        self.callback_url = callback_url
        self.webhook_secret = webhook_secret
        self.helix_timeout = helix_timeout
        self.base_url = base_url.rstrip("/")
        LOGGER.debug(f"HelixClient init (timeout={helix_timeout}s, callback={callback_url})")

    # ========================================================================
    # Transport
    # ========================================================================

    async def _send(self, method: str, path: str, token: str,
                    params: Optional[Dict[str, Any]] = None,
                    json_body: Optional[Dict[str, Any]] = None) -> httpx.Response:
        headers = {
            "Client-Id": self.client_id,
            "Authorization": f"Bearer {token}",
        }
        try:
            return await asyncio.wait_for(
                self.http.request(
                    method,
                    f"{self.base_url}{path}",
                    params=params,
                    json=json_body,
                    headers=headers,
                ),
                timeout=self.helix_timeout,
            )
        except asyncio.TimeoutError as e:
            raise TransientError(f"⏱️ {method} {path} timed out after {self.helix_timeout}s") from e
        except httpx.HTTPError as e:
            raise TransientError(f"{method} {path} failed: {e}") from e

    async def _request(self, method: str, path: str,
                       params: Optional[Dict[str, Any]] = None,
                       json_body: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        token = await self._access_token()
        resp = await self._send(method, path, token, params, json_body)

        if resp.status_code == 401:
            LOGGER.warning(f"🔄 401 on {method} {path}, refreshing credential and retrying once")
            try:
                credential = await self.auth.refresh(stale_token=token)
            except AuthError as e:
                raise UnauthorizedError(f"{method} {path}: refresh failed: {e}", 401) from e
            resp = await self._send(method, path, credential.access_token, params, json_body)

        if resp.status_code >= 400:
            raise error_for_status(
                resp.status_code,
                f"{method} {path} -> {resp.status_code}",
                resp.text[:500],
            )

        if resp.status_code == 204 or not resp.content:
            return {}
        return resp.json()

    async def _access_token(self) -> str:
        try:
            return await self.auth.get_access_token()
        except AuthError as e:
            raise UnauthorizedError(f"No usable credential: {e}", 401) from e

    async def _lookup(self, path: str, params: Dict[str, Any]) -> Optional[dict]:
        """First row of a lookup, or None on absence or any failure (logged)."""
        try:
            data = (await self._request("GET", path, params=params)).get("data") or []
        except HelixError as e:
            LOGGER.error(f"❌ Helix GET {path} {params} failed: {e}")
            return None
        return data[0] if data else None

    # ========================================================================
    # EventSub subscriptions
    # ========================================================================

    async def create_subscription(self, event_kind: str, condition: Dict[str, str],
                                  version: str = "1") -> dict:
        """
        Crée une subscription EventSub webhook.

        Returns:
            The subscription object (id, status, type, condition...)

        Raises:
            ConflictError: Twitch already holds this subscription
        """
        body = {
            "type": event_kind,
            "version": version,
            "condition": condition,
            "transport": {
                "method": "webhook",
                "callback": self.callback_url,
                "secret": self.webhook_secret,
            },
        }
        result = await self._request("POST", "/eventsub/subscriptions", json_body=body)
        data = result.get("data") or []
        if not data:
            raise HelixError("Subscription create returned no data", 202)
        return data[0]

    async def delete_subscription(self, subscription_id: str) -> None:
        await self._request("DELETE", "/eventsub/subscriptions", params={"id": subscription_id})

    async def list_subscriptions(self, event_kind: Optional[str] = None) -> List[dict]:
        """All subscriptions of the app, following the pagination cursor."""
        subscriptions: List[dict] = []
        params: Dict[str, Any] = {}
        if event_kind:
            params["type"] = event_kind
        while True:
            page = await self._request("GET", "/eventsub/subscriptions", params=params)
            subscriptions.extend(page.get("data") or [])
            cursor = (page.get("pagination") or {}).get("cursor")
            if not cursor:
                return subscriptions
            params = {**params, "after": cursor}

    def owns(self, subscription: dict) -> bool:
        """True if the subscription delivers to our callback URL."""
        transport = subscription.get("transport") or {}
        return transport.get("callback") == self.callback_url

    async def list_owned_subscriptions(self) -> List[dict]:
        return [s for s in await self.list_subscriptions() if self.owns(s)]

    async def find_subscription(self, event_kind: str, entity_id: str,
                                status: str = STATUS_ENABLED) -> Optional[dict]:
        """Remote subscription of ours matching (type, broadcaster, status)."""
        for sub in await self.list_subscriptions(event_kind):
            condition = sub.get("condition") or {}
            if (
                sub.get("type") == event_kind
                and condition.get("broadcaster_user_id") == entity_id
                and sub.get("status") == status
                and self.owns(sub)
            ):
                return sub
        return None

    # ========================================================================
    # Users / streams / games
    # ========================================================================

    async def fetch_user(self, login: Optional[str] = None,
                         user_id: Optional[str] = None) -> dict:
        """
        Strict user lookup.

        Raises:
            NotFoundError: no such user
            TransientError / HelixError: the lookup itself failed
        """
        params = {"login": login} if login else {"id": user_id}
        data = (await self._request("GET", "/users", params=params)).get("data") or []
        if not data:
            raise NotFoundError(f"User not found: {login or user_id}")
        return data[0]

    async def get_user_by_name(self, login: str) -> Optional[dict]:
        return await self._lookup("/users", {"login": login})

    async def get_user_by_id(self, user_id: str) -> Optional[dict]:
        return await self._lookup("/users", {"id": user_id})

    async def get_stream_by_user_id(self, user_id: str) -> Optional[dict]:
        """Stream actif, ou None si offline / pas encore visible."""
        return await self._lookup("/streams", {"user_id": user_id})

    async def get_game_by_id(self, game_id: str) -> Optional[dict]:
        return await self._lookup("/games", {"id": game_id})

    async def get_follower_count(self, user_id: str) -> int:
        try:
            result = await self._request(
                "GET", "/channels/followers", params={"broadcaster_id": user_id, "first": 1}
            )
        except HelixError as e:
            LOGGER.warning(f"⚠️ Follower count unavailable for {user_id}: {e}")
            return 0
        return int(result.get("total") or 0)

    # ========================================================================
    # Clips
    # ========================================================================

    async def get_clips(self, broadcaster_id: str, started_at: datetime,
                        ended_at: datetime, first: int = 20,
                        max_pages: int = 5) -> List[dict]:
        """
        Clips créés dans [started_at, ended_at].

        Helix orders this endpoint by views, not by date, so the cursor is
        followed (up to max_pages) to avoid missing new clips on busy channels.
        """
        clips: List[dict] = []
        params: Dict[str, Any] = {
            "broadcaster_id": broadcaster_id,
            "started_at": to_iso(started_at),
            "ended_at": to_iso(ended_at),
            "first": first,
        }
        for _ in range(max_pages):
            page = await self._request("GET", "/clips", params=params)
            clips.extend(page.get("data") or [])
            cursor = (page.get("pagination") or {}).get("cursor")
            if not cursor:
                break
            params = {**params, "after": cursor}
        return clips

    async def get_recent_clips(self, broadcaster_id: str, minutes: int = 120) -> List[dict]:
        now = utcnow()
        return await self.get_clips(broadcaster_id, now - timedelta(minutes=minutes), now)

    async def get_clip_by_id(self, clip_id: str) -> dict:
        """
        Raises:
            NotFoundError: Twitch answered with no data (deleted clip)
        """
        data = (await self._request("GET", "/clips", params={"id": clip_id})).get("data") or []
        if not data:
            raise NotFoundError(f"Clip not found: {clip_id}")
        return data[0]
