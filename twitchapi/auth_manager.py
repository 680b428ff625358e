"""
AuthManager - Gestion du credential applicatif Twitch

Owns the single app credential used for every Helix call:
- chargement depuis la DB au démarrage
- refresh (refresh_token grant, fallback client_credentials)
- persistance chiffrée après chaque refresh

Concurrent refreshes coalesce: callers pass the token that failed, and a
caller that finds a different, valid token after taking the lock returns
without hitting the OAuth endpoint again.
"""

import asyncio
import logging
from datetime import timedelta
from typing import TYPE_CHECKING, Optional

import httpx

from core.models import Credential, utcnow
from twitchapi.errors import AuthError

if TYPE_CHECKING:
    from database.manager import DatabaseManager

LOGGER = logging.getLogger(__name__)

TOKEN_URL = "https://id.twitch.tv/oauth2/token"
DEFAULT_EXPIRES_IN = 3600


class AuthManager:
    """Single owner of the Credential; never exposed as a module global."""

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        db: "DatabaseManager",
        http: httpx.AsyncClient,
        token_url: str = TOKEN_URL,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.db = db
        self.http = http
        self.token_url = token_url

        self._credential: Optional[Credential] = None
        self._lock = asyncio.Lock()
        self.refresh_count = 0

    @property
    def credential(self) -> Optional[Credential]:
        return self._credential

    async def initialize(self) -> None:
        """Load the persisted credential, refreshing it when expired or absent."""
        stored = self.db.load_credential()
        if stored is None:
            LOGGER.info("🔑 No stored credential, requesting app token...")
            await self.refresh()
            return

        self._credential = stored
        if stored.is_expired():
            LOGGER.info("🔄 Stored credential expired, refreshing...")
            await self.refresh(stale_token=stored.access_token)
        else:
            LOGGER.info(f"✅ Credential loaded (expires: {stored.expires_at.isoformat()})")

    async def get_access_token(self) -> str:
        credential = self._credential
        if credential is None or credential.is_expired():
            credential = await self.refresh(
                stale_token=credential.access_token if credential else None
            )
        return credential.access_token

    async def refresh(self, stale_token: Optional[str] = None) -> Credential:
        """
        Refresh le credential (coalescé entre appelants concurrents)

        Args:
            stale_token: token rejeté par l'appelant (None = aucun)

        Returns:
            Credential courant après refresh

        Raises:
            AuthError: aucun grant n'a abouti
        """
        async with self._lock:
            current = self._credential
            if (
                current is not None
                and current.access_token != stale_token
                and not current.is_expired()
            ):
                LOGGER.debug("🔁 Credential already refreshed by another caller")
                return current

            credential = None
            if current is not None and current.refresh_token:
                try:
                    credential = await self._request_token({
                        "grant_type": "refresh_token",
                        "refresh_token": current.refresh_token,
                    })
                except AuthError as e:
                    LOGGER.warning(f"⚠️ Refresh token grant failed, using client credentials: {e}")

            if credential is None:
                credential = await self._request_token({"grant_type": "client_credentials"})

            self._credential = credential
            self.refresh_count += 1
            self.db.save_credential(credential)
            LOGGER.info(f"✅ Credential refreshed (expires: {credential.expires_at.isoformat()})")
            return credential

    async def _request_token(self, grant: dict) -> Credential:
        data = {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            **grant,
        }
        try:
            resp = await self.http.post(self.token_url, data=data)
        except httpx.HTTPError as e:
            raise AuthError(f"{grant['grant_type']} request failed: {e}") from e

        if resp.status_code != 200:
            raise AuthError(
                f"{grant['grant_type']} refused: {resp.status_code} - {resp.text[:200]}"
            )

        result = resp.json()
        expires_in = int(result.get("expires_in", DEFAULT_EXPIRES_IN))
        return Credential(
            access_token=result["access_token"],
            refresh_token=result.get("refresh_token"),
            expires_at=utcnow() + timedelta(seconds=expires_in),
        )
