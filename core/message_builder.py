"""
📢 MessageBuilder - rendu des annonces (live + clips)

Templates are plain str.format strings, taken from the guild override when
one exists, else from config. A broken template falls back to the default
instead of dropping the announcement.
"""
import logging
import random
import time
from typing import TYPE_CHECKING, Any, Dict, Optional

from chat.base import ChatPayload
from core.config import (
    DEFAULT_CLIP_TEMPLATE,
    DEFAULT_STREAM_ONLINE_TEMPLATE,
    AnnouncementConfig,
)
from core.models import to_iso, utcnow

if TYPE_CHECKING:
    from database.manager import DatabaseManager

LOGGER = logging.getLogger(__name__)

TEMPLATE_STREAM_ONLINE = "stream_online"
TEMPLATE_CLIP = "clip"
TEMPLATE_KINDS = (TEMPLATE_STREAM_ONLINE, TEMPLATE_CLIP)

MAX_CONTENT_LENGTH = 2000
MAX_TITLE_LENGTH = 256
TWITCH_PURPLE = 0x9146FF


def _truncate(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[:limit - 3] + "..."


class MessageBuilder:
    """Builds ChatPayloads from Twitch events."""

    def __init__(self, config: AnnouncementConfig, db: Optional["DatabaseManager"] = None):
        self.config = config
        self.db = db

    def template_for(self, kind: str, guild_id: Optional[str] = None) -> str:
        if guild_id and self.db is not None:
            override = self.db.get_template(guild_id, kind)
            if override:
                return override
        if kind == TEMPLATE_CLIP:
            return self.config.clip
        return self.config.stream_online

    @staticmethod
    def _render(template: str, default: str, values: Dict[str, Any]) -> str:
        try:
            return template.format(**values)
        except (KeyError, IndexError, ValueError, AttributeError, TypeError) as e:
            LOGGER.error(f"❌ Error formatting template {template!r}: {e}, using default")
            return default.format(**values)

    # ========================================================================
    # Live
    # ========================================================================

    def build_stream_online(
        self,
        event: Dict[str, Any],
        stream: Dict[str, Any],
        game: Optional[Dict[str, Any]] = None,
        follower_count: int = 0,
        profile_image_url: Optional[str] = None,
        guild_id: Optional[str] = None,
    ) -> ChatPayload:
        """
        Embed d'annonce live.

        Args:
            event: payload stream.online (broadcaster_user_login / _name)
            stream: données /streams, ou payload dégradé
            game: données /games (optionnel)
            follower_count: total de followers
            profile_image_url: avatar du streamer (vignette)
            guild_id: pour le template spécifique au serveur
        """
        login = event.get("broadcaster_user_login", "")
        channel_url = f"https://twitch.tv/{login}"
        viewer_count = int(stream.get("viewer_count") or 0)
        values = {
            "streamer_name": event.get("broadcaster_user_name") or login,
            "streamer_login": login,
            "stream_title": stream.get("title") or "No title",
            "game_name": game["name"] if game else "No category",
            "viewer_count": f"{viewer_count:,}",
            "follower_count": f"{follower_count:,}",
        }

        title = self._render(
            self.template_for(TEMPLATE_STREAM_ONLINE, guild_id),
            DEFAULT_STREAM_ONLINE_TEMPLATE,
            values,
        )
        embed: Dict[str, Any] = {
            "title": _truncate(title, MAX_TITLE_LENGTH),
            "url": channel_url,
            "color": TWITCH_PURPLE,
            "timestamp": to_iso(utcnow()),
            "description": f"**{values['stream_title']}**",
            "fields": [],
        }

        thumbnail_url = stream.get("thumbnail_url")
        if thumbnail_url:
            preview = thumbnail_url.replace("{width}", "1920").replace("{height}", "1080")
            # Discord caches previews by URL
            embed["image"] = {"url": f"{preview}?{random.randint(100, 100000)}={int(time.time())}"}
        if profile_image_url:
            embed["thumbnail"] = {"url": profile_image_url}

        if self.config.show_game and game:
            embed["fields"].append({"name": "🎮 Game", "value": game["name"], "inline": True})
        if self.config.show_followers:
            embed["fields"].append({"name": "❤️ Followers", "value": values["follower_count"], "inline": True})
        embed["fields"].append({"name": "📺 Watch", "value": f"[Open Stream]({channel_url})", "inline": True})
        if self.config.show_viewers:
            embed["fields"].append({"name": "👥 Viewers", "value": values["viewer_count"], "inline": True})

        return ChatPayload(content="", embed=embed)

    # ========================================================================
    # Clips
    # ========================================================================

    def build_clip(self, clip: Dict[str, Any], guild_id: Optional[str] = None) -> ChatPayload:
        streamer = clip.get("broadcaster_user_name") or clip.get("broadcaster_name", "")
        values = {
            "streamer": streamer,
            "creator": clip.get("creator_name") or streamer,
            "title": clip.get("title") or "Untitled Clip",
            "url": clip.get("url", ""),
        }
        content = self._render(
            self.template_for(TEMPLATE_CLIP, guild_id),
            DEFAULT_CLIP_TEMPLATE,
            values,
        )
        return ChatPayload(content=_truncate(content, MAX_CONTENT_LENGTH))
