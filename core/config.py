"""
⚙️ Configuration LiveRelay

config/config.yaml (PyYAML) fournit les réglages; les secrets peuvent
venir de l'environnement ou d'un fichier .env (pydantic-settings), qui
l'emportent sur le YAML quand ils sont définis.
"""
import logging
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml
from pydantic_settings import BaseSettings, SettingsConfigDict

LOGGER = logging.getLogger(__name__)

DEFAULT_STREAM_ONLINE_TEMPLATE = "🔴 {streamer_name} is now live!"
DEFAULT_CLIP_TEMPLATE = "{creator} just created a new clip on {streamer} channel\n{title}\n{url}"


class Secrets(BaseSettings):
    """Secrets via variables d'environnement (ou .env)."""

    twitch_client_id: str = ""
    twitch_client_secret: str = ""
    webhook_secret: str = ""
    webhook_url: str = ""
    discord_token: str = ""
    database_path: str = ""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


@lru_cache()
def get_secrets() -> Secrets:
    """Singleton secrets."""
    return Secrets()


@dataclass
class TwitchConfig:
    client_id: str = ""
    client_secret: str = ""
    helix_timeout: float = 8.0


@dataclass
class WebhookConfig:
    secret: str = ""
    callback_url: str = ""
    path: str = "/webhook"
    max_age_seconds: int = 600
    dedup_size: int = 1000
    queue_size: int = 1000
    workers: int = 4


@dataclass
class ServerConfig:
    host: str = "0.0.0.0"
    port: int = 3000


@dataclass
class LiveConfig:
    initial_delay: float = 5.0
    max_attempts: int = 3
    retry_delay: float = 2.0
    cooldown_seconds: int = 30


@dataclass
class ClipsConfig:
    poll_interval: int = 300
    initial_delay: int = 30
    lookback_minutes: int = 120
    default_lookback_hours: int = 24
    entity_timeout: float = 60.0
    retention_days: int = 7
    absent_statuses: Tuple[int, ...] = (400, 404)
    webhook_deletions: bool = False


@dataclass
class ReconcileConfig:
    sweep_interval: int = 3600  # 0 = startup sweep only
    sweep_timeout: float = 300.0
    jitter_seconds: int = 30
    create_attempts: int = 3
    create_backoff: float = 1.0


@dataclass
class AnnouncementConfig:
    stream_online: str = DEFAULT_STREAM_ONLINE_TEMPLATE
    clip: str = DEFAULT_CLIP_TEMPLATE
    show_game: bool = True
    show_viewers: bool = False
    show_followers: bool = True


@dataclass
class RelayConfig:
    """Full process configuration."""
    twitch: TwitchConfig = field(default_factory=TwitchConfig)
    webhook: WebhookConfig = field(default_factory=WebhookConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    live: LiveConfig = field(default_factory=LiveConfig)
    clips: ClipsConfig = field(default_factory=ClipsConfig)
    reconcile: ReconcileConfig = field(default_factory=ReconcileConfig)
    announcements: AnnouncementConfig = field(default_factory=AnnouncementConfig)
    discord_token: str = ""
    db_path: str = "liverelay.db"
    key_file: str = ".liverelay.key"

    @classmethod
    def from_yaml(cls, yaml_config: Optional[Dict[str, Any]],
                  secrets: Optional[Secrets] = None) -> "RelayConfig":
        """Load configuration from YAML config dict (+ env secrets)."""
        yaml_config = yaml_config or {}
        twitch_cfg = yaml_config.get("twitch", {})
        webhook_cfg = yaml_config.get("webhook", {})
        server_cfg = yaml_config.get("server", {})
        live_cfg = yaml_config.get("live", {})
        clips_cfg = yaml_config.get("clips", {})
        reconcile_cfg = yaml_config.get("reconcile", {})
        announce_cfg = yaml_config.get("announcements", {})
        database_cfg = yaml_config.get("database", {})
        discord_cfg = yaml_config.get("discord", {})

        config = cls(
            twitch=TwitchConfig(
                client_id=twitch_cfg.get("client_id", ""),
                client_secret=twitch_cfg.get("client_secret", ""),
                helix_timeout=float(twitch_cfg.get("helix_timeout", 8.0)),
            ),
            webhook=WebhookConfig(
                secret=webhook_cfg.get("secret", ""),
                callback_url=webhook_cfg.get("callback_url", ""),
                path=webhook_cfg.get("path", "/webhook"),
                max_age_seconds=int(webhook_cfg.get("max_age_seconds", 600)),
                dedup_size=int(webhook_cfg.get("dedup_size", 1000)),
                queue_size=int(webhook_cfg.get("queue_size", 1000)),
                workers=int(webhook_cfg.get("workers", 4)),
            ),
            server=ServerConfig(
                host=server_cfg.get("host", "0.0.0.0"),
                port=int(server_cfg.get("port", 3000)),
            ),
            live=LiveConfig(
                initial_delay=float(live_cfg.get("initial_delay", 5.0)),
                max_attempts=int(live_cfg.get("max_attempts", 3)),
                retry_delay=float(live_cfg.get("retry_delay", 2.0)),
                cooldown_seconds=int(live_cfg.get("cooldown_seconds", 30)),
            ),
            clips=ClipsConfig(
                poll_interval=int(clips_cfg.get("poll_interval", 300)),
                initial_delay=int(clips_cfg.get("initial_delay", 30)),
                lookback_minutes=int(clips_cfg.get("lookback_minutes", 120)),
                default_lookback_hours=int(clips_cfg.get("default_lookback_hours", 24)),
                entity_timeout=float(clips_cfg.get("entity_timeout", 60.0)),
                retention_days=int(clips_cfg.get("retention_days", 7)),
                absent_statuses=tuple(int(s) for s in clips_cfg.get("absent_statuses", (400, 404))),
                webhook_deletions=bool(clips_cfg.get("webhook_deletions", False)),
            ),
            reconcile=ReconcileConfig(
                sweep_interval=int(reconcile_cfg.get("sweep_interval", 3600)),
                sweep_timeout=float(reconcile_cfg.get("sweep_timeout", 300.0)),
                jitter_seconds=int(reconcile_cfg.get("jitter_seconds", 30)),
                create_attempts=int(reconcile_cfg.get("create_attempts", 3)),
                create_backoff=float(reconcile_cfg.get("create_backoff", 1.0)),
            ),
            announcements=AnnouncementConfig(
                stream_online=announce_cfg.get("stream_online", DEFAULT_STREAM_ONLINE_TEMPLATE),
                clip=announce_cfg.get("clip", DEFAULT_CLIP_TEMPLATE),
                show_game=bool(announce_cfg.get("show_game", True)),
                show_viewers=bool(announce_cfg.get("show_viewers", False)),
                show_followers=bool(announce_cfg.get("show_followers", True)),
            ),
            discord_token=discord_cfg.get("token", ""),
            db_path=database_cfg.get("path", "liverelay.db"),
            key_file=database_cfg.get("key_file", ".liverelay.key"),
        )

        if secrets is not None:
            config.apply_secrets(secrets)
        return config

    def apply_secrets(self, secrets: Secrets) -> None:
        """Environment values win over YAML when non-empty."""
        if secrets.twitch_client_id:
            self.twitch.client_id = secrets.twitch_client_id
        if secrets.twitch_client_secret:
            self.twitch.client_secret = secrets.twitch_client_secret
        if secrets.webhook_secret:
            self.webhook.secret = secrets.webhook_secret
        if secrets.webhook_url:
            self.webhook.callback_url = secrets.webhook_url
        if secrets.discord_token:
            self.discord_token = secrets.discord_token
        if secrets.database_path:
            self.db_path = secrets.database_path


def load_config(path: str, secrets: Optional[Secrets] = None) -> RelayConfig:
    """Read a YAML file into RelayConfig (missing file = defaults + env)."""
    config_file = Path(path)
    if config_file.exists():
        with open(config_file, "r", encoding="utf-8") as f:
            yaml_config = yaml.safe_load(f) or {}
    else:
        LOGGER.warning(f"⚠️ Config file not found: {path}, using defaults + environment")
        yaml_config = {}
    return RelayConfig.from_yaml(yaml_config, secrets=secrets)
