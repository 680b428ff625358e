#!/usr/bin/env python3
"""
LiveRelay - Twitch EventSub → Discord relay

════════════════════════════════════════════════════════════════════════════
Copyright (c) 2024-2025 ElSerda

Licence propriétaire "Source-Disponible" - Voir LICENSE
════════════════════════════════════════════════════════════════════════════
"""

import argparse
import asyncio
import logging
import pathlib
import sys

import uvicorn

from core.config import get_secrets, load_config
from core.relay import build_relay
from web.server import create_app

# Logger will be configured in setup_logging()
LOGGER = logging.getLogger(__name__)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="LiveRelay - Twitch → Discord relay")
    parser.add_argument(
        '--config',
        type=str,
        default='config/config.yaml',
        help='Path to config file (default: config/config.yaml)'
    )
    parser.add_argument(
        '--db',
        type=str,
        default=None,
        help='Path to database file (overrides database.path)'
    )
    parser.add_argument(
        '--port',
        type=int,
        default=None,
        help='HTTP port for the webhook endpoint (overrides server.port)'
    )
    parser.add_argument(
        '--log-level',
        type=str,
        default='INFO',
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
    )
    return parser.parse_args(argv)


def setup_logging(level: str = "INFO") -> pathlib.Path:
    """Root logger: logs/liverelay.log + console."""
    logs_base = pathlib.Path("logs")
    logs_base.mkdir(exist_ok=True)
    log_file = logs_base / "liverelay.log"

    logging.basicConfig(
        level=getattr(logging, level),
        format="%(asctime)s %(levelname)-8s %(name)s %(message)s",
        handlers=[
            logging.FileHandler(log_file),
            logging.StreamHandler()
        ],
        force=True  # Override any existing config
    )
    # discord.py and httpx are chatty at INFO
    logging.getLogger("discord").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    return log_file


async def main(argv=None) -> int:
    args = parse_args(argv)
    log_file = setup_logging(args.log_level)
    LOGGER.info(f"📝 Logging to {log_file}")

    config = load_config(args.config, secrets=get_secrets())
    if args.db:
        config.db_path = args.db
    if args.port:
        config.server.port = args.port

    if not config.twitch.client_id or not config.twitch.client_secret:
        LOGGER.error("❌ TWITCH_CLIENT_ID / TWITCH_CLIENT_SECRET are required")
        return 1
    if not config.discord_token:
        LOGGER.error("❌ DISCORD_TOKEN is required")
        return 1
    if not config.webhook.callback_url:
        LOGGER.warning("⚠️ WEBHOOK_URL not set, Twitch subscriptions cannot be created")

    relay = build_relay(config)
    app = create_app(
        relay.gate,
        webhook_path=config.webhook.path,
        on_startup=relay.start,
        on_shutdown=relay.stop,
    )

    server = uvicorn.Server(uvicorn.Config(
        app,
        host=config.server.host,
        port=config.server.port,
        log_config=None,
    ))

    LOGGER.info(f"🚀 Listening on {config.server.host}:{config.server.port}{config.webhook.path}")
    await server.serve()
    LOGGER.info("Termine")
    return 0


if __name__ == "__main__":
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        print("\nAu revoir !")
    except Exception as e:
        LOGGER.error(f"Erreur fatale: {e}", exc_info=True)
        sys.exit(1)
