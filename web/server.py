#!/usr/bin/env python3
"""
LiveRelay HTTP server - FastAPI

Expose le endpoint webhook EventSub et un health check.
Le lifespan démarre / arrête les composants du relay (queue, poller...).
"""

import logging
import time
from contextlib import asynccontextmanager
from typing import Awaitable, Callable, Optional

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse, PlainTextResponse

from core.models import to_iso, utcnow
from web.webhook_gate import WebhookGate

logger = logging.getLogger(__name__)

Hook = Callable[[], Awaitable[None]]


def create_app(
    gate: WebhookGate,
    webhook_path: str = "/webhook",
    on_startup: Optional[Hook] = None,
    on_shutdown: Optional[Hook] = None,
) -> FastAPI:
    """
    Construit l'app FastAPI autour d'un WebhookGate.

    Args:
        gate: authenticates and routes webhook callbacks
        webhook_path: POST route Twitch calls back
        on_startup: awaited before the server accepts requests
        on_shutdown: awaited after the server stops accepting requests
    """
    started_at = time.monotonic()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup/shutdown events."""
        logger.info("🚀 LiveRelay HTTP server starting...")
        if on_startup:
            await on_startup()
        try:
            yield
        finally:
            if on_shutdown:
                await on_shutdown()
            logger.info("👋 LiveRelay HTTP server shutting down...")

    app = FastAPI(
        title="LiveRelay",
        description="Twitch EventSub → Discord relay",
        version="1.0.0",
        lifespan=lifespan,
    )

    @app.middleware("http")
    async def security_headers(request: Request, call_next):
        response: Response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        return response

    @app.post(webhook_path)
    async def webhook(request: Request):
        body = await request.body()
        result = gate.handle(request.headers, body)
        if result.media_type == "text/plain":
            return PlainTextResponse(result.body, status_code=result.status)
        return JSONResponse(result.body, status_code=result.status)

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {
            "status": "ok",
            "timestamp": to_iso(utcnow()),
            "uptime": round(time.monotonic() - started_at, 3),
        }

    return app
