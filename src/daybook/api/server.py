"""Daybook REST API Server — FastAPI application.

Architecture:
    - One ServiceContainer per app (store, memory, dispatcher, audio bridge)
    - The Dispatcher is the only path for text turns; routers stay thin
    - Bearer token auth via DAYBOOK_API_TOKEN
    - Domain errors map to JSON ``{error}`` bodies; nothing raw leaks out

Endpoints:
    GET    /api/health                    — Health check
    POST   /api/assistant/chat            — Send a message, get a reply
    GET    /api/assistant/conversations   — Recent turns
    GET    /api/assistant/memory          — Read memories
    POST   /api/assistant/memory          — Upsert a memory
    PUT    /api/assistant/memory          — Update a memory
    DELETE /api/assistant/memory          — Clear memories
    GET    /api/assistant/memory/export   — Export memories
    POST   /api/assistant/memory/import   — Import memories
    POST   /api/assistant/feedback        — Feedback on a turn
    GET    /api/assistant/audio-status    — Audio bridge status
    WS     /api/realtime-audio            — Realtime audio session

Usage:
    from daybook.api.server import create_app, run_http_server

    app = create_app()
    run_http_server(port=8000)
"""
from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from daybook import __version__
from daybook.api.auth import configure_token, is_auth_enabled
from daybook.api.models import ErrorResponse, HealthResponse
from daybook.config import Settings
from daybook.container import ServiceContainer
from daybook.errors import NotFoundError, ValidationError
from daybook.realtime.ratelimit import SlidingWindowRateLimiter

logger = logging.getLogger(__name__)

INTERNAL_ERROR_MESSAGE = "I had trouble processing your request. Please try again."


def create_app(
    container: Optional[ServiceContainer] = None,
    settings: Optional[Settings] = None,
) -> FastAPI:
    """Create the FastAPI application.

    Parameters
    ----------
    container:
        Pre-built services (tests pass one over an in-memory store).
        If None, one is built from *settings* at startup.
    settings:
        Defaults to the container's settings, then :meth:`Settings.from_env`.

    Returns
    -------
    FastAPI
        Configured application ready to serve.
    """
    if settings is None:
        settings = container.settings if container is not None else Settings.from_env()
    configure_token(settings.api_token)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Manage application lifecycle."""
        if app.state.container is None:
            app.state.container = ServiceContainer.build(settings)
        app.state.container.start()

        auth_status = "enabled" if is_auth_enabled() else "DISABLED (dev mode)"
        logger.info("Daybook HTTP API started — auth=%s, docs=/docs", auth_status)

        yield

        await app.state.container.stop()
        logger.info("Daybook HTTP API stopped")

    app = FastAPI(
        title="Daybook API",
        description="Daybook calendar assistant — text chat, memory, feedback and realtime audio.",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    # ── CORS ────────────────────────────────────────────────────────
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ── App state ───────────────────────────────────────────────────
    app.state.container = container
    app.state.settings = settings
    app.state.start_time = time.time()
    app.state.chat_limiter = SlidingWindowRateLimiter(settings.rate_limit_rpm, 60.0)

    # ── Exception handlers ──────────────────────────────────────────
    @app.exception_handler(ValidationError)
    async def _validation_error(request: Request, exc: ValidationError) -> JSONResponse:
        return JSONResponse(status_code=400, content=ErrorResponse(error=str(exc)).model_dump())

    @app.exception_handler(RequestValidationError)
    async def _schema_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = exc.errors()
        detail = errors[0].get("msg", "Invalid request") if errors else "Invalid request"
        return JSONResponse(status_code=400, content=ErrorResponse(error=str(detail)).model_dump())

    @app.exception_handler(NotFoundError)
    async def _not_found(request: Request, exc: NotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content=ErrorResponse(error=str(exc)).model_dump())

    @app.exception_handler(Exception)
    async def _global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled API error: %s", exc)
        return JSONResponse(
            status_code=500,
            content=ErrorResponse(error=INTERNAL_ERROR_MESSAGE).model_dump(),
        )

    # ── Register routers ────────────────────────────────────────────
    from daybook.api.audio import router as audio_router
    from daybook.api.chat import router as chat_router
    from daybook.api.feedback import router as feedback_router
    from daybook.api.memory import router as memory_router

    app.include_router(chat_router)
    app.include_router(memory_router)
    app.include_router(feedback_router)
    app.include_router(audio_router)

    @app.get(
        "/api/health",
        response_model=HealthResponse,
        summary="Health check",
        tags=["system"],
    )
    async def health(request: Request) -> HealthResponse:
        """Health endpoint — no auth required."""
        current = request.app.state.container
        return HealthResponse(
            version=__version__,
            uptime_seconds=round(time.time() - request.app.state.start_time, 2),
            audio_enabled=bool(current is not None and current.bridge.enabled),
        )

    return app


def run_http_server(
    settings: Optional[Settings] = None,
    *,
    host: str = "0.0.0.0",
    port: int = 8000,
    log_level: str = "info",
) -> None:
    """Start the Daybook HTTP server (blocking).

    This is the main entry point for ``daybook serve``.

    Parameters
    ----------
    settings:
        Process settings; defaults to the environment.
    host:
        Bind address (default: 0.0.0.0).
    port:
        Port number (default: 8000).
    log_level:
        Uvicorn log level.
    """
    import uvicorn

    settings = settings or Settings.from_env()
    # Fail fast on a missing DATABASE_URL instead of inside the lifespan.
    container = ServiceContainer.build(settings)
    app = create_app(container=container, settings=settings)

    logger.info("Daybook HTTP API on http://%s:%d (docs: /docs, health: /api/health)", host, port)
    if not settings.audio_enabled:
        logger.warning("SPEECH_API_KEY not set: realtime audio is disabled")

    uvicorn.run(
        app,
        host=host,
        port=port,
        log_level=log_level,
        access_log=True,
    )
