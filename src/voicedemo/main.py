"""
FastAPI application entry point.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncGenerator

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from voicedemo import __version__
from voicedemo.calls.expiry import DemoExpiryScheduler
from voicedemo.config import Settings, get_settings
from voicedemo.demo.router import router as demo_router
from voicedemo.media.lifecycle import ShutdownCoordinator
from voicedemo.media.sockets import AudioSocketManager, Connector
from voicedemo.media.streams import MediaStreamBridge
from voicedemo.shared.correlation import CorrelationIdMiddleware, request_id_for
from voicedemo.shared.database import SessionScope, get_database_manager, get_session_scope
from voicedemo.shared.exceptions import AppException
from voicedemo.shared.logging import get_logger, setup_logging
from voicedemo.telephony.twilio_adapter import TwilioAdapter
from voicedemo.telephony.webhooks.router import router as twilio_webhooks_router
from voicedemo.voice.registry import VoiceProviderRegistry, build_voice_registry
from voicedemo.voice.webhooks.router import router as voice_webhooks_router

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager."""
    setup_logging()
    settings: Settings = app.state.settings
    sockets: AudioSocketManager = app.state.socket_manager
    coordinator: ShutdownCoordinator = app.state.shutdown_coordinator
    expiry: DemoExpiryScheduler = app.state.expiry_scheduler

    logger.info(
        "Application starting",
        extra={"env": settings.app_env, "voice_provider": settings.voice_provider},
    )

    loop = asyncio.get_running_loop()
    sockets.start()
    expiry.start()
    coordinator.install(loop)

    yield

    logger.info("Shutting down application")
    try:
        await expiry.stop()
        await coordinator.shutdown("lifespan shutdown")
    finally:
        coordinator.uninstall(loop)
        await app.state.voice_registry.close()
        app.state.twilio_adapter.close()
        await get_database_manager().close()
    logger.info("Application shutdown complete")


def _error_body(request: Request, code: str, message: str, details: dict[str, Any]) -> dict[str, Any]:
    return {
        "error": code,
        "message": message,
        "requestId": request_id_for(request),
        "details": details,
    }


def create_app(
    settings: Settings | None = None,
    *,
    registry: VoiceProviderRegistry | None = None,
    twilio_adapter: TwilioAdapter | None = None,
    socket_connect: Connector | None = None,
    session_scope: SessionScope | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Collaborators can be injected for tests; by default they are built
    from settings and the environment.
    """
    settings = settings or get_settings()

    app = FastAPI(
        title="Voice Demo API",
        description="Voice agent demo backend: provider webhooks and Twilio media bridge",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
    )

    bridge = MediaStreamBridge()
    sockets = AudioSocketManager(
        bridge,
        url=settings.awaz_stream_url,
        api_key=settings.awaz_api_key,
        default_agent_id=settings.awaz_agent_id,
        heartbeat_interval=settings.socket_heartbeat_interval_seconds,
        heartbeat_timeout=settings.socket_heartbeat_timeout_seconds,
        connect_timeout=settings.socket_connect_timeout_seconds,
        connect=socket_connect,
    )

    app.state.settings = settings
    app.state.voice_registry = registry or build_voice_registry(settings)
    app.state.twilio_adapter = twilio_adapter or TwilioAdapter()
    app.state.media_bridge = bridge
    app.state.socket_manager = sockets
    app.state.shutdown_coordinator = ShutdownCoordinator(sockets, bridge)
    app.state.expiry_scheduler = DemoExpiryScheduler(
        session_scope or get_session_scope(),
        interval_seconds=settings.demo_expiry_interval_seconds,
    )

    @app.exception_handler(AppException)
    async def _app_exception(request: Request, exc: AppException) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error(
                "Request failed",
                extra={"path": request.url.path, "code": exc.code, "error": exc.message},
            )
        return JSONResponse(
            status_code=exc.status_code,
            content=_error_body(request, exc.code, exc.message, exc.details),
        )

    # Request validation (FastAPI/Pydantic) -> consistent 422 payload
    @app.exception_handler(RequestValidationError)
    async def _request_validation(request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = [
            {
                "field": ".".join(str(loc) for loc in error["loc"]),
                "message": error["msg"],
                "type": error["type"],
            }
            for error in exc.errors()
        ]
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content=_error_body(request, "VALIDATION_ERROR", "Request validation failed", {"errors": errors}),
        )

    @app.exception_handler(Exception)
    async def _unhandled(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error", extra={"path": request.url.path})
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=_error_body(request, "INTERNAL_ERROR", "Internal server error", {}),
        )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(CorrelationIdMiddleware)

    app.include_router(voice_webhooks_router)
    app.include_router(twilio_webhooks_router)
    app.include_router(demo_router)

    @app.get("/health")
    async def health_check() -> dict[str, Any]:
        return {
            "ok": True,
            "version": __version__,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "activeStreams": len(bridge),
            "activeConnections": len(sockets),
        }

    return app


app = create_app()
