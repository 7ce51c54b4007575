from __future__ import annotations

import asyncio
import contextlib
import logging
from datetime import UTC, datetime
from typing import AsyncIterator, Optional

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, generate_latest

from ..config import Settings, load_settings
from ..errors import OrbitmateError, ValidationError, error_body
from ..infrastructure.events import build_event_mirror
from ..infrastructure.message_store import MessageStore, build_message_store
from ..observability.metrics import metrics_middleware_factory
from ..services.broadcast_hub import BroadcastHub
from ..services.prompt_builder import PromptBuilder
from ..services.providers.registry import ProviderRegistry
from ..services.stream_coordinator import StreamCoordinator
from ..services.telemetry_logger import TelemetryLogger
from ..services.tools import ToolRegistry
from .routers.ai_info import router as ai_info_router
from .routers.logs import router as logs_router
from .routers.messages import router as messages_router
from .routers.sessions import router as sessions_router
from .routers.websocket import router as websocket_router

LOG = logging.getLogger("orbitmate.api")

API_NAME = "Orbitmate Chat API"
API_VERSION = "0.1.0"


def _health_payload(app: FastAPI) -> dict:
    settings: Settings = app.state.settings
    return {
        "status": "ok",
        "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
        "components": {
            "api": "ok",
            "store": settings.store_impl,
            "telemetry": "ok" if app.state.telemetry.is_open else "closed",
            "ws_connections": app.state.hub.stats()["total_connections"],
        },
    }


def create_app(
    settings: Optional[Settings] = None,
    *,
    store: Optional[MessageStore] = None,
    providers: Optional[ProviderRegistry] = None,
    telemetry: Optional[TelemetryLogger] = None,
    hub: Optional[BroadcastHub] = None,
    tools: Optional[ToolRegistry] = None,
) -> FastAPI:
    settings = settings or load_settings()
    store = store or build_message_store(settings)
    providers = providers or ProviderRegistry(default_provider=settings.default_provider)
    telemetry = telemetry or TelemetryLogger(
        settings.ai_log_dir,
        settings.ai_log_file,
        retention_days=settings.log_retention_days,
    )
    mirror = None
    if hub is None:
        mirror = build_event_mirror(settings.redis_url)
        hub = BroadcastHub(mirror=mirror, queue_size=settings.broadcast_queue_size)
    coordinator = StreamCoordinator(
        store,
        providers,
        telemetry,
        hub,
        prompt_builder=PromptBuilder(settings.default_system_prompt, settings.context_message_limit),
        tools=tools,
        settings=settings,
    )

    @contextlib.asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        telemetry.open()
        rotation = asyncio.create_task(telemetry.rotation_loop(settings.log_rotation_interval_s))
        LOG.info("orbitmate_started", extra={"store": settings.store_impl, "provider": settings.default_provider})
        try:
            yield
        finally:
            rotation.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await rotation
            telemetry.flush()
            telemetry.close()
            if mirror is not None:
                mirror.close()
            LOG.info("orbitmate_stopped")

    app = FastAPI(title=API_NAME, version=API_VERSION, lifespan=lifespan)
    app.state.settings = settings
    app.state.store = store
    app.state.providers = providers
    app.state.telemetry = telemetry
    app.state.hub = hub
    app.state.coordinator = coordinator

    @app.exception_handler(OrbitmateError)
    async def _orbitmate_error(request: Request, exc: OrbitmateError) -> JSONResponse:
        if not exc.exposes_detail:
            LOG.error("request_failed", extra={"path": request.url.path, "code": exc.code, "err": exc.message})
        return JSONResponse(status_code=exc.status_code, content=error_body(exc))

    @app.exception_handler(RequestValidationError)
    async def _request_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = exc.errors()
        if errors:
            first = errors[0]
            where = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
            message = f"{where}: {first.get('msg')}" if where else str(first.get("msg"))
        else:
            message = "Invalid request"
        err = ValidationError(message)
        return JSONResponse(status_code=err.status_code, content=error_body(err))

    # Observability: request latency histogram
    app.middleware("http")(metrics_middleware_factory())

    routers = (sessions_router, messages_router, ai_info_router, logs_router, websocket_router)
    for router in routers:
        app.include_router(router)
    # Also expose the same routers under /api
    for router in routers:
        app.include_router(router, prefix="/api")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/")
    def root():
        return {"name": API_NAME, "version": API_VERSION}

    @app.get("/health")
    def health():
        return _health_payload(app)

    @app.get("/metrics")
    def metrics() -> Response:
        data = generate_latest(REGISTRY)
        return Response(content=data, media_type=CONTENT_TYPE_LATEST)

    @app.get("/api")
    def api_root():
        return {"name": API_NAME, "version": API_VERSION}

    @app.get("/api/health")
    def api_health():
        return _health_payload(app)

    return app


app = create_app()
