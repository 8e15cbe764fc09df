"""PumpSync API — FastAPI application entry point.

Exposes the sync entry points over HTTP so that upstream stores (or an
operator) can trigger passes.

Run locally:
    uvicorn src.main:app --reload --port 8000
"""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import AsyncGenerator, Callable

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from src.config import Settings, get_settings
from src.pumpsync.broadcaster import Broadcaster
from src.pumpsync.config_loader import get_sync_config
from src.pumpsync.service_state import ServiceState
from src.pumpsync.sinks import build_sink
from src.pumpsync.storage import JsonFileEventSource
from src.pumpsync.sync.scheduler import SyncCoordinator
from src.routers import health, sync

# ---------- Logging ----------

logging.basicConfig(
    level=get_settings().log_level.upper(),
    format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    stream=sys.stdout,
)
logger = logging.getLogger("pumpsync")


# ---------- Wiring ----------

def build_coordinator(settings: Settings) -> SyncCoordinator:
    """Assemble the event source, the persisted sink and the coordinator."""
    config = get_sync_config()
    source = JsonFileEventSource(
        settings.monitor_dir,
        recent_window=timedelta(hours=config.storage.recent_window_hours),
    )

    overrides = settings.sink_overrides()
    service_state = ServiceState(settings.service_state_path, overrides)
    sink = service_state.current()
    if sink is None:
        sink = build_sink(settings.sink_kind, overrides=overrides.get(settings.sink_kind))
        service_state.set(sink)

    coordinator = SyncCoordinator(source, sink, config=config)
    coordinator.follow(service_state)
    return coordinator


# ---------- App factory ----------

def create_app(
    coordinator_factory: Callable[[Settings], SyncCoordinator] = build_coordinator,
) -> FastAPI:
    settings = get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Startup / shutdown hooks."""
        logger.info(
            "Starting PumpSync API v%s [%s]",
            settings.app_version,
            settings.environment,
        )
        coordinator = coordinator_factory(settings)
        bus = Broadcaster()
        coordinator.subscribe(bus)
        app.state.coordinator = coordinator
        app.state.broadcaster = bus
        await coordinator.start()
        yield
        await coordinator.stop()
        sink = coordinator.sink
        if sink is not None:
            await sink.aclose()
        logger.info("PumpSync API shut down")

    app = FastAPI(
        title=f"{settings.app_name} API",
        description="Pump history reconciliation and remote data service synchronization.",
        version=settings.app_version,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        debug=settings.debug,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ---------- Health check (outside v1 prefix — always at /health) ----------
    app.include_router(health.router)

    # ---------- API v1 routes ----------
    app.include_router(sync.router, prefix="/api/v1")

    return app


app = create_app()
