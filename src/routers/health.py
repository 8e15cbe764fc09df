"""Liveness endpoint for the API process and its sync worker."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Request

from src.dependencies import AppSettings

router = APIRouter(tags=["system"])
logger = logging.getLogger("pumpsync.health")


@router.get("/health")
async def health_check(request: Request, settings: AppSettings) -> dict:
    """Always 200 while the process is up.

    Also reports whether the sync worker is running and which service it
    uploads to.
    """
    coordinator = getattr(request.app.state, "coordinator", None)
    worker_ok = coordinator is not None and coordinator.is_running
    if not worker_ok:
        logger.warning("Health check: sync worker is not running")

    sink = coordinator.sink if coordinator is not None else None
    return {
        "status": "healthy" if worker_ok else "degraded",
        "version": settings.app_version,
        "environment": settings.environment,
        "worker": coordinator.state.value if worker_ok else "stopped",
        "service": sink.SERVICE_ID if sink is not None else None,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
