"""Shared FastAPI dependencies injected into route handlers."""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, HTTPException, Request

from src.config import Settings, get_settings
from src.pumpsync.sync.scheduler import SyncCoordinator


async def get_coordinator(request: Request) -> SyncCoordinator:
    """Return the coordinator the lifespan hook stored on the app.

    Raises 503 while the worker is not running (startup or shutdown).
    """
    coordinator: SyncCoordinator | None = getattr(request.app.state, "coordinator", None)
    if coordinator is None or not coordinator.is_running:
        raise HTTPException(status_code=503, detail="Sync worker is not running")
    return coordinator


# Annotated shortcuts for route signatures
Coordinator = Annotated[SyncCoordinator, Depends(get_coordinator)]
AppSettings = Annotated[Settings, Depends(get_settings)]
