"""Trigger and status endpoints for the sync coordinator.

Every trigger answers 202: the request is queued and runs after any pass
already in flight.  The active upload service is selected and removed
through ``/sync/service``; the coordinator picks the change up for its next
pass.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, HTTPException

from src.dependencies import AppSettings, Coordinator
from src.models.base import ErrorDetail
from src.models.sync import (
    DeleteRequest,
    ServiceRead,
    ServiceSelect,
    SyncStatusRead,
    TriggerAccepted,
)
from src.pumpsync.service_state import ServiceState
from src.pumpsync.sinks import build_sink

router = APIRouter(
    prefix="/sync",
    tags=["sync"],
    responses={503: {"model": ErrorDetail, "description": "Sync worker is not running"}},
)


def _accepted(trigger: str, queued: bool, coordinator: Coordinator) -> dict[str, Any]:
    return {"trigger": trigger, "queued": queued, "state": coordinator.state.value}


@router.post("/doses", response_model=TriggerAccepted, status_code=202)
async def trigger_doses(coordinator: Coordinator) -> Any:
    return _accepted("new_dose_data", coordinator.on_new_dose_data(), coordinator)


@router.post("/device-events", response_model=TriggerAccepted, status_code=202)
async def trigger_device_events(coordinator: Coordinator) -> Any:
    return _accepted("new_device_event", coordinator.on_new_device_event(), coordinator)


@router.post("/carbs", response_model=TriggerAccepted, status_code=202)
async def trigger_carbs(coordinator: Coordinator) -> Any:
    return _accepted("new_carb_data", coordinator.on_new_carb_data(), coordinator)


@router.post("/full", response_model=TriggerAccepted, status_code=202)
async def trigger_full_resync(coordinator: Coordinator) -> Any:
    return _accepted("full_resync", coordinator.force_full_resync(), coordinator)


@router.post("/deletions", response_model=TriggerAccepted, status_code=202)
async def request_deletion(body: DeleteRequest, coordinator: Coordinator) -> Any:
    queued = coordinator.on_delete_requested(body.timestamp, body.group_id, body.record_kind)
    return _accepted("delete_requested", queued, coordinator)


@router.get("/status", response_model=SyncStatusRead)
async def sync_status(coordinator: Coordinator) -> Any:
    sink = coordinator.sink
    return {
        "state": coordinator.state.value,
        "service": sink.SERVICE_ID if sink is not None else None,
        "queued": coordinator.queued_count,
        "reports": [r.to_dict() for r in reversed(coordinator.reports)],
    }


# ---------------------------------------------------------------------------
# Upload service selection
# ---------------------------------------------------------------------------


def _service_state(coordinator: Coordinator) -> ServiceState:
    state = coordinator.service_state
    if state is None:
        raise HTTPException(status_code=409, detail="Upload service selection is not enabled")
    return state


def _service_read(coordinator: Coordinator) -> dict[str, Any]:
    sink = coordinator.sink
    if sink is None:
        return {"service": None, "display_name": None}
    return {"service": sink.SERVICE_ID, "display_name": sink.DISPLAY_NAME}


@router.get("/service", response_model=ServiceRead)
async def get_service(coordinator: Coordinator) -> Any:
    return _service_read(coordinator)


@router.put("/service", response_model=ServiceRead)
async def select_service(body: ServiceSelect, coordinator: Coordinator, settings: AppSettings) -> Any:
    """Add or replace the upload service.

    Fields missing from the body are taken from the process settings for
    that service.  Passes already queued run against the new sink.
    """
    state = _service_state(coordinator)
    defaults = settings.sink_overrides().get(body.service, {})
    try:
        sink = build_sink(body.service, state=defaults, overrides=body.sink_state())
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Unknown upload service '{body.service}'")
    if sink is None:
        raise HTTPException(
            status_code=422, detail=f"Invalid settings for upload service '{body.service}'"
        )
    state.set(sink)
    return _service_read(coordinator)


@router.delete("/service", response_model=ServiceRead)
async def remove_service(coordinator: Coordinator) -> Any:
    """Remove the upload service; later passes skip uploads until one is set."""
    _service_state(coordinator).clear()
    return _service_read(coordinator)
