"""Tidepool data service sink.

Uploads reconciled data to a Tidepool dataset through the platform data API.
Every datum carries ``origin.id`` = the originating record's sync id, so
re-sending the same dose upserts instead of duplicating, and deletes are
addressed by that same id.

Environment variables:
    TIDEPOOL_API_URL        — API base (default https://api.tidepool.org)
    TIDEPOOL_DATASET_ID     — Target dataset (upload id)
    TIDEPOOL_SESSION_TOKEN  — Session token, obtained out of band

Endpoints used:
    POST   /v1/datasets/{datasetId}/data   — create / update data
    DELETE /v1/datasets/{datasetId}/data   — delete data by origin id

Tidepool has no notion of an in-progress dose: open (mutable) doses are not
sent and go out on a later pass once their end is known.
"""

from __future__ import annotations

import logging
import os
from datetime import datetime, timezone
from typing import Any, Sequence

import httpx

from src.pumpsync.base import (
    CarbEntry,
    DeviceEvent,
    DeviceEventKind,
    DoseInterval,
    DoseKind,
    GlucoseReading,
    UploadSink,
)
from src.pumpsync.errors import UploadError

logger = logging.getLogger("pumpsync.sinks.tidepool")

_TIDEPOOL_API_BASE = "https://api.tidepool.org"
_SESSION_HEADER = "X-Tidepool-Session-Token"


def _iso(dt: datetime) -> str:
    """Format an aware datetime the way Tidepool expects (UTC, millis, Z)."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


def encode_dose(dose: DoseInterval) -> dict[str, Any] | None:
    """Convert a dose to a Tidepool datum, or None if it must not be sent."""
    if dose.is_mutable:
        return None

    base: dict[str, Any] = {"time": _iso(dose.start), "origin": {"id": dose.sync_id}}
    if dose.kind == DoseKind.TEMP_BASAL:
        duration_ms = int((dose.end - dose.start).total_seconds() * 1000) if dose.end else 0
        return {
            **base,
            "type": "basal",
            "deliveryType": "temp",
            "duration": duration_ms,
            "rate": dose.scheduled_rate or 0.0,
            "payload": {"deliveredUnits": dose.volume, "automatic": dose.automatic},
        }
    if dose.kind == DoseKind.BOLUS:
        return {
            **base,
            "type": "bolus",
            "subType": "normal",
            "normal": dose.volume,
            "payload": {"automatic": dose.automatic, "manuallyEntered": dose.manually_entered},
        }
    if dose.kind == DoseKind.SUSPEND:
        return {**base, "type": "basal", "deliveryType": "suspend", "duration": 0}
    # A resume is expressed by the next basal datum.
    return None


_STATUS_SUBTYPES: dict[DeviceEventKind, dict[str, Any]] = {
    DeviceEventKind.SUSPEND: {"subType": "status", "status": "suspended", "reason": {"suspended": "automatic"}},
    DeviceEventKind.RESUME: {"subType": "status", "status": "resumed", "reason": {"resumed": "automatic"}},
    DeviceEventKind.REWIND: {"subType": "reservoirChange"},
    DeviceEventKind.PRIME: {"subType": "prime", "primeTarget": "tubing"},
    DeviceEventKind.ALARM: {"subType": "alarm", "alarmType": "other"},
}


def encode_device_event(event: DeviceEvent) -> dict[str, Any]:
    datum: dict[str, Any] = {
        "type": "deviceEvent",
        "time": _iso(event.timestamp),
        "origin": {"id": event.raw_id},
        **_STATUS_SUBTYPES[event.kind],
    }
    if event.title:
        datum["notes"] = [event.title]
    return datum


def encode_carb(entry: CarbEntry) -> dict[str, Any]:
    return {
        "type": "food",
        "time": _iso(entry.timestamp),
        "origin": {"id": entry.id},
        "nutrition": {"carbohydrate": {"net": entry.carbs, "units": "grams"}},
    }


def encode_glucose(reading: GlucoseReading) -> dict[str, Any]:
    datum: dict[str, Any] = {
        "type": "cbg",
        "time": _iso(reading.timestamp),
        "origin": {"id": reading.id},
        "units": "mg/dL",
        "value": reading.value,
    }
    if reading.trend:
        datum["trend"] = reading.trend
    return datum


def _origin_selector(sync_id: str | None) -> dict[str, Any]:
    return {"origin": {"id": sync_id}}


class TidepoolSink(UploadSink):
    """Upload sink for the Tidepool platform data API."""

    SERVICE_ID = "tidepool"
    DISPLAY_NAME = "Tidepool"

    def __init__(
        self,
        api_url: str | None = None,
        dataset_id: str | None = None,
        session_token: str | None = None,
        dose_chunk_limit: int | None = None,
        carb_chunk_limit: int | None = None,
        glucose_chunk_limit: int | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the Tidepool sink.

        Args:
            api_url:             API base (TIDEPOOL_API_URL env var).
            dataset_id:          Target dataset (TIDEPOOL_DATASET_ID env var).
            session_token:       Session token (TIDEPOOL_SESSION_TOKEN env var).
            dose_chunk_limit:    Server-advertised dose batch limit.
            carb_chunk_limit:    Server-advertised carb batch limit.
            glucose_chunk_limit: Server-advertised glucose batch limit.
            http_client:         Optional pre-configured httpx client (for testing).
        """
        self._api_url = (api_url or os.environ.get("TIDEPOOL_API_URL") or _TIDEPOOL_API_BASE).rstrip("/")
        self._dataset_id = dataset_id or os.environ.get("TIDEPOOL_DATASET_ID", "")
        self._session_token = session_token or os.environ.get("TIDEPOOL_SESSION_TOKEN", "")
        self.dose_chunk_limit = dose_chunk_limit
        self.carb_chunk_limit = carb_chunk_limit
        self.glucose_chunk_limit = glucose_chunk_limit
        self._http_client = http_client
        self._owns_client = http_client is None

    @property
    def raw_state(self) -> dict:
        return {
            "api_url": self._api_url,
            "dataset_id": self._dataset_id,
            "dose_chunk_limit": self.dose_chunk_limit,
            "carb_chunk_limit": self.carb_chunk_limit,
            "glucose_chunk_limit": self.glucose_chunk_limit,
        }

    # ------------------------------------------------------------------
    # UploadSink interface
    # ------------------------------------------------------------------

    async def upload_doses(
        self,
        created: Sequence[DoseInterval],
        updated: Sequence[DoseInterval],
        deleted: Sequence[DoseInterval],
    ) -> None:
        data = [d for d in (encode_dose(dose) for dose in [*created, *updated]) if d is not None]
        skipped = len(created) + len(updated) - len(data)
        if skipped:
            logger.debug("Tidepool: holding back %d open/resume dose(s)", skipped)
        if data:
            await self._send("POST", data)
        if deleted:
            await self._send("DELETE", [_origin_selector(d.sync_id) for d in deleted])

    async def upload_device_events(self, events: Sequence[DeviceEvent]) -> None:
        if events:
            await self._send("POST", [encode_device_event(e) for e in events])

    async def upload_carbs(
        self,
        created: Sequence[CarbEntry],
        updated: Sequence[CarbEntry],
        deleted: Sequence[CarbEntry],
    ) -> None:
        data = [encode_carb(c) for c in [*created, *updated]]
        if data:
            await self._send("POST", data)
        if deleted:
            await self._send("DELETE", [_origin_selector(c.id) for c in deleted])

    async def upload_glucose(self, readings: Sequence[GlucoseReading]) -> None:
        if readings:
            await self._send("POST", [encode_glucose(r) for r in readings])

    async def aclose(self) -> None:
        if self._http_client is not None and self._owns_client:
            await self._http_client.aclose()
            self._http_client = None

    # ------------------------------------------------------------------
    # HTTP helpers
    # ------------------------------------------------------------------

    def _build_headers(self) -> dict[str, str]:
        return {_SESSION_HEADER: self._session_token, "Content-Type": "application/json"}

    def _client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=30.0)
        return self._http_client

    async def _send(self, method: str, payload: list[dict[str, Any]]) -> None:
        """Send ``payload`` to the dataset data endpoint.

        Raises:
            UploadError: On transport failure or a non-2xx response.
        """
        if not self._dataset_id:
            raise UploadError("Tidepool dataset id is not configured")

        url = f"{self._api_url}/v1/datasets/{self._dataset_id}/data"
        try:
            response = await self._client().request(
                method, url, json=payload, headers=self._build_headers()
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise UploadError(
                f"Tidepool {method} rejected with HTTP {exc.response.status_code}",
                status_code=exc.response.status_code,
            ) from exc
        except httpx.HTTPError as exc:
            raise UploadError(f"Tidepool {method} failed: {exc}") from exc
        logger.debug("Tidepool %s %s → %d items", method, url, len(payload))
