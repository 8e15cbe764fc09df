"""Pydantic models for the sync trigger and status endpoints."""

from __future__ import annotations

from datetime import datetime

from pydantic import Field, field_validator, model_validator

from src.models.base import PumpSyncBase
from src.pumpsync.base import RecordKind, as_utc


class TriggerAccepted(PumpSyncBase):
    trigger: str
    queued: bool  # False when coalesced into an identical queued request
    state: str


class DeleteRequest(PumpSyncBase):
    """Delete one entry (by timestamp) or every part of a group (by group id)."""

    timestamp: datetime | None = None
    group_id: str | None = Field(default=None, max_length=200)
    record_kind: RecordKind = RecordKind.PUMP_HISTORY

    @field_validator("timestamp")
    @classmethod
    def _timestamp_utc(cls, value: datetime | None) -> datetime | None:
        # Stored history is UTC; a naive timestamp means UTC as well.
        return as_utc(value) if value is not None else None

    @model_validator(mode="after")
    def _require_target(self) -> "DeleteRequest":
        if self.timestamp is None and self.group_id is None:
            raise ValueError("Either 'timestamp' or 'group_id' is required")
        if self.record_kind == RecordKind.GLUCOSE:
            raise ValueError("Glucose readings cannot be deleted")
        return self


class FailureRead(PumpSyncBase):
    kind: str
    operation: str
    size: int
    error: str | None = None


class SyncReportRead(PumpSyncBase):
    trigger: str
    ok: bool
    calls: int
    failures: list[FailureRead] = Field(default_factory=list)
    anomalies: int
    started_at: datetime | None = None
    finished_at: datetime | None = None


class SyncStatusRead(PumpSyncBase):
    state: str
    service: str | None = None
    queued: int
    reports: list[SyncReportRead] = Field(default_factory=list)


class ServiceSelect(PumpSyncBase):
    """Select (or replace) the upload service.

    Fields left out fall back to the process settings for that service.
    """

    service: str = Field(..., min_length=1, max_length=50)
    api_url: str | None = Field(default=None, max_length=500)
    dataset_id: str | None = Field(default=None, max_length=200)
    session_token: str | None = Field(default=None, max_length=1000)
    dose_chunk_limit: int | None = Field(default=None, ge=1)
    carb_chunk_limit: int | None = Field(default=None, ge=1)
    glucose_chunk_limit: int | None = Field(default=None, ge=1)

    def sink_state(self) -> dict:
        return self.model_dump(exclude={"service"}, exclude_none=True)


class ServiceRead(PumpSyncBase):
    service: str | None = None
    display_name: str | None = None
