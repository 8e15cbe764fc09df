"""Canonical data models for the PumpSync reconciliation engine.

Raw pump history records are parsed into ``RawEvent`` values and never
modified afterwards.  The reconciler turns them into ``DoseInterval`` values,
the translator into ``DeviceEvent`` values; both are consumed by the batch
synchronizer and the upload sinks.

Everything in here is plain value data.  Ordering is by timestamp with ties
broken by arrival order (Python's sort is stable, so ``sorted`` on the
timestamp alone gives exactly that).
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Iterable, Sequence
from uuid import UUID

logger = logging.getLogger("pumpsync")


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class EventKind(str, Enum):
    """Pump history record types, valued as the pump history store writes them."""

    TEMP_BASAL = "TempBasal"
    TEMP_BASAL_DURATION = "TempBasalDuration"
    BOLUS = "Bolus"
    SUSPEND = "PumpSuspend"
    RESUME = "PumpResume"
    REWIND = "Rewind"
    PRIME = "Prime"
    ALARM = "PumpAlarm"
    OTHER = "Other"

    @classmethod
    def parse(cls, value: object) -> "EventKind":
        try:
            return cls(value)
        except ValueError:
            return cls.OTHER


class DoseKind(str, Enum):
    TEMP_BASAL = "tempBasal"
    BOLUS = "bolus"
    SUSPEND = "suspend"
    RESUME = "resume"


class DeviceEventKind(str, Enum):
    SUSPEND = "suspend"
    RESUME = "resume"
    REWIND = "rewind"
    PRIME = "prime"
    ALARM = "alarm"


class RecordKind(str, Enum):
    """Record families held by the event source."""

    PUMP_HISTORY = "pump_history"
    CARB_HISTORY = "carb_history"
    GLUCOSE = "glucose"


# ---------------------------------------------------------------------------
# Raw input
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RawEvent:
    """One pump history record.

    Attributes:
        id:               Unique identifier assigned by the pump history store.
        timestamp:        UTC time the event happened.
        kind:             Record type.
        rate:             Temp basal rate in U/h (``TempBasal`` only).
        duration_minutes: Temp basal duration (``TempBasalDuration`` only).
        amount:           Insulin units (``Bolus`` only).
        note:             Free text attached by the device or the user.
    """

    id: str
    timestamp: datetime
    kind: EventKind
    rate: float | None = None
    duration_minutes: int | None = None
    amount: float | None = None
    note: str | None = None


@dataclass(frozen=True)
class CarbEntry:
    """A carbohydrate (or fat/protein equivalent) entry.

    Fat/protein entries are split into several parts that share ``group_id``.
    """

    id: str
    timestamp: datetime
    carbs: float
    is_fpu: bool = False
    group_id: str | None = None
    note: str | None = None


@dataclass(frozen=True)
class GlucoseReading:
    id: str
    timestamp: datetime
    value: float  # mg/dL
    trend: str | None = None

    @property
    def has_valid_id(self) -> bool:
        """Return True if the reading id is a well-formed UUID."""
        try:
            UUID(self.id)
        except (TypeError, ValueError, AttributeError):
            return False
        return True


# ---------------------------------------------------------------------------
# Reconciled output
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DoseInterval:
    """A reconciled insulin delivery segment.

    Attributes:
        kind:             Dose type.
        start:            UTC start of delivery.
        end:              UTC end of delivery, None while still open.
        volume:           Delivered insulin units (never negative).
        scheduled_rate:   Programmed rate in U/h (temp basal only).
        sync_id:          Id of the raw event this dose came from.
        is_mutable:       True while the end of the dose is not yet known.
        automatic:        True for doses the pump enacted on its own.
        manually_entered: True for doses typed in by the user.
    """

    kind: DoseKind
    start: datetime
    end: datetime | None = None
    volume: float = 0.0
    scheduled_rate: float | None = None
    sync_id: str | None = None
    is_mutable: bool = False
    automatic: bool = True
    manually_entered: bool = False

    def __post_init__(self) -> None:
        if self.end is not None and self.end < self.start:
            raise ValueError(f"Dose end {self.end} precedes start {self.start}")
        if self.volume < 0:
            raise ValueError(f"Dose volume must be >= 0, got {self.volume}")

    @property
    def duration_hours(self) -> float | None:
        if self.end is None:
            return None
        return (self.end - self.start).total_seconds() / 3600.0

    @property
    def timestamp(self) -> datetime:
        return self.start

    @classmethod
    def suspend_marker(cls, at: datetime, sync_id: str | None = None) -> "DoseInterval":
        return cls(kind=DoseKind.SUSPEND, start=at, sync_id=sync_id)

    @classmethod
    def resume_marker(cls, at: datetime, sync_id: str | None = None) -> "DoseInterval":
        return cls(kind=DoseKind.RESUME, start=at, sync_id=sync_id)


@dataclass
class DeviceEvent:
    """A non-dose pump occurrence.

    ``is_uploaded`` starts False and is flipped by the batch synchronizer once
    the sink has accepted the event.
    """

    kind: DeviceEventKind
    timestamp: datetime
    raw_id: str
    dose: DoseInterval | None = None
    title: str | None = None
    is_uploaded: bool = False


# ---------------------------------------------------------------------------
# Ordering
# ---------------------------------------------------------------------------


def sort_events(events: Iterable[RawEvent]) -> list[RawEvent]:
    """Order raw events by timestamp, keeping arrival order for ties."""
    return sorted(events, key=lambda e: e.timestamp)


def sort_doses(doses: Iterable[DoseInterval]) -> list[DoseInterval]:
    """Order doses by start time, keeping emission order for ties."""
    return sorted(doses, key=lambda d: d.start)


# ---------------------------------------------------------------------------
# Parsing helpers for the JSON shapes the pump history store writes
# ---------------------------------------------------------------------------


def _safe_float(value: object) -> float | None:
    """Safely coerce a value to float, returning None on failure."""
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _safe_int(value: object) -> int | None:
    """Safely coerce a value to int, returning None on failure."""
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def as_utc(dt: datetime) -> datetime:
    """Return ``dt`` as an aware UTC datetime; naive values are taken to be UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_timestamp(value: object) -> datetime | None:
    """Parse an ISO-8601 string or epoch milliseconds into an aware UTC datetime.

    Naive strings are assumed to be UTC.  Returns None if unparseable.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
    else:
        try:
            dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            logger.warning("Could not parse datetime string: %r", value)
            return None
    return as_utc(dt)


def parse_raw_event(raw: dict) -> RawEvent | None:
    """Build a RawEvent from a pump history JSON record.

    Accepts both ``type`` and ``_type`` keys and the ``duration (min)`` key
    used for temp basal durations.  Returns None when the record has no id
    or no usable timestamp.
    """
    event_id = raw.get("id")
    timestamp = parse_timestamp(raw.get("timestamp"))
    if not event_id or timestamp is None:
        logger.warning("Skipping pump history record without id/timestamp: %r", raw)
        return None

    return RawEvent(
        id=str(event_id),
        timestamp=timestamp,
        kind=EventKind.parse(raw.get("type") or raw.get("_type")),
        rate=_safe_float(raw.get("rate")),
        duration_minutes=_safe_int(
            raw.get("duration (min)", raw.get("duration_minutes", raw.get("duration")))
        ),
        amount=_safe_float(raw.get("amount")),
        note=raw.get("note"),
    )


def parse_carb_entry(raw: dict) -> CarbEntry | None:
    event_id = raw.get("id")
    timestamp = parse_timestamp(raw.get("created_at") or raw.get("actualDate"))
    carbs = _safe_float(raw.get("carbs"))
    if not event_id or timestamp is None or carbs is None:
        logger.warning("Skipping malformed carb entry: %r", raw)
        return None
    return CarbEntry(
        id=str(event_id),
        timestamp=timestamp,
        carbs=carbs,
        is_fpu=bool(raw.get("isFPU", False)),
        group_id=raw.get("fpuID"),
        note=raw.get("note"),
    )


def parse_glucose_reading(raw: dict) -> GlucoseReading | None:
    timestamp = parse_timestamp(raw.get("dateString") or raw.get("date"))
    value = _safe_float(raw.get("glucose", raw.get("sgv")))
    if timestamp is None or value is None:
        return None
    return GlucoseReading(
        id=str(raw.get("_id", "")),
        timestamp=timestamp,
        value=value,
        trend=raw.get("direction"),
    )


# ---------------------------------------------------------------------------
# Collaborator interfaces
# ---------------------------------------------------------------------------


class EventSource(ABC):
    """Read-only access to the stored pump, carb and glucose history."""

    @abstractmethod
    def recent(self, kind: RecordKind = RecordKind.PUMP_HISTORY) -> Sequence:
        """Return the most recent records of ``kind``, oldest first (may be empty)."""

    @abstractmethod
    def retrieve_all(self, kind: RecordKind) -> Sequence:
        """Return the full stored history of ``kind``."""


class UploadSink(ABC):
    """Abstract remote data service that accepts dose and device-event uploads.

    Every upload method returns None on success and raises
    ``UploadError`` when the service reports failure.

    Subclasses must implement:
        - upload_doses()
        - upload_device_events()

    Optional overrides (no-op by default):
        - upload_carbs()
        - upload_glucose()
    """

    #: Registry tag, stored as ``serviceIdentifier`` in the persisted state.
    SERVICE_ID: str = "unknown"

    #: Human-readable name for logging.
    DISPLAY_NAME: str = "Unknown Service"

    #: Server-advertised batch limits; None means "use the configured default".
    dose_chunk_limit: int | None = None
    carb_chunk_limit: int | None = None
    glucose_chunk_limit: int | None = None

    @abstractmethod
    async def upload_doses(
        self,
        created: Sequence[DoseInterval],
        updated: Sequence[DoseInterval],
        deleted: Sequence[DoseInterval],
    ) -> None:
        """Upload one batch of doses."""

    @abstractmethod
    async def upload_device_events(self, events: Sequence[DeviceEvent]) -> None:
        """Upload device events."""

    async def upload_carbs(
        self,
        created: Sequence[CarbEntry],
        updated: Sequence[CarbEntry],
        deleted: Sequence[CarbEntry],
    ) -> None:
        return None

    async def upload_glucose(self, readings: Sequence[GlucoseReading]) -> None:
        return None

    @property
    def raw_state(self) -> dict:
        """Service-specific state needed to rebuild this sink later."""
        return {}

    @property
    def raw_value(self) -> dict:
        return {"serviceIdentifier": self.SERVICE_ID, "state": self.raw_state}

    @classmethod
    def from_raw_state(cls, raw_state: dict) -> "UploadSink | None":
        """Rebuild a sink from ``raw_state``; None if the state is unusable."""
        try:
            return cls(**raw_state)
        except TypeError as exc:
            logger.warning("Cannot restore %s from raw state: %s", cls.__name__, exc)
            return None

    async def aclose(self) -> None:
        return None
