"""Shared fixtures and record builders for PumpSync tests."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from src.pumpsync.base import CarbEntry, EventKind, GlucoseReading, RawEvent
from src.pumpsync.config_loader import SyncConfig, load_sync_config
from src.pumpsync.sinks.memory import RecordingSink

# Canonical start of every test stream
T0 = datetime(2026, 3, 1, 8, 0, 0, tzinfo=timezone.utc)


def at(minutes: float) -> datetime:
    """Return T0 + ``minutes``."""
    return T0 + timedelta(minutes=minutes)


# ---------------------------------------------------------------------------
# Raw event builders
# ---------------------------------------------------------------------------


def temp_basal(minutes: float, rate: float | None, event_id: str | None = None) -> RawEvent:
    return RawEvent(
        id=event_id or f"tb-{minutes}",
        timestamp=at(minutes),
        kind=EventKind.TEMP_BASAL,
        rate=rate,
    )


def duration(minutes: float, length: int | None, event_id: str | None = None) -> RawEvent:
    return RawEvent(
        id=event_id or f"tbd-{minutes}",
        timestamp=at(minutes),
        kind=EventKind.TEMP_BASAL_DURATION,
        duration_minutes=length,
    )


def bolus(minutes: float, amount: float | None, event_id: str | None = None) -> RawEvent:
    return RawEvent(
        id=event_id or f"bolus-{minutes}",
        timestamp=at(minutes),
        kind=EventKind.BOLUS,
        amount=amount,
    )


def pump_event(minutes: float, kind: EventKind, note: str | None = None) -> RawEvent:
    return RawEvent(id=f"{kind.value}-{minutes}", timestamp=at(minutes), kind=kind, note=note)


def carb(minutes: float, grams: float, group_id: str | None = None, event_id: str | None = None) -> CarbEntry:
    return CarbEntry(
        id=event_id or f"carb-{minutes}-{group_id}",
        timestamp=at(minutes),
        carbs=grams,
        is_fpu=group_id is not None,
        group_id=group_id,
    )


def glucose(minutes: float, value: float, reading_id: str) -> GlucoseReading:
    return GlucoseReading(id=reading_id, timestamp=at(minutes), value=value)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def sync_config() -> SyncConfig:
    """Built-in defaults, independent of the YAML on disk."""
    return SyncConfig()


@pytest.fixture
def bundled_config() -> SyncConfig:
    """Load the real sync config for tests."""
    return load_sync_config()


@pytest.fixture
def recording_sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def scenario_events() -> list[RawEvent]:
    """Temp basal with duration, a bolus, then a temp basal still running."""
    return [
        temp_basal(0, 1.0),
        duration(0, 30),
        bolus(40, 2.0),
        temp_basal(60, 0.5),
    ]
