"""Translate non-dose pump records into device events."""

from __future__ import annotations

import logging
from typing import Iterable

from src.pumpsync.base import (
    DeviceEvent,
    DeviceEventKind,
    DoseInterval,
    EventKind,
    RawEvent,
    sort_events,
)

logger = logging.getLogger("pumpsync.translator")

# Raw kind → device event kind.  Kinds missing here have no device-event form.
DEVICE_EVENT_MAP: dict[EventKind, DeviceEventKind] = {
    EventKind.SUSPEND: DeviceEventKind.SUSPEND,
    EventKind.RESUME: DeviceEventKind.RESUME,
    EventKind.REWIND: DeviceEventKind.REWIND,
    EventKind.PRIME: DeviceEventKind.PRIME,
    EventKind.ALARM: DeviceEventKind.ALARM,
}


def translate_event(event: RawEvent) -> DeviceEvent | None:
    """Map one raw event to a DeviceEvent, or None if it has no mapping.

    Suspend and resume carry a zero-volume automatic dose marker so the
    remote service can interrupt basal delivery at that instant.
    """
    kind = DEVICE_EVENT_MAP.get(event.kind)
    if kind is None:
        return None

    dose: DoseInterval | None = None
    if kind == DeviceEventKind.SUSPEND:
        dose = DoseInterval.suspend_marker(event.timestamp, sync_id=event.id)
    elif kind == DeviceEventKind.RESUME:
        dose = DoseInterval.resume_marker(event.timestamp, sync_id=event.id)

    return DeviceEvent(
        kind=kind,
        timestamp=event.timestamp,
        raw_id=event.id,
        dose=dose,
        title=event.note,
        is_uploaded=False,
    )


def translate(events: Iterable[RawEvent]) -> list[DeviceEvent]:
    """Translate a pump event stream into device events, ordered by time."""
    translated = []
    for event in sort_events(events):
        device_event = translate_event(event)
        if device_event is not None:
            translated.append(device_event)
    logger.debug("Translated %d device events", len(translated))
    return translated
