"""Tests for the device-event translator."""

from __future__ import annotations

from src.pumpsync.base import DeviceEventKind, DoseKind, EventKind
from src.pumpsync.translator import translate, translate_event
from src.pumpsync.tests.conftest import at, bolus, duration, pump_event, temp_basal


class TestTranslateEvent:
    def test_suspend_carries_zero_volume_marker(self) -> None:
        event = translate_event(pump_event(5, EventKind.SUSPEND, note="Reservoir empty"))

        assert event is not None
        assert event.kind == DeviceEventKind.SUSPEND
        assert event.timestamp == at(5)
        assert event.raw_id == "PumpSuspend-5"
        assert event.title == "Reservoir empty"
        assert event.is_uploaded is False
        assert event.dose is not None
        assert event.dose.kind == DoseKind.SUSPEND
        assert event.dose.start == at(5)
        assert event.dose.end is None
        assert event.dose.volume == 0.0
        assert event.dose.automatic is True

    def test_resume_is_symmetric(self) -> None:
        event = translate_event(pump_event(9, EventKind.RESUME))
        assert event.kind == DeviceEventKind.RESUME
        assert event.dose.kind == DoseKind.RESUME
        assert event.dose.volume == 0.0

    def test_rewind_has_no_dose(self) -> None:
        event = translate_event(pump_event(1, EventKind.REWIND))
        assert event.kind == DeviceEventKind.REWIND
        assert event.dose is None

    def test_dose_and_unknown_events_are_dropped(self) -> None:
        assert translate_event(bolus(0, 1.0)) is None
        assert translate_event(temp_basal(0, 1.0)) is None
        assert translate_event(duration(0, 30)) is None
        assert translate_event(pump_event(0, EventKind.OTHER)) is None


class TestTranslate:
    def test_only_mapped_events_in_time_order(self) -> None:
        events = [
            pump_event(20, EventKind.RESUME),
            bolus(5, 1.0),
            pump_event(10, EventKind.SUSPEND),
            pump_event(30, EventKind.ALARM),
        ]
        translated = translate(events)
        assert [e.kind for e in translated] == [
            DeviceEventKind.SUSPEND,
            DeviceEventKind.RESUME,
            DeviceEventKind.ALARM,
        ]
        assert all(not e.is_uploaded for e in translated)
