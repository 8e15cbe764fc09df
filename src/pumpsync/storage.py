"""Event sources backed by JSON history files or plain lists.

``JsonFileEventSource`` reads the files the pump history store writes into
its monitor directory:

    pump_history.json   list of pump records
    carb_history.json   list of carb entries
    glucose.json        list of glucose readings

Records that cannot be parsed are logged and skipped.  A missing file is an
empty history.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Sequence

from src.pumpsync.base import (
    EventSource,
    RecordKind,
    parse_carb_entry,
    parse_glucose_reading,
    parse_raw_event,
)

logger = logging.getLogger("pumpsync.storage")

FILE_NAMES: dict[RecordKind, str] = {
    RecordKind.PUMP_HISTORY: "pump_history.json",
    RecordKind.CARB_HISTORY: "carb_history.json",
    RecordKind.GLUCOSE: "glucose.json",
}

_PARSERS = {
    RecordKind.PUMP_HISTORY: parse_raw_event,
    RecordKind.CARB_HISTORY: parse_carb_entry,
    RecordKind.GLUCOSE: parse_glucose_reading,
}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class JsonFileEventSource(EventSource):
    """Read history from JSON files in one directory.

    Args:
        root:          Directory holding the history files.
        recent_window: How far back ``recent()`` looks.
        clock:         Returns "now" as an aware UTC datetime (injectable for tests).
    """

    def __init__(
        self,
        root: Path,
        recent_window: timedelta = timedelta(hours=24),
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._root = Path(root)
        self._recent_window = recent_window
        self._clock = clock

    def retrieve_all(self, kind: RecordKind) -> list:
        path = self._root / FILE_NAMES[kind]
        if not path.exists():
            logger.debug("No %s history at %s", kind.value, path)
            return []
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            logger.error("Could not decode %s: %s", path, exc)
            return []
        if not isinstance(raw, list):
            logger.error("Expected a JSON list in %s, got %s", path, type(raw).__name__)
            return []

        parse = _PARSERS[kind]
        records = []
        for item in raw:
            if not isinstance(item, dict):
                continue
            record = parse(item)
            if record is not None:
                records.append(record)
        return sorted(records, key=lambda r: r.timestamp)

    def recent(self, kind: RecordKind = RecordKind.PUMP_HISTORY) -> list:
        cutoff = self._clock() - self._recent_window
        return [r for r in self.retrieve_all(kind) if r.timestamp >= cutoff]


class InMemoryEventSource(EventSource):
    """Event source over in-memory lists; ``recent()`` returns everything."""

    def __init__(
        self,
        pump_history: Sequence = (),
        carbs: Sequence = (),
        glucose: Sequence = (),
    ) -> None:
        self._records: dict[RecordKind, list] = {
            RecordKind.PUMP_HISTORY: list(pump_history),
            RecordKind.CARB_HISTORY: list(carbs),
            RecordKind.GLUCOSE: list(glucose),
        }

    def add(self, kind: RecordKind, *records: object) -> None:
        self._records[kind].extend(records)

    def retrieve_all(self, kind: RecordKind) -> list:
        return sorted(self._records[kind], key=lambda r: r.timestamp)

    def recent(self, kind: RecordKind = RecordKind.PUMP_HISTORY) -> list:
        return self.retrieve_all(kind)
