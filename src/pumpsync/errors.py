"""Error taxonomy for the reconciliation core.

Only upload failures are surfaced outward, and only as a report.  Problems
with individual records are recorded as ``Anomaly`` values and the record is
skipped.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class AnomalyKind(str, Enum):
    ORPHANED_DURATION = "orphaned_duration_event"
    INCOMPLETE_RECORD = "incomplete_record"
    NEGATIVE_VOLUME = "negative_volume_clamped"


@dataclass(frozen=True)
class Anomaly:
    """A non-fatal problem found while reconciling one record."""

    kind: AnomalyKind
    event_id: str
    timestamp: datetime
    detail: str = ""


class PumpSyncError(Exception):
    """Base class for PumpSync errors."""


class IncompleteRecordError(PumpSyncError):
    """Raised when a record lacks a field required by the operation at hand."""

    def __init__(self, record_id: str, field_name: str) -> None:
        super().__init__(f"Record {record_id} has no '{field_name}'")
        self.record_id = record_id
        self.field_name = field_name


class UploadError(PumpSyncError):
    """Raised by an upload sink when the remote service rejects a batch."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
