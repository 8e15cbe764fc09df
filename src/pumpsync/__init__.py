"""PumpSync reconciliation engine.

This package turns raw pump history into reconciled dose intervals and
device events, and synchronizes them with a remote data service without
duplicates.

Subpackages:
    sinks/ — Remote data service sinks (Tidepool, in-memory recorder) and registry
    sync/  — Batch synchronizer, delete resolution and deduplication, serial coordinator

Core modules:
    base          — Event model, ordering, EventSource / UploadSink ABCs
    errors        — Anomaly kinds and exception taxonomy
    reconciler    — Temp basal start/duration pairing, bolus pass-through
    translator    — Suspend/resume and other pump events → device events
    broadcaster   — Store-change fan-out to subscriber callbacks
    storage       — JSON-file and in-memory event sources
    service_state — Persisted active sink with change notification
    config_loader — Load/validate/hot-reload sync_config.yaml
"""

from src.pumpsync.base import (
    CarbEntry,
    DeviceEvent,
    DoseInterval,
    EventSource,
    GlucoseReading,
    RawEvent,
    UploadSink,
)
from src.pumpsync.config_loader import SyncConfig, get_sync_config
from src.pumpsync.reconciler import ReconcileResult, reconcile
from src.pumpsync.translator import translate

__all__ = [
    "RawEvent",
    "DoseInterval",
    "DeviceEvent",
    "CarbEntry",
    "GlucoseReading",
    "EventSource",
    "UploadSink",
    "ReconcileResult",
    "reconcile",
    "translate",
    "SyncConfig",
    "get_sync_config",
]
