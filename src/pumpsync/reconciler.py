"""Dose reconciler — pair temp basal starts with their durations.

The pump writes a ``TempBasal`` record (the rate) and a separate
``TempBasalDuration`` record (the minutes) for every temp basal it enacts.
They share a timestamp but are stored independently, and a new temp basal
may start before the previous one ran its full course.  This module turns
that stream into closed ``DoseInterval`` values:

    TempBasal(t0, r) + TempBasalDuration(t0, d)  →  [t0, t0+d], r·d/60 U
    TempBasal(t0, r0) + TempBasal(t1, r1)        →  [t0, t1],  r0·(t1−t0) U, then open t1
    Bolus(t, a)                                  →  [t, t],    a U

A single pending slot holds the most recent temp basal whose end is not yet
known.  Whatever is still pending when the stream ends is emitted open and
mutable: it is the dose currently running on the pump.

Usage::

    result = reconcile(pump_events)
    for anomaly in result.anomalies:
        logger.warning("Skipped %s", anomaly)
    await batcher.sync_doses(created=result.doses)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import timedelta
from typing import Iterable

from src.pumpsync.base import DoseInterval, DoseKind, EventKind, RawEvent, sort_doses, sort_events
from src.pumpsync.errors import Anomaly, AnomalyKind

logger = logging.getLogger("pumpsync.reconciler")


@dataclass
class ReconcileResult:
    """Output of one reconciliation pass.

    Attributes:
        doses:     Dose intervals ordered by start time.
        anomalies: Records that were dropped or adjusted, in stream order.
    """

    doses: list[DoseInterval] = field(default_factory=list)
    anomalies: list[Anomaly] = field(default_factory=list)

    @property
    def pending(self) -> DoseInterval | None:
        """The open temp basal at the end of the stream, if any."""
        for dose in reversed(self.doses):
            if dose.kind == DoseKind.TEMP_BASAL and dose.is_mutable:
                return dose
        return None


class DoseReconciler:
    """Stateful single pass over a time-ordered event stream.

    Instances are pass-local: create one per ``reconcile()`` call.
    """

    def __init__(self) -> None:
        self._pending: DoseInterval | None = None
        self._result = ReconcileResult()

    def feed(self, event: RawEvent) -> None:
        if event.kind == EventKind.TEMP_BASAL:
            self._on_temp_basal(event)
        elif event.kind == EventKind.TEMP_BASAL_DURATION:
            self._on_duration(event)
        elif event.kind == EventKind.BOLUS:
            self._on_bolus(event)
        # Suspend/resume and everything else belong to the translator.

    def finish(self) -> ReconcileResult:
        if self._pending is not None:
            self._result.doses.append(self._pending)
            self._pending = None
        self._result.doses = sort_doses(self._result.doses)
        return self._result

    # ------------------------------------------------------------------
    # Event handlers
    # ------------------------------------------------------------------

    def _on_temp_basal(self, event: RawEvent) -> None:
        if event.rate is None:
            self._anomaly(AnomalyKind.INCOMPLETE_RECORD, event, "temp basal without rate")
            return

        if self._pending is not None:
            pending = self._pending
            hours = (event.timestamp - pending.start).total_seconds() / 3600.0
            volume = self._clamped_volume(pending.scheduled_rate or 0.0, hours, event)
            self._result.doses.append(
                replace(pending, end=event.timestamp, volume=volume, is_mutable=False)
            )

        self._pending = DoseInterval(
            kind=DoseKind.TEMP_BASAL,
            start=event.timestamp,
            volume=0.0,
            scheduled_rate=event.rate,
            sync_id=event.id,
            is_mutable=True,
        )

    def _on_duration(self, event: RawEvent) -> None:
        pending = self._pending
        if pending is None or pending.start != event.timestamp:
            self._anomaly(
                AnomalyKind.ORPHANED_DURATION,
                event,
                "no pending temp basal starts at this time",
            )
            return

        minutes = event.duration_minutes
        if minutes is None or minutes < 0:
            self._anomaly(AnomalyKind.INCOMPLETE_RECORD, event, "duration without minutes")
            return

        volume = self._clamped_volume(pending.scheduled_rate or 0.0, minutes / 60.0, event)
        self._result.doses.append(
            replace(
                pending,
                end=pending.start + timedelta(minutes=minutes),
                volume=volume,
                is_mutable=False,
            )
        )
        self._pending = None

    def _on_bolus(self, event: RawEvent) -> None:
        if event.amount is None:
            self._anomaly(AnomalyKind.INCOMPLETE_RECORD, event, "bolus without amount")
            return
        self._result.doses.append(
            DoseInterval(
                kind=DoseKind.BOLUS,
                start=event.timestamp,
                end=event.timestamp,
                volume=max(0.0, event.amount),
                sync_id=event.id,
            )
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _clamped_volume(self, rate: float, hours: float, event: RawEvent) -> float:
        volume = rate * hours
        if volume < 0:
            self._anomaly(
                AnomalyKind.NEGATIVE_VOLUME,
                event,
                f"computed volume {volume:.4f} U clamped to 0",
            )
            return 0.0
        return volume

    def _anomaly(self, kind: AnomalyKind, event: RawEvent, detail: str) -> None:
        logger.warning("Reconcile %s for event %s at %s: %s", kind.value, event.id, event.timestamp, detail)
        self._result.anomalies.append(
            Anomaly(kind=kind, event_id=event.id, timestamp=event.timestamp, detail=detail)
        )


def reconcile(events: Iterable[RawEvent]) -> ReconcileResult:
    """Reconcile a pump event stream into dose intervals.

    Events are sorted by timestamp first (stable, so records written at the
    same instant keep their stored order).

    Args:
        events: Pump history records in any order.

    Returns:
        ReconcileResult with doses ordered by start and any anomalies.
    """
    reconciler = DoseReconciler()
    for event in sort_events(events):
        reconciler.feed(event)
    result = reconciler.finish()
    logger.debug(
        "Reconciled %d doses (%d anomalies)", len(result.doses), len(result.anomalies)
    )
    return result
