"""Serial sync coordinator for one remote data service.

Owns the single worker that runs reconciliation-and-upload passes.  Upstream
stores call the entry points (directly or through the ``Broadcaster``):

    on_new_dose_data()       — pump history changed: doses, then device events
    on_new_device_event()    — device events only
    on_new_carb_data()       — carb entries
    on_delete_requested()    — resolve and delete one entry / one group
    force_full_resync()      — doses + device events, carbs, glucose

Each call enqueues a ``SyncRequest``.  The worker takes requests one at a
time, so two passes never overlap and never produce interleaved batches.  A
request identical to one still waiting in the queue is coalesced.

Pass state machine:

    IDLE → UPLOADING_DOSES → UPLOADING_DEVICE_EVENTS → IDLE
    IDLE → UPLOADING_CARBS → IDLE
    IDLE → DELETING → IDLE

Usage::

    coordinator = SyncCoordinator(source, sink)
    await coordinator.start()
    coordinator.on_new_dose_data()
    await coordinator.join()
    await coordinator.stop()
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable

from src.pumpsync.base import EventSource, RecordKind, UploadSink
from src.pumpsync.broadcaster import Broadcaster, Topic
from src.pumpsync.config_loader import SyncConfig, get_sync_config
from src.pumpsync.reconciler import reconcile
from src.pumpsync.service_state import ServiceState
from src.pumpsync.sync.batcher import BatchSynchronizer, SyncReport
from src.pumpsync.sync.dedup import carbs_for_deletion, doses_for_deletion, resolve_deletions
from src.pumpsync.translator import translate

logger = logging.getLogger("pumpsync.sync.scheduler")


class Trigger(str, Enum):
    NEW_DOSE_DATA = "new_dose_data"
    NEW_DEVICE_EVENT = "new_device_event"
    NEW_CARB_DATA = "new_carb_data"
    DELETE_REQUESTED = "delete_requested"
    FULL_RESYNC = "full_resync"


class SyncState(str, Enum):
    IDLE = "idle"
    UPLOADING_DOSES = "uploading_doses"
    UPLOADING_DEVICE_EVENTS = "uploading_device_events"
    UPLOADING_CARBS = "uploading_carbs"
    UPLOADING_GLUCOSE = "uploading_glucose"
    DELETING = "deleting"


@dataclass(frozen=True)
class SyncRequest:
    """One queued trigger.

    Attributes:
        trigger:     What happened upstream.
        timestamp:   Entry to delete (DELETE_REQUESTED only).
        group_id:    Group to delete (DELETE_REQUESTED only).
        record_kind: History the deletion applies to.
    """

    trigger: Trigger
    timestamp: datetime | None = None
    group_id: str | None = None
    record_kind: RecordKind = RecordKind.PUMP_HISTORY

    @property
    def name(self) -> str:
        if self.trigger != Trigger.DELETE_REQUESTED:
            return self.trigger.value
        target = f"group={self.group_id}" if self.group_id else f"at={self.timestamp}"
        return f"{self.trigger.value}[{self.record_kind.value} {target}]"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SyncCoordinator:
    """Queue triggers and run sync passes one at a time.

    Args:
        source:    Event source for pump, carb and glucose history.
        sink:      Upload sink; None disables uploads until ``set_sink``.
        config:    Sync config (defaults to the global singleton).
        on_report: Optional callback(SyncReport) called after every pass.
    """

    def __init__(
        self,
        source: EventSource,
        sink: UploadSink | None,
        config: SyncConfig | None = None,
        on_report: Callable[[SyncReport], None] | None = None,
    ) -> None:
        self._source = source
        self._config = config or get_sync_config()
        self._sink: UploadSink | None = None
        self._batcher: BatchSynchronizer | None = None
        self._service_state: ServiceState | None = None
        self.set_sink(sink)
        self._on_report = on_report
        self._queue: asyncio.Queue[SyncRequest] | None = None
        self._queued: set[SyncRequest] = set()
        self._worker: asyncio.Task | None = None
        self._pass_lock = asyncio.Lock()
        self._state = SyncState.IDLE
        self._reports: deque[SyncReport] = deque(maxlen=self._config.scheduler.report_history)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def sink(self) -> UploadSink | None:
        return self._sink

    @property
    def reports(self) -> list[SyncReport]:
        return list(self._reports)

    @property
    def last_report(self) -> SyncReport | None:
        return self._reports[-1] if self._reports else None

    @property
    def is_running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    @property
    def queued_count(self) -> int:
        return self._queue.qsize() if self._queue is not None else 0

    # ------------------------------------------------------------------
    # Wiring
    # ------------------------------------------------------------------

    def set_sink(self, sink: UploadSink | None) -> None:
        """Swap the upload sink; takes effect from the next pass."""
        self._sink = sink
        self._batcher = BatchSynchronizer(sink, self._config) if sink is not None else None
        logger.info("Upload sink set to %s", sink.DISPLAY_NAME if sink else "none")

    @property
    def service_state(self) -> ServiceState | None:
        return self._service_state

    def follow(self, service_state: ServiceState) -> None:
        """Swap the sink whenever the active service selection changes."""
        self._service_state = service_state
        service_state.add_listener(lambda _old, _new: self.set_sink(service_state.current()))

    def subscribe(self, bus: Broadcaster) -> None:
        """Register the entry points with a broadcaster."""
        bus.subscribe(Topic.PUMP_HISTORY_UPDATED, lambda **_: self.on_new_dose_data())
        bus.subscribe(Topic.CARBS_UPDATED, lambda **_: self.on_new_carb_data())
        bus.subscribe(Topic.TEMP_TARGETS_UPDATED, lambda **_: None)
        bus.subscribe(Topic.RESYNC_REQUESTED, lambda **_: self.force_full_resync())
        bus.subscribe(
            Topic.DELETE_REQUESTED,
            lambda timestamp=None, group_id=None, kind=RecordKind.PUMP_HISTORY, **_: (
                self.on_delete_requested(timestamp, group_id, kind)
            ),
        )

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def on_new_dose_data(self) -> bool:
        return self.submit(SyncRequest(Trigger.NEW_DOSE_DATA))

    def on_new_device_event(self) -> bool:
        return self.submit(SyncRequest(Trigger.NEW_DEVICE_EVENT))

    def on_new_carb_data(self) -> bool:
        return self.submit(SyncRequest(Trigger.NEW_CARB_DATA))

    def on_delete_requested(
        self,
        timestamp: datetime | None,
        group_id: str | None = None,
        kind: RecordKind = RecordKind.PUMP_HISTORY,
    ) -> bool:
        return self.submit(
            SyncRequest(
                Trigger.DELETE_REQUESTED, timestamp=timestamp, group_id=group_id, record_kind=kind
            )
        )

    def force_full_resync(self) -> bool:
        return self.submit(SyncRequest(Trigger.FULL_RESYNC))

    def submit(self, request: SyncRequest) -> bool:
        """Queue a request for the worker.

        Must be called from the event loop the coordinator was started on.

        Returns:
            False if an identical request was already waiting and this one
            was coalesced into it.

        Raises:
            RuntimeError: If the coordinator has not been started.
        """
        if self._queue is None:
            raise RuntimeError("SyncCoordinator is not started")
        if self._config.scheduler.coalesce_triggers and request in self._queued:
            logger.debug("Coalescing %s: identical request already queued", request.name)
            return False
        self._queued.add(request)
        self._queue.put_nowait(request)
        if self._state != SyncState.IDLE:
            logger.debug("Pass in progress (%s); queued %s", self._state.value, request.name)
        return True

    # ------------------------------------------------------------------
    # Worker lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self.is_running:
            return
        self._queue = asyncio.Queue()
        self._queued.clear()
        self._worker = asyncio.create_task(self._run(), name="pumpsync-worker")
        logger.info("SyncCoordinator started")

    async def join(self) -> None:
        """Wait until every queued request has been processed."""
        if self._queue is not None:
            await self._queue.join()

    async def stop(self, drain: bool = True) -> None:
        """Stop the worker.

        The pass in flight always runs to completion.  With ``drain`` the
        queued requests are processed first; without it they are discarded.
        """
        if self._worker is None or self._queue is None:
            return
        if not drain:
            discarded = 0
            while not self._queue.empty():
                self._queue.get_nowait()
                self._queue.task_done()
                discarded += 1
            self._queued.clear()
            if discarded:
                logger.info("SyncCoordinator: discarded %d queued request(s)", discarded)
        await self._queue.join()
        self._worker.cancel()
        try:
            await self._worker
        except asyncio.CancelledError:
            pass
        self._worker = None
        self._queue = None
        logger.info("SyncCoordinator stopped")

    async def _run(self) -> None:
        assert self._queue is not None
        while True:
            request = await self._queue.get()
            self._queued.discard(request)
            try:
                await self.run_pass(request)
            except Exception:
                logger.exception("Sync pass %s failed unexpectedly", request.name)
            finally:
                self._queue.task_done()

    # ------------------------------------------------------------------
    # Passes
    # ------------------------------------------------------------------

    async def run_pass(self, request: SyncRequest) -> SyncReport:
        """Run one pass for ``request`` and return its report.

        Serialized with every other pass of this coordinator.
        """
        async with self._pass_lock:
            report = SyncReport(trigger=request.name, started_at=_utc_now())
            batcher = self._batcher
            try:
                if batcher is None:
                    logger.info("No upload service configured; skipping %s", request.name)
                elif request.trigger == Trigger.NEW_DOSE_DATA:
                    await self._dose_pass(batcher, report)
                elif request.trigger == Trigger.NEW_DEVICE_EVENT:
                    await self._device_event_pass(batcher, report)
                elif request.trigger == Trigger.NEW_CARB_DATA:
                    await self._carb_pass(batcher, report)
                elif request.trigger == Trigger.DELETE_REQUESTED:
                    await self._delete_pass(batcher, request, report)
                elif request.trigger == Trigger.FULL_RESYNC:
                    await self._dose_pass(batcher, report)
                    await self._carb_pass(batcher, report)
                    await self._glucose_pass(batcher, report)
            finally:
                self._state = SyncState.IDLE
                report.finished_at = _utc_now()
                self._reports.append(report)

        logger.info(
            "Sync pass %s complete: %d calls, %d failures, %d anomalies",
            request.name, len(report.outcomes), len(report.failures), len(report.anomalies),
        )
        if self._on_report is not None:
            try:
                self._on_report(report)
            except Exception:
                logger.exception("on_report callback failed for %s", request.name)
        return report

    async def _dose_pass(self, batcher: BatchSynchronizer, report: SyncReport) -> None:
        events = list(self._source.recent(RecordKind.PUMP_HISTORY))
        if not events:
            logger.debug("No recent pump history to upload")
            return

        self._state = SyncState.UPLOADING_DOSES
        result = reconcile(events)
        report.anomalies.extend(result.anomalies)
        report.outcomes.extend(await batcher.sync_doses(created=result.doses))

        await self._device_event_pass(batcher, report, events)

    async def _device_event_pass(
        self, batcher: BatchSynchronizer, report: SyncReport, events: list | None = None
    ) -> None:
        if events is None:
            events = list(self._source.recent(RecordKind.PUMP_HISTORY))
        device_events = translate(events)
        if not device_events:
            return
        self._state = SyncState.UPLOADING_DEVICE_EVENTS
        report.outcomes.extend(await batcher.sync_device_events(device_events))

    async def _carb_pass(self, batcher: BatchSynchronizer, report: SyncReport) -> None:
        carbs = list(self._source.recent(RecordKind.CARB_HISTORY))
        if not carbs:
            return
        self._state = SyncState.UPLOADING_CARBS
        report.outcomes.extend(await batcher.sync_carbs(created=carbs))

    async def _glucose_pass(self, batcher: BatchSynchronizer, report: SyncReport) -> None:
        readings = list(self._source.recent(RecordKind.GLUCOSE))
        if not readings:
            return
        self._state = SyncState.UPLOADING_GLUCOSE
        report.outcomes.extend(await batcher.sync_glucose(readings))

    async def _delete_pass(
        self, batcher: BatchSynchronizer, request: SyncRequest, report: SyncReport
    ) -> None:
        self._state = SyncState.DELETING
        entries = self._source.retrieve_all(request.record_kind)
        selected = resolve_deletions(entries, request.timestamp, request.group_id)
        if not selected:
            logger.info("Nothing to delete for %s", request.name)
            return

        if request.record_kind == RecordKind.PUMP_HISTORY:
            doses = doses_for_deletion(selected)
            if doses:
                report.outcomes.extend(await batcher.sync_doses(deleted=doses))
        elif request.record_kind == RecordKind.CARB_HISTORY:
            report.outcomes.extend(await batcher.sync_carbs(deleted=carbs_for_deletion(selected)))
        else:
            logger.warning("Deletion is not supported for %s", request.record_kind.value)
