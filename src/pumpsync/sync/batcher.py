"""Batch synchronizer — chunk create/update/delete sets and upload them.

Every set of one entity kind is cut into ``SyncBatch`` values that respect
the sink's advertised item limit, then issued one sink call per batch:

    creates  →  ceil(M / L) batches, original order kept
    updates  →  one batch
    deletes  →  ceil(K / L) batches (``upload.chunk_deletes``), never mixed
                with creates

A failing call (an ``UploadError`` or anything else the sink raises) is
logged and recorded; the remaining batches are still attempted.  Nothing is
retried here: the next trigger re-sends, and stable sync ids make that
idempotent on the remote side.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Iterator, Sequence, TypeVar

from src.pumpsync.base import (
    CarbEntry,
    DeviceEvent,
    DoseInterval,
    GlucoseReading,
    UploadSink,
)
from src.pumpsync.config_loader import SyncConfig, get_sync_config
from src.pumpsync.errors import Anomaly, UploadError
from src.pumpsync.sync.dedup import dedupe

logger = logging.getLogger("pumpsync.sync.batcher")

T = TypeVar("T")


class EntityKind(str, Enum):
    DOSE = "dose"
    DEVICE_EVENT = "device_event"
    CARB = "carb"
    GLUCOSE = "glucose"


class Operation(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


def chunked(items: Sequence[T], size: int) -> Iterator[list[T]]:
    """Yield consecutive slices of at most ``size`` items.

    Raises:
        ValueError: If size < 1.
    """
    if size < 1:
        raise ValueError(f"Chunk size must be >= 1, got {size}")
    for start in range(0, len(items), size):
        yield list(items[start:start + size])


@dataclass
class SyncBatch:
    """One upload call's worth of entities of a single kind.

    Exactly one of the three lists is non-empty for batches produced by
    ``BatchSynchronizer.plan``.
    """

    kind: EntityKind
    created: list = field(default_factory=list)
    updated: list = field(default_factory=list)
    deleted: list = field(default_factory=list)

    @property
    def operation(self) -> Operation:
        if self.deleted:
            return Operation.DELETE
        if self.updated:
            return Operation.UPDATE
        return Operation.CREATE

    def __len__(self) -> int:
        return len(self.created) + len(self.updated) + len(self.deleted)


@dataclass
class BatchOutcome:
    """Result of one sink call."""

    kind: EntityKind
    operation: Operation
    size: int
    ok: bool
    error: str | None = None


@dataclass
class SyncReport:
    """Everything one synchronization pass did.

    Attributes:
        trigger:     Name of the request that started the pass.
        outcomes:    One entry per sink call, in issue order.
        anomalies:   Records skipped during reconciliation.
        started_at:  UTC start of the pass.
        finished_at: UTC end of the pass (None while running).
    """

    trigger: str
    outcomes: list[BatchOutcome] = field(default_factory=list)
    anomalies: list[Anomaly] = field(default_factory=list)
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def ok(self) -> bool:
        return all(o.ok for o in self.outcomes)

    @property
    def failures(self) -> list[BatchOutcome]:
        return [o for o in self.outcomes if not o.ok]

    def count(self, kind: EntityKind, operation: Operation | None = None) -> int:
        """Number of items successfully sent for ``kind`` (and ``operation``)."""
        return sum(
            o.size
            for o in self.outcomes
            if o.ok and o.kind == kind and (operation is None or o.operation == operation)
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "trigger": self.trigger,
            "ok": self.ok,
            "calls": len(self.outcomes),
            "failures": [
                {"kind": f.kind.value, "operation": f.operation.value, "size": f.size, "error": f.error}
                for f in self.failures
            ],
            "anomalies": len(self.anomalies),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


class BatchSynchronizer:
    """Plan and issue upload batches against one sink.

    Usage::

        batcher = BatchSynchronizer(sink)
        outcomes = await batcher.sync_doses(created=result.doses)
    """

    def __init__(self, sink: UploadSink, config: SyncConfig | None = None) -> None:
        self._sink = sink
        self._config = config or get_sync_config()

    # ------------------------------------------------------------------
    # Planning (pure)
    # ------------------------------------------------------------------

    def plan(
        self,
        kind: EntityKind,
        created: Sequence = (),
        updated: Sequence = (),
        deleted: Sequence = (),
        limit: int | None = None,
    ) -> list[SyncBatch]:
        """Cut the three sets into batches in issue order: creates, updates, deletes.

        Args:
            kind:    Entity kind of every item.
            created: New entities; chunked by ``limit``.
            updated: Changed entities; always one batch.
            deleted: Removed entities; chunked when ``upload.chunk_deletes``.
            limit:   Sink-advertised limit (None → configured default).
        """
        size = self._config.chunk_limit(limit)
        batches = [SyncBatch(kind=kind, created=chunk) for chunk in chunked(created, size)]
        if updated:
            batches.append(SyncBatch(kind=kind, updated=list(updated)))
        if deleted:
            if self._config.upload.chunk_deletes:
                batches.extend(SyncBatch(kind=kind, deleted=chunk) for chunk in chunked(deleted, size))
            else:
                batches.append(SyncBatch(kind=kind, deleted=list(deleted)))
        return batches

    # ------------------------------------------------------------------
    # Upload passes
    # ------------------------------------------------------------------

    async def sync_doses(
        self,
        created: Sequence[DoseInterval] = (),
        updated: Sequence[DoseInterval] = (),
        deleted: Sequence[DoseInterval] = (),
    ) -> list[BatchOutcome]:
        batches = self.plan(
            EntityKind.DOSE,
            created=dedupe(created),
            updated=dedupe(updated),
            deleted=dedupe(deleted),
            limit=self._sink.dose_chunk_limit,
        )
        return [
            await self._issue(b, self._sink.upload_doses(b.created, b.updated, b.deleted))
            for b in batches
        ]

    async def sync_carbs(
        self,
        created: Sequence[CarbEntry] = (),
        updated: Sequence[CarbEntry] = (),
        deleted: Sequence[CarbEntry] = (),
    ) -> list[BatchOutcome]:
        batches = self.plan(
            EntityKind.CARB,
            created=dedupe(created),
            updated=dedupe(updated),
            deleted=dedupe(deleted),
            limit=self._sink.carb_chunk_limit,
        )
        return [
            await self._issue(b, self._sink.upload_carbs(b.created, b.updated, b.deleted))
            for b in batches
        ]

    async def sync_device_events(self, events: Sequence[DeviceEvent]) -> list[BatchOutcome]:
        """Upload device events in one call; mark them uploaded on success."""
        pending = [e for e in events if not e.is_uploaded]
        if not pending:
            return []
        batch = SyncBatch(kind=EntityKind.DEVICE_EVENT, created=pending)
        outcome = await self._issue(batch, self._sink.upload_device_events(pending))
        if outcome.ok:
            for event in pending:
                event.is_uploaded = True
        return [outcome]

    async def sync_glucose(self, readings: Sequence[GlucoseReading]) -> list[BatchOutcome]:
        if self._config.glucose.require_uuid_ids:
            valid = [r for r in readings if r.has_valid_id]
            if len(valid) != len(readings):
                logger.info(
                    "Skipping %d glucose reading(s) without a UUID id",
                    len(readings) - len(valid),
                )
        else:
            valid = list(readings)
        batches = self.plan(
            EntityKind.GLUCOSE, created=dedupe(valid), limit=self._sink.glucose_chunk_limit
        )
        return [await self._issue(b, self._sink.upload_glucose(b.created)) for b in batches]

    async def _issue(self, batch: SyncBatch, call) -> BatchOutcome:
        """Await one sink call and classify the result.

        Any exception fails only this batch; the caller moves on to the next.
        """
        try:
            await call
        except UploadError as exc:
            logger.warning(
                "Error synchronizing %s data (%s, %d items): %s",
                batch.kind.value, batch.operation.value, len(batch), exc,
            )
            return BatchOutcome(batch.kind, batch.operation, len(batch), ok=False, error=str(exc))
        except Exception as exc:
            logger.exception(
                "Unexpected error synchronizing %s data (%s, %d items)",
                batch.kind.value, batch.operation.value, len(batch),
            )
            return BatchOutcome(
                batch.kind, batch.operation, len(batch), ok=False,
                error=f"{type(exc).__name__}: {exc}",
            )
        logger.info(
            "Success synchronizing %s data (%s, %d items)",
            batch.kind.value, batch.operation.value, len(batch),
        )
        return BatchOutcome(batch.kind, batch.operation, len(batch), ok=True)
