"""Deduplication and delete resolution for uploads.

A delete request names either an exact timestamp (one entry) or a grouping
identifier (every part of a multi-part entry, e.g. the fat/protein carb
equivalents split out of one meal).  The resolver picks the matching entries
out of the full stored history, drops duplicates, and converts them into the
values the sink deletes.

Dedup keys:
    - entries with an ``id``:   the id
    - anything else:            (timestamp, kind)
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Hashable, Iterable, Sequence, TypeVar

from src.pumpsync.base import CarbEntry, DoseInterval, DoseKind, RawEvent, as_utc
from src.pumpsync.errors import IncompleteRecordError

logger = logging.getLogger("pumpsync.sync.dedup")

T = TypeVar("T")


def dedup_key(entry: object) -> Hashable:
    """Return the identity key used to spot duplicate entries.

    Doses are keyed by their sync id (plus kind, since a suspend marker and
    a temp basal can trace back to the same record family).
    """
    if isinstance(entry, DoseInterval):
        if entry.sync_id:
            return (entry.kind, entry.sync_id)
        return (entry.kind, entry.start)
    entry_id = getattr(entry, "id", None)
    if entry_id:
        return entry_id
    return (getattr(entry, "timestamp", None), getattr(entry, "kind", None))


def dedupe(entries: Iterable[T]) -> list[T]:
    """Drop repeated entries, keeping the first occurrence and the order."""
    seen: set[Hashable] = set()
    unique: list[T] = []
    for entry in entries:
        key = dedup_key(entry)
        if key in seen:
            logger.debug("Dropping duplicate entry: %s", key)
            continue
        seen.add(key)
        unique.append(entry)
    return unique


def resolve_deletions(
    entries: Sequence[T],
    timestamp: datetime | None,
    group_id: str | None = None,
) -> list[T]:
    """Select the entries a delete request refers to.

    With ``group_id`` every entry sharing it is selected.  Without one, the
    single entry whose timestamp equals ``timestamp`` exactly is selected
    (the first one, when the store holds copies).  Naive timestamps are
    taken to be UTC, like every stored timestamp.

    Args:
        entries:   Full stored history of one record family.
        timestamp: Timestamp of the entry to delete.
        group_id:  Grouping identifier shared by a multi-part entry.

    Returns:
        The deduplicated selection, in stored order (may be empty).
    """
    if group_id is not None:
        selected = [e for e in entries if getattr(e, "group_id", None) == group_id]
    elif timestamp is not None:
        wanted = as_utc(timestamp)
        target = next(
            (e for e in entries if getattr(e, "timestamp", None) is not None and as_utc(e.timestamp) == wanted),
            None,
        )
        selected = [target] if target is not None else []
    else:
        logger.warning("Delete request carries neither timestamp nor group id")
        selected = []

    resolved = dedupe(selected)
    logger.debug(
        "Resolved %d deletion(s) for timestamp=%s group_id=%s",
        len(resolved), timestamp, group_id,
    )
    return resolved


def to_deleted_dose(event: RawEvent) -> DoseInterval:
    """Build the dose the sink should delete for a stored pump record.

    Raises:
        IncompleteRecordError: If the record has no amount.
    """
    if event.amount is None:
        raise IncompleteRecordError(event.id, "amount")
    return DoseInterval(
        kind=DoseKind.BOLUS,
        start=event.timestamp,
        end=event.timestamp,
        volume=max(0.0, event.amount),
        sync_id=event.id,
    )


def dose_for_deletion(event: RawEvent) -> DoseInterval | None:
    """Like ``to_deleted_dose`` but skips incomplete records with a warning.

    The pump history store legitimately holds records without an amount;
    deleting one of those is a no-op.
    """
    try:
        return to_deleted_dose(event)
    except IncompleteRecordError as exc:
        logger.warning("Skipping dose deletion: %s", exc)
        return None


def doses_for_deletion(events: Iterable[RawEvent]) -> list[DoseInterval]:
    doses = (dose_for_deletion(e) for e in events)
    return dedupe(d for d in doses if d is not None)


def carbs_for_deletion(entries: Iterable[CarbEntry]) -> list[CarbEntry]:
    return dedupe(entries)
