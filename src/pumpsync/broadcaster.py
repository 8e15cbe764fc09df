"""Explicit subscriber lists for store-change notifications.

Stores publish a ``Topic`` when their contents change; subscribers are plain
callables registered per topic and called in registration order.

Usage::

    bus = Broadcaster()
    coordinator.subscribe(bus)
    bus.publish(Topic.PUMP_HISTORY_UPDATED)
"""

from __future__ import annotations

import logging
from collections import defaultdict
from enum import Enum
from typing import Any, Callable

logger = logging.getLogger("pumpsync.broadcaster")


class Topic(str, Enum):
    PUMP_HISTORY_UPDATED = "pump_history_updated"
    CARBS_UPDATED = "carbs_updated"
    TEMP_TARGETS_UPDATED = "temp_targets_updated"
    DELETE_REQUESTED = "delete_requested"
    RESYNC_REQUESTED = "resync_requested"


class Broadcaster:
    def __init__(self) -> None:
        self._subscribers: dict[Topic, list[Callable[..., Any]]] = defaultdict(list)

    def subscribe(self, topic: Topic, callback: Callable[..., Any]) -> None:
        self._subscribers[topic].append(callback)

    def unsubscribe(self, topic: Topic, callback: Callable[..., Any]) -> None:
        try:
            self._subscribers[topic].remove(callback)
        except ValueError:
            logger.debug("Callback %r was not subscribed to %s", callback, topic.value)

    def publish(self, topic: Topic, **payload: Any) -> int:
        """Call every subscriber of ``topic`` with ``payload``.

        A failing subscriber is logged and does not stop the others.

        Returns:
            Number of subscribers notified successfully.
        """
        delivered = 0
        for callback in list(self._subscribers.get(topic, ())):
            try:
                callback(**payload)
            except Exception:
                logger.exception("Subscriber %r failed on %s", callback, topic.value)
                continue
            delivered += 1
        return delivered

    def subscriber_count(self, topic: Topic) -> int:
        return len(self._subscribers.get(topic, ()))
