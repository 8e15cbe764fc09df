"""Persisted selection of the active upload sink.

The raw value of the active sink (``{"serviceIdentifier", "state"}``) is
written to a JSON file so the sink can be rebuilt on the next start.  Secrets
are not part of the raw value; ``overrides`` (per service identifier) supply
them again whenever the sink is rebuilt.  Listeners are called explicitly
after every successful change with ``(old_raw, new_raw)``.

Usage::

    state = ServiceState(Path("service_state.json"), settings.sink_overrides())
    state.add_listener(lambda old, new: logger.info("sink changed"))
    sink = state.current() or TidepoolSink()
    state.set(sink)
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Callable

from src.pumpsync.base import UploadSink
from src.pumpsync.sinks import sink_from_raw

logger = logging.getLogger("pumpsync.service_state")

Listener = Callable[[dict | None, dict | None], None]


class ServiceState:
    def __init__(self, path: Path | None = None, overrides: dict[str, dict] | None = None) -> None:
        self._path = Path(path) if path else None
        self._overrides = overrides or {}
        self._listeners: list[Listener] = []
        self._raw: dict | None = self._load()
        self._active: UploadSink | None = None

    @property
    def raw(self) -> dict | None:
        return self._raw

    @property
    def service_id(self) -> str | None:
        return self._raw.get("serviceIdentifier") if self._raw else None

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def restore(self) -> UploadSink | None:
        """Rebuild the persisted sink, if there is one."""
        return sink_from_raw(self._raw, self._overrides)

    def current(self) -> UploadSink | None:
        """Return the active sink, rebuilding it from disk on first use."""
        if self._active is None and self._raw:
            self._active = self.restore()
        return self._active

    def set(self, sink: UploadSink | None) -> None:
        """Make ``sink`` the active service (None removes it) and persist it.

        Listeners are notified when either the persisted value or the sink
        instance changes (a new instance may carry new secrets).
        """
        new_raw = sink.raw_value if sink is not None else None
        if new_raw == self._raw and sink is self._active:
            return
        if new_raw != self._raw:
            self._save(new_raw)
        old_raw, self._raw = self._raw, new_raw
        self._active = sink
        logger.info(
            "Active upload service: %s → %s",
            (old_raw or {}).get("serviceIdentifier"),
            (new_raw or {}).get("serviceIdentifier"),
        )
        self._notify(old_raw, new_raw)

    def clear(self) -> None:
        """Forget the active service (the service asked to be removed)."""
        self.set(None)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _load(self) -> dict | None:
        if self._path is None or not self._path.exists():
            return None
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            logger.warning("Ignoring unreadable service state %s: %s", self._path, exc)
            return None
        return data if isinstance(data, dict) else None

    def _save(self, raw: dict | None) -> None:
        if self._path is None:
            return
        if raw is None:
            self._path.unlink(missing_ok=True)
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text(json.dumps(raw, sort_keys=True), encoding="utf-8")

    def _notify(self, old_raw: dict | None, new_raw: dict | None) -> None:
        for listener in list(self._listeners):
            try:
                listener(old_raw, new_raw)
            except Exception:
                logger.exception("Service state listener %r failed", listener)
