"""Remote data service sinks for PumpSync.

Each sink implements the UploadSink ABC and handles:
- Encoding doses, device events, carbs and glucose for its service
- Advertising its per-request batch limits
- Reporting failures as UploadError

Available sinks:
    TidepoolSink   — Tidepool platform data API (httpx)
    RecordingSink  — In-memory recorder for development and tests
"""

from __future__ import annotations

import logging

from src.pumpsync.base import UploadSink
from src.pumpsync.sinks.memory import RecordingSink
from src.pumpsync.sinks.tidepool import TidepoolSink

logger = logging.getLogger("pumpsync.sinks")

__all__ = [
    "TidepoolSink",
    "RecordingSink",
    "SINK_REGISTRY",
    "get_sink",
    "build_sink",
    "sink_from_raw",
]

# Registry: service identifier → sink class
SINK_REGISTRY: dict[str, type[UploadSink]] = {
    "tidepool": TidepoolSink,
    "memory": RecordingSink,
}


def get_sink(service_id: str) -> type[UploadSink]:
    """Return the sink class for a given service identifier.

    Raises:
        KeyError: If the service_id is not registered.
    """
    if service_id not in SINK_REGISTRY:
        raise KeyError(
            f"No sink registered for service '{service_id}'. "
            f"Available: {list(SINK_REGISTRY)}"
        )
    return SINK_REGISTRY[service_id]


def build_sink(
    service_id: str,
    state: dict | None = None,
    overrides: dict | None = None,
) -> UploadSink | None:
    """Construct the sink registered as ``service_id``.

    Args:
        service_id: Registry key.
        state:      Constructor arguments (typically a persisted ``raw_state``).
        overrides:  Arguments that win over ``state``; None and empty values
                    are ignored so an unset setting never blanks a saved one.

    Returns:
        The sink, or None if the merged arguments are unusable.

    Raises:
        KeyError: If the service_id is not registered.
    """
    merged = dict(state or {})
    merged.update({k: v for k, v in (overrides or {}).items() if v not in (None, "")})
    return get_sink(service_id).from_raw_state(merged)


def sink_from_raw(
    raw: dict | None,
    overrides: dict[str, dict] | None = None,
) -> UploadSink | None:
    """Rebuild a sink from its persisted raw value.

    The raw value has the shape ``{"serviceIdentifier": str, "state": dict}``
    (see ``UploadSink.raw_value``).  Secrets are never persisted, so
    ``overrides`` (service identifier → constructor arguments, usually from
    ``Settings.sink_overrides()``) are laid over the saved state.  Returns None
    when the raw value is missing, names an unknown service, or carries
    unusable state.
    """
    if not raw:
        return None
    state = raw.get("state")
    service_id = raw.get("serviceIdentifier")
    if not isinstance(state, dict) or not service_id:
        logger.warning("Ignoring malformed service raw value: %r", raw)
        return None
    try:
        return build_sink(service_id, state, (overrides or {}).get(service_id))
    except KeyError as exc:
        logger.warning("%s", exc)
        return None
