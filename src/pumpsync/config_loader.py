"""Load, validate, and hot-reload the PumpSync synchronization config.

The config lives in ``sync_config.yaml`` alongside this module.  At startup
it is loaded once and cached.  Call ``reload_sync_config()`` to re-read from
disk after an edit — no restart required.

Usage::

    from src.pumpsync.config_loader import get_sync_config

    config = get_sync_config()
    limit = config.chunk_limit(sink.dose_chunk_limit)   # 100 unless advertised
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path

import yaml

logger = logging.getLogger("pumpsync.config")

# Path to the YAML file sitting next to this module
_CONFIG_PATH = Path(__file__).parent / "sync_config.yaml"

DEFAULT_CHUNK_LIMIT = 100


# ---------------------------------------------------------------------------
# Typed config sections
# ---------------------------------------------------------------------------


@dataclass
class UploadConfig:
    default_chunk_limit: int = DEFAULT_CHUNK_LIMIT
    chunk_deletes: bool = True


@dataclass
class SchedulerConfig:
    coalesce_triggers: bool = True
    report_history: int = 20


@dataclass
class StorageConfig:
    recent_window_hours: int = 24


@dataclass
class GlucoseConfig:
    require_uuid_ids: bool = True


@dataclass
class SyncConfig:
    """Complete, validated synchronization configuration.

    Attributes:
        version:   Config schema version string.
        upload:    Batch sizing.
        scheduler: Serial worker behaviour.
        storage:   Event source windowing.
        glucose:   Glucose upload filtering.
    """

    version: str = "1.0"
    upload: UploadConfig = field(default_factory=UploadConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    glucose: GlucoseConfig = field(default_factory=GlucoseConfig)
    _raw: dict = field(default_factory=dict, repr=False)

    def chunk_limit(self, advertised: int | None) -> int:
        """Return the batch size to use given a sink's advertised limit.

        Falls back to ``upload.default_chunk_limit`` when the sink advertises
        nothing or something unusable.
        """
        if advertised is None:
            return self.upload.default_chunk_limit
        if advertised < 1:
            logger.warning(
                "Ignoring advertised chunk limit %r, using %d",
                advertised,
                self.upload.default_chunk_limit,
            )
            return self.upload.default_chunk_limit
        return advertised


# ---------------------------------------------------------------------------
# Loader / validation
# ---------------------------------------------------------------------------


class ConfigValidationError(ValueError):
    """Raised when sync_config.yaml fails validation."""


def _load_yaml(path: Path) -> dict:
    """Read and parse a YAML file.

    Raises:
        FileNotFoundError: If the file does not exist.
        ConfigValidationError: If the YAML is malformed.
    """
    if not path.exists():
        raise FileNotFoundError(f"Sync config not found: {path}")

    with path.open("r", encoding="utf-8") as fh:
        try:
            return yaml.safe_load(fh) or {}
        except yaml.YAMLError as exc:
            raise ConfigValidationError(f"YAML parse error in {path}: {exc}") from exc


def _validate_and_build(raw: dict) -> SyncConfig:
    """Validate the raw YAML dict and construct a SyncConfig.

    Missing sections fall back to defaults; present values must be well-typed.

    Raises:
        ConfigValidationError: If any value is invalid.
    """
    errors: list[str] = []

    def _int(section: dict, key: str, default: int, name: str, minimum: int = 0) -> int:
        value = section.get(key, default)
        try:
            result = int(value)
        except (TypeError, ValueError):
            errors.append(f"{name}.{key} must be an integer, got {value!r}")
            return default
        if result < minimum:
            errors.append(f"{name}.{key} = {result} must be >= {minimum}")
        return result

    up_raw = raw.get("upload") or {}
    upload = UploadConfig(
        default_chunk_limit=_int(up_raw, "default_chunk_limit", DEFAULT_CHUNK_LIMIT, "upload", 1),
        chunk_deletes=bool(up_raw.get("chunk_deletes", True)),
    )

    sc_raw = raw.get("scheduler") or {}
    scheduler = SchedulerConfig(
        coalesce_triggers=bool(sc_raw.get("coalesce_triggers", True)),
        report_history=_int(sc_raw, "report_history", 20, "scheduler", 1),
    )

    st_raw = raw.get("storage") or {}
    storage = StorageConfig(
        recent_window_hours=_int(st_raw, "recent_window_hours", 24, "storage", 1),
    )

    gl_raw = raw.get("glucose") or {}
    glucose = GlucoseConfig(require_uuid_ids=bool(gl_raw.get("require_uuid_ids", True)))

    if errors:
        raise ConfigValidationError(
            f"sync_config.yaml has {len(errors)} validation error(s):\n"
            + "\n".join(f"  • {e}" for e in errors)
        )

    return SyncConfig(
        version=str(raw.get("version", "1.0")),
        upload=upload,
        scheduler=scheduler,
        storage=storage,
        glucose=glucose,
        _raw=raw,
    )


def load_sync_config(path: Path | None = None) -> SyncConfig:
    """Load and validate the sync config from disk.

    Args:
        path: Override path to YAML. Uses the bundled sync_config.yaml by default.
    """
    target = path or _CONFIG_PATH
    raw = _load_yaml(target)
    config = _validate_and_build(raw)
    logger.info("Loaded sync config v%s from %s", config.version, target)
    return config


# ---------------------------------------------------------------------------
# Global singleton with hot-reload support
# ---------------------------------------------------------------------------

_config: SyncConfig | None = None
_config_lock = threading.Lock()


def get_sync_config() -> SyncConfig:
    """Return the global SyncConfig singleton, loading it on first call."""
    global _config
    if _config is None:
        with _config_lock:
            if _config is None:  # double-checked locking
                _config = load_sync_config()
    return _config


def reload_sync_config(path: Path | None = None) -> SyncConfig:
    """Reload the sync config from disk and replace the global singleton.

    If validation fails, the old config is retained and the error is re-raised.

    Raises:
        ConfigValidationError: If the new config is invalid.
        FileNotFoundError:     If the config file is missing.
    """
    global _config
    new_config = load_sync_config(path)  # validate before acquiring lock
    with _config_lock:
        old_version = _config.version if _config else "none"
        _config = new_config
    logger.info("Reloaded sync config: %s → %s", old_version, new_config.version)
    return new_config
