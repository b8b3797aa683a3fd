"""Supervisor settings and thread-safe YAML stream config store.

Two concerns live here:

Settings:
    SupervisorSettings is read once from the environment by load_settings()
    and passed explicitly to the registry. Nothing else reads these env vars.

Stream Config Store:
    Persistent per-key StreamConfig storage in YAML with corruption
    protection. The API layer reads and writes it; the supervisor core never
    touches it.

Storage Modes:
    Production: $CONFIG_DIR/config.yml (default /data/config.yml)
    CI/Testing: In-memory dict (no disk I/O, CI_DRY_RUN=true)

Thread Safety:
    RLock held for every read-modify-write sequence.

Atomic Writes:
    1. Write to temp file in the same directory
    2. Atomic rename (POSIX)
    3. A crash mid-write never corrupts config.yml

Logging Strategy:
    DEBUG - File operations
    INFO  - Settings summary, mode selection
    WARN  - Invalid formats, recovery, invalid env values, skipped entries
    ERROR - YAML parsing, I/O failures
"""
from __future__ import annotations

import copy
import io
import logging
import os
import tempfile
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Final, Iterator, Mapping

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .models.stream import StreamConfig

logger = logging.getLogger(__name__)

# ============================================================================
# Constants
# ============================================================================

CONFIG_DIR: Final[Path] = Path(os.getenv("CONFIG_DIR", "/data"))
CONFIG_PATH: Final[Path] = CONFIG_DIR / "config.yml"
STREAMS_KEY: Final[str] = "streams"

# CI/Testing: in-memory storage
_DRY_RUN_MODE: Final[bool] = os.getenv("CI_DRY_RUN", "").lower() in ("true", "1", "yes")

# Thread-safe storage
_in_memory_config: dict[str, Any] = {STREAMS_KEY: {}}
_config_lock = threading.RLock()

DEFAULT_RESTART_FIELDS: Final[frozenset[str]] = frozenset(
    name for name in StreamConfig.model_fields if name != "autostart"
)
"""Config fields whose change restarts a live stream."""


# ============================================================================
# Supervisor Settings
# ============================================================================

class SupervisorSettings(BaseModel):
    """Process-wide supervisor tuning, read once at startup."""

    model_config = ConfigDict(frozen=True)

    max_concurrent_streams: int = Field(default=4, ge=1)
    stop_grace_seconds: float = Field(default=5.0, gt=0)
    spawn_timeout_seconds: float = Field(default=10.0, gt=0)
    stall_timeout_seconds: float = Field(default=20.0, ge=0, description="0 disables the watchdog")
    stall_repeat_limit: int = Field(default=10, ge=0, description="0 disables the repeat check")
    cpu_window: int = Field(default=5, ge=0)
    restart_fields: frozenset[str] = DEFAULT_RESTART_FIELDS
    ffmpeg_binary: str = "ffmpeg"


_ENV_FIELDS: Final[dict[str, str]] = {
    "MAX_CONCURRENT_STREAMS": "max_concurrent_streams",
    "STREAM_STOP_GRACE_SECONDS": "stop_grace_seconds",
    "STREAM_SPAWN_TIMEOUT_SECONDS": "spawn_timeout_seconds",
    "STREAM_STALL_TIMEOUT_SECONDS": "stall_timeout_seconds",
    "STREAM_STALL_REPEAT_LIMIT": "stall_repeat_limit",
    "STREAM_CPU_WINDOW": "cpu_window",
    "FFMPEG_BINARY": "ffmpeg_binary",
}


def load_settings(environ: Mapping[str, str] | None = None) -> SupervisorSettings:
    """Build SupervisorSettings from environment variables.

    Invalid values are logged and replaced by their defaults, so a typo in
    the add-on options never prevents startup.

    Args:
        environ: Mapping to read (defaults to os.environ)
    """
    env = os.environ if environ is None else environ
    values: dict[str, Any] = {}

    for env_name, field in _ENV_FIELDS.items():
        raw = env.get(env_name, "").strip()
        if not raw:
            continue
        try:
            SupervisorSettings(**{field: raw})
        except ValidationError:
            logger.warning(f"Invalid {env_name}={raw!r}, using default")
            continue
        values[field] = raw

    raw_fields = env.get("STREAM_RESTART_FIELDS", "").strip()
    if raw_fields:
        requested = {name.strip() for name in raw_fields.split(",") if name.strip()}
        unknown = requested - set(StreamConfig.model_fields)
        if unknown:
            logger.warning(f"Ignoring unknown STREAM_RESTART_FIELDS: {sorted(unknown)}")
        values["restart_fields"] = frozenset(requested - unknown)

    settings = SupervisorSettings(**values)
    logger.info(
        f"Settings: max_concurrent={settings.max_concurrent_streams}, "
        f"grace={settings.stop_grace_seconds}s, spawn_timeout={settings.spawn_timeout_seconds}s, "
        f"stall_timeout={settings.stall_timeout_seconds}s, ffmpeg={settings.ffmpeg_binary}"
    )
    return settings


# ============================================================================
# Initialization
# ============================================================================

def _ensure_config_dir() -> None:
    """Create CONFIG_DIR on first write (never at import)."""
    if not _DRY_RUN_MODE:
        try:
            CONFIG_DIR.mkdir(parents=True, exist_ok=True)
        except Exception as e:
            logger.error(f"Failed to create config dir: {e}", exc_info=True)
            raise


# ============================================================================
# Raw Load / Save
# ============================================================================

def _load_raw() -> dict[str, Any]:
    """Load the whole config document with auto-recovery."""
    if _DRY_RUN_MODE:
        with _config_lock:
            return copy.deepcopy(_in_memory_config)

    with _config_lock:
        if not CONFIG_PATH.exists():
            return {STREAMS_KEY: {}}

        try:
            with io.open(CONFIG_PATH, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            logger.error(f"YAML parsing error: {e}", exc_info=True)
            logger.warning("Ignoring corrupted config, starting with no streams")
            return {STREAMS_KEY: {}}

        if not isinstance(data, dict):
            logger.warning("Invalid config format (expected dict), ignoring")
            return {STREAMS_KEY: {}}

        if not isinstance(data.get(STREAMS_KEY), dict):
            if STREAMS_KEY in data:
                logger.warning("Invalid streams format (expected mapping), ignoring")
            data[STREAMS_KEY] = {}

        return data


def _save_raw(config: dict[str, Any]) -> None:
    """Save the whole config document with an atomic write.

    Raises:
        OSError: Write failure
    """
    global _in_memory_config

    if _DRY_RUN_MODE:
        with _config_lock:
            _in_memory_config = copy.deepcopy(config)
            logger.debug(f"Saved {len(config[STREAMS_KEY])} stream(s) to memory")
        return

    _ensure_config_dir()

    with _config_lock:
        temp_path = None
        try:
            fd, temp_path = tempfile.mkstemp(
                dir=CONFIG_DIR,
                prefix=".config_",
                suffix=".yml.tmp"
            )
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                yaml.safe_dump(
                    config,
                    f,
                    default_flow_style=False,
                    sort_keys=True,
                    allow_unicode=True
                )
            Path(temp_path).replace(CONFIG_PATH)
            logger.debug(f"Saved {len(config[STREAMS_KEY])} stream(s)")

        except Exception as e:
            logger.error(f"Config save failed: {e}", exc_info=True)
            if temp_path and os.path.exists(temp_path):
                try:
                    os.remove(temp_path)
                except OSError as cleanup_err:
                    logger.warning(f"Temp cleanup failed: {cleanup_err}")
            raise


@contextmanager
def atomic_config_update() -> Iterator[dict[str, Any]]:
    """Hold the lock across a read-modify-write of the config document.

    Usage:
        with atomic_config_update() as config:
            config["streams"]["cam1"] = {...}
    """
    with _config_lock:
        config = _load_raw()
        yield config
        _save_raw(config)


# ============================================================================
# Stream Config Store
# ============================================================================

def load_stream_configs() -> dict[str, StreamConfig]:
    """All stored stream configs keyed by stream key.

    Entries that fail validation are skipped with a warning.
    """
    configs: dict[str, StreamConfig] = {}
    for key, raw in _load_raw()[STREAMS_KEY].items():
        try:
            configs[str(key)] = StreamConfig.model_validate(raw)
        except ValidationError as e:
            logger.warning(f"[{key}] Skipping invalid stored config: {e.error_count()} error(s)")
    logger.debug(f"Loaded {len(configs)} stream config(s)")
    return configs


def get_stream_config(key: str) -> StreamConfig | None:
    """Stored config for ``key``, or None if absent or invalid."""
    raw = _load_raw()[STREAMS_KEY].get(key)
    if raw is None:
        return None
    try:
        return StreamConfig.model_validate(raw)
    except ValidationError as e:
        logger.warning(f"[{key}] Stored config invalid: {e.error_count()} error(s)")
        return None


def save_stream_config(key: str, config: StreamConfig) -> StreamConfig | None:
    """Store ``config`` under ``key``.

    Returns:
        The previously stored config, or None
    """
    with atomic_config_update() as document:
        previous_raw = document[STREAMS_KEY].get(key)
        document[STREAMS_KEY][key] = config.model_dump(mode="json")

    logger.info(f"[{key}] Stream config saved")
    if previous_raw is None:
        return None
    try:
        return StreamConfig.model_validate(previous_raw)
    except ValidationError:
        return None


def delete_stream_config(key: str) -> bool:
    """Remove the stored config for ``key``. Returns False if absent."""
    with atomic_config_update() as document:
        removed = document[STREAMS_KEY].pop(key, None) is not None

    if removed:
        logger.info(f"[{key}] Stream config deleted")
    return removed


if _DRY_RUN_MODE:
    logger.info("Config: DRY_RUN mode (in-memory)")
else:
    logger.info(f"Config: Production mode ({CONFIG_PATH})")
