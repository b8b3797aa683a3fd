"""FFmpeg progress line parsing.

FFmpeg reports progress on stderr as carriage-return terminated lines:

    frame=  120 fps= 30 q=28.0 size=     512kB time=00:00:04.00 bitrate=1024.0kbits/s speed=1.0x

parse_progress_line() turns one such line into a complete StreamStats. Fields
missing from the line keep their previous value; malformed numeric fields
degrade to the previous value. Nothing here raises on bad input, since a
parse failure must never take a stream down.

Logging Strategy:
    DEBUG - Degraded fields (value kept from previous snapshot)
"""
from __future__ import annotations

import logging
import math
import os
import re
from typing import Final

from ..models.stream import StreamStats
from .. import metrics

logger = logging.getLogger(__name__)

# ============================================================================
# Constants
# ============================================================================

PROGRESS_KEYS: Final[frozenset[str]] = frozenset(
    {"frame", "fps", "q", "size", "Lsize", "time", "bitrate", "speed"}
)
"""Keys FFmpeg emits on a progress line."""

FIELD_PATTERN: Final[re.Pattern[str]] = re.compile(r'(\w+)=\s*(\S+)')
"""key=value pairs; FFmpeg pads values with spaces after '='."""

LEADING_KEY_PATTERN: Final[re.Pattern[str]] = re.compile(r'^(\w+)=')

TIME_PATTERN: Final[re.Pattern[str]] = re.compile(r'^-?\d+:\d{2}:\d{2}(\.\d+)?$')
"""HH:MM:SS.ms media time."""

DEFAULT_CPU_WINDOW: Final[int] = 5
"""CPU samples kept per stream."""

# ============================================================================
# Parsing
# ============================================================================

def parse_progress_fields(line: str) -> dict[str, str] | None:
    """Extract raw key=value pairs from a progress line.

    Returns None when the line is not a progress line (banner, input info,
    warnings). A progress line starts with one of PROGRESS_KEYS.
    """
    stripped = line.strip()
    leading = LEADING_KEY_PATTERN.match(stripped)
    if not leading or leading.group(1) not in PROGRESS_KEYS:
        return None

    fields = {
        key: value
        for key, value in FIELD_PATTERN.findall(stripped)
        if key in PROGRESS_KEYS
    }
    if "Lsize" in fields and "size" not in fields:
        fields["size"] = fields.pop("Lsize")
    return fields


def merge_stats(
    previous: StreamStats,
    fields: dict[str, str],
    cpu_sample: float | None = None,
    cpu_window: int = DEFAULT_CPU_WINDOW,
) -> StreamStats:
    """Build a new StreamStats from the previous snapshot and parsed fields.

    Args:
        previous: Last snapshot (never mutated)
        fields: Output of parse_progress_fields()
        cpu_sample: Load sample to append, None to leave the window unchanged
        cpu_window: Maximum number of CPU samples kept

    Returns:
        New StreamStats; absent or malformed fields keep previous values
    """
    fps = previous.fps
    if "fps" in fields:
        try:
            value = float(fields["fps"])
        except ValueError:
            _degraded("fps", fields["fps"])
        else:
            # float() accepts nan, inf and overflowing exponents
            if math.isfinite(value) and value >= 0:
                fps = value
            else:
                _degraded("fps", fields["fps"])

    frame = previous.frame
    if "frame" in fields:
        try:
            frame = int(fields["frame"])
        except ValueError:
            _degraded("frame", fields["frame"])

    media_time = previous.time
    if "time" in fields:
        if TIME_PATTERN.match(fields["time"]):
            media_time = fields["time"]
        else:
            _degraded("time", fields["time"])

    cpu = list(previous.cpu)
    if cpu_sample is not None:
        cpu.append(cpu_sample)
    cpu = cpu[-cpu_window:] if cpu_window > 0 else []

    return StreamStats(
        fps=fps,
        size=fields.get("size", previous.size),
        time=media_time,
        bitrate=fields.get("bitrate", previous.bitrate),
        speed=fields.get("speed", previous.speed),
        frame=frame,
        cpu=cpu,
    )


def parse_progress_line(
    line: str,
    previous: StreamStats | None = None,
    cpu_sample: float | None = None,
    cpu_window: int = DEFAULT_CPU_WINDOW,
) -> StreamStats | None:
    """Parse one line of FFmpeg output.

    Returns:
        Updated StreamStats, or None if the line is not a progress line
    """
    fields = parse_progress_fields(line)
    if fields is None:
        return None
    return merge_stats(previous or StreamStats(), fields, cpu_sample, cpu_window)


def load_average_sample() -> float:
    """One-minute system load average, 0.0 where unsupported."""
    try:
        return round(os.getloadavg()[0], 2)
    except (AttributeError, OSError):
        return 0.0


def _degraded(field: str, value: str) -> None:
    logger.debug(f"Malformed progress field {field}={value!r}, keeping previous value")
    metrics.stream_parse_degraded_total.labels(field=field).inc()
