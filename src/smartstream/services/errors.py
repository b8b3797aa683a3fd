"""Stream supervisor error taxonomy.

Every failure is scoped to a single stream key. None of these exceptions is
allowed to escape into the control plane except ResourceExhausted, which the
registry records as a process-wide health condition.

Error Types:
    AdmissionDenied   - Concurrency ceiling reached (recoverable, retry later)
    SpawnFailed       - FFmpeg binary missing or arguments rejected at spawn
    ResourceExhausted - OS refuses to create any process (fatal for supervisor)
    ProcessCrashed    - FFmpeg exited on its own (surfaced via status, not raised)
    StopTimeout       - Graceful stop exceeded the grace period, process killed
    UnknownStream     - Stream key never referenced
    StreamBusy        - Operation requires a stream that is not live

Malformed progress lines are never an error: they are logged at DEBUG and
counted in the ``stream_parse_degraded_total`` metric.
"""
from __future__ import annotations


class StreamError(Exception):
    """Base class for all per-stream failures.

    Attributes:
        message: Human-readable description
        key: Stream key the failure belongs to (None if not key-scoped)
    """

    def __init__(self, message: str, key: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.key = key


class AdmissionDenied(StreamError):
    """Raised when the concurrency ceiling is reached. No queueing."""

    def __init__(self, key: str, in_use: int, limit: int) -> None:
        super().__init__(
            f"Concurrent stream limit reached ({in_use}/{limit})",
            key=key,
        )
        self.in_use = in_use
        self.limit = limit


class SpawnFailed(StreamError):
    """Raised synchronously when the transcoding process cannot be spawned."""


class ResourceExhausted(StreamError):
    """Raised when the OS cannot spawn any process at all (EAGAIN, ENOMEM...)."""


class ProcessCrashed(StreamError):
    """Describes an unrequested process exit.

    Not raised to callers: the supervisor records it as ``error`` state with
    the exit code or signal in ``error_message``.
    """


class StopTimeout(StreamError):
    """Raised by ProcessHandle.stop() when the process ignored SIGTERM.

    The process has already been killed when this is raised.
    """

    def __init__(self, key: str, grace: float) -> None:
        super().__init__(
            f"Process did not exit within {grace:.1f}s of SIGTERM, killed",
            key=key,
        )
        self.grace = grace


class UnknownStream(StreamError):
    """Raised when a stream key has never been referenced."""

    def __init__(self, key: str) -> None:
        super().__init__(f"Stream '{key}' not found", key=key)


class StreamBusy(StreamError):
    """Raised when removing a stream that still owns a live process."""
