"""Per-stream lifecycle state machine.

StreamSupervisor owns at most one FFmpeg process for one stream key and
drives the state machine:

    idle ──start──▶ starting ──liveness──▶ running ──stop──▶ stopping ──▶ idle
                       │                      │                  │
                       └──exit/timeout──▶ error ◀──crash/stall───┘ (killed)

Rules:
    - Every transition happens under the supervisor's asyncio.Lock, except
      the ones driven by the process itself (liveness, crash, stall), which
      run on the event loop between awaits and never interleave with a
      locked section's synchronous steps.
    - A concurrency slot is held exactly while the state is starting,
      running or stopping, and released exactly once on reaching idle/error.
    - StreamStatus is replaced or updated with single assignments; callers
      always receive a deep copy.
    - Liveness is the first progress line or the first output line that
      does not look like an error.

Stall Watchdog:
    While running, no output for ``stall_timeout_seconds`` or
    ``stall_repeat_limit`` consecutive progress lines with the same media
    time kills the process. The exit is then recorded as error/stalled.

Logging Strategy:
    DEBUG - Raw FFmpeg output lines, slot bookkeeping
    INFO  - State transitions, start/stop requests
    WARN  - Stalls, start timeouts, forced kills
    ERROR - Crashes, spawn failures, unexpected run loop failures
"""
from __future__ import annotations

import asyncio
import logging
import re
from collections import deque
from datetime import datetime, timezone
from typing import Awaitable, Callable, Collection, Final, Sequence

from .errors import (
    AdmissionDenied,
    ProcessCrashed,
    ResourceExhausted,
    SpawnFailed,
    StopTimeout,
    StreamBusy,
    UnknownStream,
)
from .limiter import AdmissionSlot, ConcurrencyLimiter
from .process_handle import ProcessExit, ProcessHandle
from .stats_parser import load_average_sample, merge_stats, parse_progress_fields
from .. import metrics
from ..config.ffmpeg_defaults import build_ffmpeg_args, build_ffmpeg_options
from ..config_io import SupervisorSettings
from ..models.stream import (
    LIVE_STATES,
    ErrorCause,
    StreamConfig,
    StreamState,
    StreamStats,
    StreamStatus,
)

logger = logging.getLogger(__name__)

Spawner = Callable[[str, Sequence[str]], Awaitable[ProcessHandle]]
"""async (key, argv) -> ProcessHandle. Raises SpawnFailed/ResourceExhausted."""

TransitionCallback = Callable[[str, StreamState], None]

# ============================================================================
# Constants
# ============================================================================

HISTORY_SIZE: Final[int] = 5
"""Parsed progress snapshots kept per stream."""

ERROR_LINE_PATTERN: Final[re.Pattern[str]] = re.compile(
    r"error|failed|invalid|refused|denied|not found|unable|could not|no such|timed out",
    re.IGNORECASE
)
"""Output lines that do not count as a liveness signal."""


def _now() -> datetime:
    return datetime.now(timezone.utc)


def changed_restart_fields(
    current: StreamConfig | None,
    new: StreamConfig,
    restart_fields: Collection[str],
) -> list[str]:
    """Restart fields whose value differs between two configs (all of them if current is None)."""
    if current is None:
        return sorted(restart_fields)
    return sorted(field for field in restart_fields if getattr(current, field) != getattr(new, field))


# ============================================================================
# Stream Supervisor
# ============================================================================

class StreamSupervisor:
    """Lifecycle owner for one stream key.

    Args:
        key: Stream key
        limiter: Shared admission limiter
        settings: Grace period, timeouts, watchdog and FFmpeg binary
        spawner: Process factory (defaults to ProcessHandle.spawn)
        cpu_sampler: Returns one CPU load sample per progress line
        on_transition: Called after every state change (metrics refresh)
    """

    def __init__(
        self,
        key: str,
        limiter: ConcurrencyLimiter,
        settings: SupervisorSettings,
        spawner: Spawner | None = None,
        cpu_sampler: Callable[[], float] | None = None,
        on_transition: TransitionCallback | None = None,
    ) -> None:
        self.key = key
        self._limiter = limiter
        self._settings = settings
        self._spawner: Spawner = spawner or ProcessHandle.spawn
        self._cpu_sampler = cpu_sampler or load_average_sample
        self._on_transition = on_transition

        self._lock = asyncio.Lock()
        self._status = StreamStatus(id=key)
        self._config: StreamConfig | None = None
        self._history: deque[StreamStats] = deque(maxlen=HISTORY_SIZE)

        self._handle: ProcessHandle | None = None
        self._slot: AdmissionSlot | None = None
        self._run_task: asyncio.Task[None] | None = None
        self._started: asyncio.Future[None] | None = None
        self._stop_requested = False
        self._retired = False
        self._stall_reason: str | None = None
        self._repeated_times = 0

    # ========================================================================
    # Snapshots
    # ========================================================================

    @property
    def status(self) -> StreamStatus:
        """Deep copy of the current status."""
        return self._status.model_copy(deep=True)

    @property
    def state(self) -> StreamState:
        return self._status.state

    @property
    def is_live(self) -> bool:
        return self._status.state in LIVE_STATES

    @property
    def has_process(self) -> bool:
        return self._handle is not None

    @property
    def config(self) -> StreamConfig | None:
        """Config of the most recent start attempt."""
        return self._config

    @property
    def history(self) -> list[StreamStats]:
        """Recent progress snapshots, oldest first."""
        return [stats.model_copy(deep=True) for stats in self._history]

    def duration(self) -> float | None:
        """Seconds since start_time, up to end_time once terminated."""
        start = self._status.start_time
        if start is None:
            return None
        end = self._status.end_time or _now()
        return max(0.0, (end - start).total_seconds())

    # ========================================================================
    # Public Operations
    # ========================================================================

    async def start(self, config: StreamConfig) -> StreamStatus:
        """Start the stream, or return the current status if already live.

        Returns:
            Status after liveness, early exit or start timeout

        Raises:
            AdmissionDenied: Ceiling reached (state unchanged)
            SpawnFailed: Process could not be spawned (state is error)
            ResourceExhausted: OS cannot spawn processes (state is error)
        """
        async with self._lock:
            self._ensure_not_retired()
            return await self._start_locked(config)

    async def stop(self) -> StreamStatus:
        """Stop the stream. No-op when idle or error."""
        async with self._lock:
            await self._stop_locked()
            return self.status

    async def restart(self, config: StreamConfig | None = None) -> StreamStatus:
        """Stop then start under one lock acquisition.

        Args:
            config: New config (defaults to the last one used)

        Raises:
            ValueError: No config given and the stream was never started
        """
        async with self._lock:
            self._ensure_not_retired()
            config = config or self._config
            if config is None:
                raise ValueError(f"Stream '{self.key}' has no config to restart with")
            logger.info(f"[{self.key}] Restarting")
            await self._stop_locked()
            return await self._start_locked(config)

    async def apply_config(
        self,
        config: StreamConfig,
        restart_fields: Collection[str],
    ) -> StreamStatus | None:
        """Restart with ``config`` if live and a restart field changed.

        The check runs under the lock, so a stop in flight is waited for and
        its outcome decides: a stream that ended up idle or in error stays
        down.

        Returns:
            New status if the stream was restarted, None otherwise
        """
        async with self._lock:
            if self._retired or not self.is_live:
                logger.debug(f"[{self.key}] Config changed while not live, no restart")
                return None

            changed = changed_restart_fields(self._config, config, restart_fields)
            if not changed:
                logger.info(f"[{self.key}] Config changed without restart fields, keeping process")
                return None

            logger.info(f"[{self.key}] Restart fields changed ({', '.join(changed)}), restarting")
            await self._stop_locked()
            return await self._start_locked(config)

    def retire(self) -> None:
        """Mark the supervisor as removed from the registry.

        Later start/restart calls raise UnknownStream.

        Raises:
            StreamBusy: Stream is live or a lifecycle call holds the lock
        """
        if self.is_live or self._lock.locked():
            raise StreamBusy(
                f"Stream '{self.key}' is {self._status.state.value}, stop it first",
                key=self.key,
            )
        self._retired = True

    def _ensure_not_retired(self) -> None:
        if self._retired:
            raise UnknownStream(self.key)

    # ========================================================================
    # Start
    # ========================================================================

    async def _start_locked(self, config: StreamConfig) -> StreamStatus:
        if self._status.state in (StreamState.STARTING, StreamState.RUNNING):
            logger.info(f"[{self.key}] Already {self._status.state.value}, start ignored")
            return self.status

        try:
            slot = self._limiter.try_acquire(self.key)
        except AdmissionDenied:
            metrics.streams_start_total.labels(status="denied").inc()
            raise

        self._slot = slot
        self._config = config
        self._stop_requested = False
        self._stall_reason = None
        self._repeated_times = 0
        self._history.clear()
        self._status = StreamStatus(id=self.key, state=StreamState.STARTING, start_time=_now())
        self._transitioned()

        argv = build_ffmpeg_args(build_ffmpeg_options(config), self._settings.ffmpeg_binary)
        try:
            handle = await self._spawner(self.key, argv)
        except (SpawnFailed, ResourceExhausted) as e:
            metrics.streams_start_total.labels(status="failure").inc()
            self._finish(StreamState.ERROR, ErrorCause.SPAWN_FAILED, e.message)
            raise

        loop = asyncio.get_running_loop()
        self._handle = handle
        self._status.pid = handle.pid
        self._started = loop.create_future()
        self._run_task = asyncio.create_task(self._run(handle), name=f"stream-{self.key}")

        timeout = self._settings.spawn_timeout_seconds
        try:
            await asyncio.wait_for(asyncio.shield(self._started), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"[{self.key}] No liveness signal within {timeout:.1f}s, killing")
            self._stop_requested = True
            handle.kill()
            await self._join()
            self._finish(
                StreamState.ERROR,
                ErrorCause.START_TIMEOUT,
                f"No output from process within {timeout:.1f}s",
            )

        if self._status.state == StreamState.RUNNING:
            metrics.streams_start_total.labels(status="success").inc()
        else:
            metrics.streams_start_total.labels(status="failure").inc()
        return self.status

    # ========================================================================
    # Stop
    # ========================================================================

    async def _stop_locked(self) -> None:
        if not self.is_live:
            logger.debug(f"[{self.key}] Stop ignored in state {self._status.state.value}")
            return

        handle = self._handle
        assert handle is not None
        self._stop_requested = True
        self._status.state = StreamState.STOPPING
        self._transitioned()

        grace = self._settings.stop_grace_seconds
        try:
            await handle.stop(grace)
        except StopTimeout as e:
            await self._join()
            metrics.streams_stop_total.labels(outcome="killed").inc()
            self._finish(StreamState.ERROR, ErrorCause.STOP_TIMEOUT, e.message)
            return

        await self._join()
        metrics.streams_stop_total.labels(outcome="graceful").inc()
        self._finish(StreamState.IDLE)

    async def _join(self) -> None:
        """Wait for the run loop to consume all output and the exit."""
        task = self._run_task
        if task is None:
            return
        try:
            await task
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"[{self.key}] Run loop failed: {e}", exc_info=True)

    # ========================================================================
    # Terminal Transition
    # ========================================================================

    def _finish(
        self,
        state: StreamState,
        cause: ErrorCause | None = None,
        message: str | None = None,
    ) -> None:
        """Move to idle/error, release the slot, drop the process."""
        if self._slot is not None:
            self._slot.release()
            self._slot = None

        self._handle = None
        self._run_task = None
        self._status.state = state
        self._status.end_time = _now()
        self._status.pid = None
        self._status.error_cause = cause
        self._status.error_message = message
        metrics.clear_stream_fps(self.key)

        if state == StreamState.ERROR:
            metrics.stream_errors_total.labels(error_type=cause.value if cause else "unknown").inc()
            logger.error(f"[{self.key}] Stream error ({cause.value if cause else 'unknown'}): {message}")
        else:
            logger.info(f"[{self.key}] Stream stopped")
        self._transitioned()

    def _transitioned(self) -> None:
        logger.debug(f"[{self.key}] State -> {self._status.state.value}")
        if self._on_transition is not None:
            self._on_transition(self.key, self._status.state)

    # ========================================================================
    # Run Loop
    # ========================================================================

    async def _run(self, handle: ProcessHandle) -> None:
        """Consume output until EOF, then record the exit."""
        while True:
            try:
                line = await handle.next_line(self._line_timeout())
            except asyncio.TimeoutError:
                self._declare_stall(
                    handle,
                    f"No progress for {self._settings.stall_timeout_seconds:.1f}s",
                )
                continue

            if line is None:
                break

            try:
                self._on_line(handle, line)
            except Exception as e:
                logger.error(f"[{self.key}] Failed to handle output line: {e}", exc_info=True)

        info = await handle.wait()
        self._on_exit(handle, info)

    def _line_timeout(self) -> float | None:
        timeout = self._settings.stall_timeout_seconds
        if (
            timeout <= 0
            or self._stop_requested
            or self._stall_reason is not None
            or self._status.state != StreamState.RUNNING
        ):
            return None
        return timeout

    def _on_line(self, handle: ProcessHandle, line: str) -> None:
        logger.debug(f"[{self.key}] ffmpeg: {line}")
        fields = parse_progress_fields(line)

        if fields is None:
            handle.remember(line)
            if not ERROR_LINE_PATTERN.search(line):
                self._mark_running()
            return

        window = self._settings.cpu_window
        previous = self._status.stats
        stats = merge_stats(
            previous,
            fields,
            cpu_sample=self._cpu_sampler() if window > 0 else None,
            cpu_window=window,
        )
        self._status.stats = stats
        self._history.append(stats)
        metrics.stream_fps.labels(stream_key=self.key).set(stats.fps)

        was_running = self._status.state == StreamState.RUNNING
        self._mark_running()
        if was_running and "time" in fields:
            self._check_time_advancing(handle, previous, stats)

    def _mark_running(self) -> None:
        if self._status.state != StreamState.STARTING or self._stop_requested:
            return
        self._status.state = StreamState.RUNNING
        logger.info(f"[{self.key}] Stream running (PID={self._status.pid})")
        self._transitioned()
        if self._started is not None and not self._started.done():
            self._started.set_result(None)

    def _check_time_advancing(
        self,
        handle: ProcessHandle,
        previous: StreamStats,
        stats: StreamStats,
    ) -> None:
        limit = self._settings.stall_repeat_limit
        if limit <= 0:
            return
        if stats.time != previous.time:
            self._repeated_times = 0
            return
        self._repeated_times += 1
        if self._repeated_times >= limit:
            self._declare_stall(handle, f"Media time stuck at {stats.time} for {limit} updates")

    def _declare_stall(self, handle: ProcessHandle, reason: str) -> None:
        if self._stall_reason is not None or self._stop_requested:
            return
        logger.warning(f"[{self.key}] Stream stalled: {reason}, killing process")
        self._stall_reason = reason
        handle.kill()

    def _on_exit(self, handle: ProcessHandle, info: ProcessExit) -> None:
        if self._started is not None and not self._started.done():
            self._started.set_result(None)

        if self._stop_requested or self._handle is not handle:
            # stop() or the start timeout path records the outcome
            return

        if self._stall_reason is not None:
            self._finish(StreamState.ERROR, ErrorCause.STALLED, self._stall_reason)
            return

        crash = ProcessCrashed(handle.describe_exit(info), key=self.key)
        self._finish(StreamState.ERROR, ErrorCause.CRASHED, crash.message)
