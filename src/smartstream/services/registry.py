"""Process-wide map from stream key to StreamSupervisor.

The registry is the only component the API layer talks to. It is created
once by the application factory and stored on ``app.state``; there is no
module-level instance.

Supervisors are created lazily on first reference to a key and are only
removed by an explicit remove() while the stream is idle or in error.

Config Changes:
    on_config_change() restarts a stream only when it is live and one of
    the configured restart fields differs from the config it is running
    with. Idle and errored streams are left alone; the next start picks up
    the new config.

Fatal Condition:
    ResourceExhausted (the OS refuses to spawn any process) is recorded in
    ``fatal_error`` and reported by the health endpoint as unhealthy.

Logging Strategy:
    DEBUG - Supervisor creation
    INFO  - Config-change decisions, shutdown progress
    WARN  - Remove refused, shutdown failures per stream
    CRITICAL - Resource exhaustion
"""
from __future__ import annotations

import asyncio
import logging
import threading
from collections import Counter
from typing import Callable

from .errors import ResourceExhausted, StreamBusy, UnknownStream
from .limiter import ConcurrencyLimiter
from .supervisor import Spawner, StreamSupervisor, changed_restart_fields
from .. import metrics
from ..config_io import SupervisorSettings
from ..models.stream import StreamConfig, StreamState, StreamStatus

logger = logging.getLogger(__name__)


class StreamRegistry:
    """Stream key → supervisor map sharing one ConcurrencyLimiter.

    Args:
        settings: Supervisor settings (ceiling, timeouts, restart fields)
        spawner: Process factory passed to every supervisor
        cpu_sampler: CPU sample source passed to every supervisor
    """

    def __init__(
        self,
        settings: SupervisorSettings,
        spawner: Spawner | None = None,
        cpu_sampler: Callable[[], float] | None = None,
    ) -> None:
        self.settings = settings
        self.limiter = ConcurrencyLimiter(settings.max_concurrent_streams)
        self._spawner = spawner
        self._cpu_sampler = cpu_sampler
        self._supervisors: dict[str, StreamSupervisor] = {}
        self._lock = threading.Lock()
        self.fatal_error: str | None = None
        self._refresh_metrics()

    # ========================================================================
    # Lookup
    # ========================================================================

    def supervisor(self, key: str) -> StreamSupervisor:
        """Supervisor for ``key``, created on first reference."""
        with self._lock:
            supervisor = self._supervisors.get(key)
            if supervisor is None:
                supervisor = StreamSupervisor(
                    key,
                    self.limiter,
                    self.settings,
                    spawner=self._spawner,
                    cpu_sampler=self._cpu_sampler,
                    on_transition=self._on_transition,
                )
                self._supervisors[key] = supervisor
                logger.debug(f"[{key}] Supervisor created")
        return supervisor

    def _existing(self, key: str) -> StreamSupervisor:
        with self._lock:
            supervisor = self._supervisors.get(key)
        if supervisor is None:
            raise UnknownStream(key)
        return supervisor

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._supervisors

    def get(self, key: str) -> StreamStatus:
        """Status snapshot for ``key``.

        Raises:
            UnknownStream: Key never referenced
        """
        return self._existing(key).status

    def list_all(self) -> list[StreamStatus]:
        """Status snapshots for every known key, sorted by key."""
        with self._lock:
            supervisors = sorted(self._supervisors.items())
        return [supervisor.status for _, supervisor in supervisors]

    # ========================================================================
    # Lifecycle
    # ========================================================================

    async def start(self, key: str, config: StreamConfig) -> StreamStatus:
        """Start ``key`` with ``config`` (soft no-op when already live)."""
        try:
            return await self.supervisor(key).start(config)
        except ResourceExhausted as e:
            self._record_fatal(e)
            raise

    async def stop(self, key: str) -> StreamStatus:
        """Stop ``key``.

        Raises:
            UnknownStream: Key never referenced
        """
        return await self._existing(key).stop()

    async def restart(self, key: str, config: StreamConfig | None = None) -> StreamStatus:
        """Stop then start ``key``, reusing its last config when none is given."""
        try:
            return await self.supervisor(key).restart(config)
        except ResourceExhausted as e:
            self._record_fatal(e)
            raise

    async def on_config_change(self, key: str, config: StreamConfig) -> StreamStatus | None:
        """React to a stored config update.

        Returns:
            New status if the stream was restarted, None otherwise
        """
        with self._lock:
            supervisor = self._supervisors.get(key)

        if supervisor is None:
            logger.debug(f"[{key}] Config changed for an unknown stream, no restart")
            return None

        try:
            return await supervisor.apply_config(config, self.settings.restart_fields)
        except ResourceExhausted as e:
            self._record_fatal(e)
            raise

    def changed_restart_fields(
        self,
        current: StreamConfig | None,
        new: StreamConfig,
    ) -> list[str]:
        """Restart fields whose value differs between two configs."""
        return changed_restart_fields(current, new, self.settings.restart_fields)

    def remove(self, key: str) -> None:
        """Forget ``key``.

        Raises:
            UnknownStream: Key never referenced
            StreamBusy: Stream is starting, running or stopping
        """
        with self._lock:
            supervisor = self._supervisors.get(key)
            if supervisor is None:
                raise UnknownStream(key)
            try:
                supervisor.retire()
            except StreamBusy:
                logger.warning(f"[{key}] Remove refused: stream is {supervisor.state.value}")
                raise
            del self._supervisors[key]
        logger.info(f"[{key}] Supervisor removed")
        self._refresh_metrics()

    async def shutdown(self) -> None:
        """Stop every live stream concurrently."""
        with self._lock:
            live = [s for s in self._supervisors.values() if s.is_live]

        if not live:
            logger.info("No running streams to stop")
            return

        logger.info(f"Stopping {len(live)} stream(s)...")
        results = await asyncio.gather(*(s.stop() for s in live), return_exceptions=True)

        errors = [
            (supervisor.key, result)
            for supervisor, result in zip(live, results)
            if isinstance(result, BaseException)
        ]
        for key, error in errors:
            logger.warning(f"[{key}] Stop failed during shutdown: {error}")

        stopped = sum(
            1 for result in results
            if isinstance(result, StreamStatus) and result.state == StreamState.IDLE
        )
        logger.info(f"Stopped {stopped}/{len(live)} stream(s)")

    # ========================================================================
    # Health and Metrics
    # ========================================================================

    def state_counts(self) -> dict[str, int]:
        """Number of streams per state value."""
        with self._lock:
            return dict(Counter(s.state.value for s in self._supervisors.values()))

    def _record_fatal(self, error: ResourceExhausted) -> None:
        logger.critical(f"Supervisor cannot spawn processes: {error.message}")
        self.fatal_error = error.message

    def _on_transition(self, key: str, state: StreamState) -> None:
        if state == StreamState.RUNNING and self.fatal_error is not None:
            logger.info("Process spawned successfully, clearing fatal condition")
            self.fatal_error = None
        self._refresh_metrics()

    def _refresh_metrics(self) -> None:
        with self._lock:
            processes = sum(1 for s in self._supervisors.values() if s.has_process)
        metrics.update_stream_gauges(
            self.state_counts(),
            [state.value for state in StreamState],
            self.limiter.in_use,
            processes,
        )
