"""FFmpeg child process wrapper.

ProcessHandle owns one transcoding process:
- Spawn via asyncio.create_subprocess_exec (no shell)
- Merged stdout/stderr exposed as a bounded queue of text lines
- Graceful stop (SIGTERM) with escalation to SIGKILL after a grace period
- Exit reported once, after every output line has been delivered

FFmpeg terminates progress lines with '\\r' and log lines with '\\n', so the
reader splits on both instead of using readline().

Spawn failures are raised synchronously from spawn(). Everything after
that (crash, requested stop) is reported through wait().

Logging Strategy:
    DEBUG - Spawn details, raw output lines, reader lifecycle
    INFO  - Process started, exited
    WARN  - SIGTERM ignored, escalating to SIGKILL
    ERROR - Spawn failures
"""
from __future__ import annotations

import asyncio
import errno
import logging
import signal
import subprocess
from collections import deque
from dataclasses import dataclass
from typing import Any, AsyncIterator, Final, Sequence

from .errors import ResourceExhausted, SpawnFailed, StopTimeout
from ..utils.strings import mask_command, mask_credentials

logger = logging.getLogger(__name__)

# ============================================================================
# Constants
# ============================================================================

LINE_QUEUE_SIZE: Final[int] = 256
"""Lines buffered between the pipe reader and the consumer."""

READ_CHUNK_SIZE: Final[int] = 4096
"""Bytes read from the pipe per call."""

TAIL_LINES: Final[int] = 20
"""Non-progress lines kept for error messages."""

READER_DRAIN_TIMEOUT: Final[float] = 2.0
"""How long to wait for the pipe to close after the process exits."""

EXHAUSTION_ERRNOS: Final[frozenset[int]] = frozenset(
    {errno.EAGAIN, errno.ENOMEM, errno.EMFILE, errno.ENFILE}
)
"""OS errors meaning no process can be spawned at all."""


# ============================================================================
# Exit Information
# ============================================================================

@dataclass(frozen=True)
class ProcessExit:
    """How a process ended. Negative return codes mean killed by signal."""

    returncode: int

    @property
    def signal_name(self) -> str | None:
        if self.returncode >= 0:
            return None
        try:
            return signal.Signals(-self.returncode).name
        except ValueError:
            return f"signal {-self.returncode}"

    def describe(self) -> str:
        if self.signal_name:
            return f"killed by {self.signal_name}"
        return f"exit code {self.returncode}"


# ============================================================================
# Process Handle
# ============================================================================

class ProcessHandle:
    """One running transcoding process.

    Args:
        key: Stream key (for logging)
        process: asyncio subprocess with a readable ``stdout``
        queue_size: Maximum buffered output lines
    """

    def __init__(self, key: str, process: Any, queue_size: int = LINE_QUEUE_SIZE) -> None:
        self.key = key
        self._process = process
        self._lines: asyncio.Queue[str | None] = asyncio.Queue(maxsize=queue_size)
        self._tail: deque[str] = deque(maxlen=TAIL_LINES)
        self._exit: asyncio.Future[ProcessExit] = asyncio.get_running_loop().create_future()
        self._reader = asyncio.create_task(self._read_output())
        self._watcher = asyncio.create_task(self._watch_exit())

    @classmethod
    async def spawn(cls, key: str, argv: Sequence[str]) -> ProcessHandle:
        """Start ``argv`` and wrap it.

        Raises:
            SpawnFailed: Binary missing, not executable, or arguments rejected
            ResourceExhausted: OS cannot create processes
        """
        logger.debug(f"[{key}] Spawning: {mask_command(argv)}")
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                start_new_session=True,
            )
        except FileNotFoundError as e:
            logger.error(f"[{key}] Binary not found: {argv[0]}")
            raise SpawnFailed(f"Binary not found: {argv[0]}", key=key) from e
        except PermissionError as e:
            logger.error(f"[{key}] Binary not executable: {argv[0]}")
            raise SpawnFailed(f"Binary not executable: {argv[0]}", key=key) from e
        except OSError as e:
            if e.errno in EXHAUSTION_ERRNOS:
                logger.critical(f"[{key}] Cannot spawn processes: {e}")
                raise ResourceExhausted(f"Cannot spawn processes: {e.strerror}", key=key) from e
            logger.error(f"[{key}] Spawn failed: {e}")
            raise SpawnFailed(f"Spawn failed: {e}", key=key) from e
        except ValueError as e:
            logger.error(f"[{key}] Invalid arguments: {e}")
            raise SpawnFailed(f"Invalid arguments: {e}", key=key) from e

        logger.info(f"[{key}] Process started (PID={process.pid})")
        return cls(key, process)

    # ========================================================================
    # Properties
    # ========================================================================

    @property
    def pid(self) -> int | None:
        return self._process.pid

    def remember(self, line: str) -> None:
        """Keep a diagnostic line for the error message on exit."""
        self._tail.append(line)

    # ========================================================================
    # Output
    # ========================================================================

    async def next_line(self, timeout: float | None = None) -> str | None:
        """Next output line in emission order, None once output has ended.

        Raises:
            asyncio.TimeoutError: No line within ``timeout`` seconds
        """
        if timeout is None:
            return await self._lines.get()
        return await asyncio.wait_for(self._lines.get(), timeout=timeout)

    async def lines(self) -> AsyncIterator[str]:
        """Iterate output lines until the process closes its output."""
        while True:
            line = await self.next_line()
            if line is None:
                return
            yield line

    async def _read_output(self) -> None:
        stream = self._process.stdout
        pending = ""
        try:
            while True:
                chunk = await stream.read(READ_CHUNK_SIZE)
                if not chunk:
                    break
                pending += chunk.decode("utf-8", errors="replace")
                *complete, pending = pending.replace("\r\n", "\n").replace("\r", "\n").split("\n")
                for line in complete:
                    if line.strip():
                        await self._lines.put(line)
            if pending.strip():
                await self._lines.put(pending)
        except asyncio.CancelledError:
            logger.debug(f"[{self.key}] Output reader cancelled")
            raise
        except Exception as e:
            logger.error(f"[{self.key}] Output reader failed: {e}", exc_info=True)

        await self._lines.put(None)
        logger.debug(f"[{self.key}] Output closed")

    # ========================================================================
    # Termination
    # ========================================================================

    async def _watch_exit(self) -> None:
        returncode = await self._process.wait()
        try:
            await asyncio.wait_for(asyncio.shield(self._reader), timeout=READER_DRAIN_TIMEOUT)
        except asyncio.TimeoutError:
            # A grandchild still holds the pipe open
            logger.warning(f"[{self.key}] Output still open after exit, closing reader")
            self._reader.cancel()
            await self._lines.put(None)
        info = ProcessExit(returncode)
        logger.info(f"[{self.key}] Process exited ({info.describe()})")
        self._exit.set_result(info)

    async def wait(self) -> ProcessExit:
        """Wait for the process to exit. Resolves once, same value every call."""
        return await asyncio.shield(self._exit)

    def terminate(self) -> None:
        if self._process.returncode is None:
            self._process.terminate()

    def kill(self) -> None:
        if self._process.returncode is None:
            self._process.kill()

    async def stop(self, grace: float) -> ProcessExit:
        """SIGTERM, then SIGKILL if the process is still alive after ``grace``.

        Raises:
            StopTimeout: The process needed SIGKILL (it is dead when raised)
        """
        if self._exit.done():
            return self._exit.result()

        self.terminate()
        try:
            return await asyncio.wait_for(self.wait(), timeout=grace)
        except asyncio.TimeoutError:
            logger.warning(f"[{self.key}] Ignored SIGTERM for {grace:.1f}s, sending SIGKILL")
            self.kill()
            await self.wait()
            raise StopTimeout(self.key, grace)

    def describe_exit(self, info: ProcessExit) -> str:
        """Exit description plus the last diagnostic line, credentials masked."""
        message = f"Process {info.describe()}"
        if self._tail:
            message += f": {mask_credentials(self._tail[-1].strip())}"
        return message
