"""Admission control for concurrent FFmpeg processes.

One ConcurrencyLimiter is shared by every supervisor in the registry. A start
request takes a slot with try_acquire(); the slot comes back as an
AdmissionSlot token that the supervisor holds until the stream reaches idle
or error, then releases exactly once. There is no queueing: when the ceiling
is reached the request is rejected immediately with AdmissionDenied.

Thread Safety:
    The counter is updated under a lock; callers never hold it across an await.
"""
from __future__ import annotations

import logging
import threading

from .errors import AdmissionDenied

logger = logging.getLogger(__name__)


class AdmissionSlot:
    """A granted concurrency slot. Releasing twice is a programming error."""

    __slots__ = ("key", "_limiter", "_released")

    def __init__(self, limiter: ConcurrencyLimiter, key: str) -> None:
        self.key = key
        self._limiter = limiter
        self._released = False

    def release(self) -> None:
        if self._released:
            raise RuntimeError(f"Slot for '{self.key}' already released")
        self._released = True
        self._limiter._release(self)


class ConcurrencyLimiter:
    """Bounded counter of running streams.

    Attributes:
        max_concurrent: Ceiling on simultaneously admitted streams
    """

    def __init__(self, max_concurrent: int) -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.max_concurrent = max_concurrent
        self._holders: dict[str, AdmissionSlot] = {}
        self._lock = threading.Lock()

    @property
    def in_use(self) -> int:
        return len(self._holders)

    @property
    def available(self) -> int:
        return self.max_concurrent - self.in_use

    def holders(self) -> list[str]:
        """Stream keys currently holding a slot."""
        with self._lock:
            return list(self._holders)

    def try_acquire(self, key: str) -> AdmissionSlot:
        """Take a slot for ``key`` or raise AdmissionDenied.

        Raises:
            AdmissionDenied: Ceiling reached
            RuntimeError: ``key`` already holds a slot
        """
        with self._lock:
            if key in self._holders:
                raise RuntimeError(f"Stream '{key}' already holds a slot")
            if len(self._holders) >= self.max_concurrent:
                logger.warning(
                    f"[{key}] Admission denied: {len(self._holders)}/{self.max_concurrent} slots in use"
                )
                raise AdmissionDenied(key, len(self._holders), self.max_concurrent)
            slot = AdmissionSlot(self, key)
            self._holders[key] = slot
            logger.debug(f"[{key}] Slot acquired ({len(self._holders)}/{self.max_concurrent})")
            return slot

    def _release(self, slot: AdmissionSlot) -> None:
        with self._lock:
            if self._holders.get(slot.key) is not slot:
                raise RuntimeError(f"Slot for '{slot.key}' is not held")
            del self._holders[slot.key]
            logger.debug(f"[{slot.key}] Slot released ({len(self._holders)}/{self.max_concurrent})")
