"""
Work Queue - Per-key coalescing queue with delayed and rate-limited adds.

A key is never handed to two workers at once: adding a key that is being
processed marks it dirty, and it is queued again when the worker calls
done(). Adding a key that is already waiting is a no-op.

Rate-limited adds back off exponentially per key:
delay = min(base * 2 ** (failures - 1), max), with ± jitter.
"""

import asyncio
import logging
import random
from collections import deque
from typing import Deque, Dict, Optional, Set

logger = logging.getLogger(__name__)


class ShutDownError(Exception):
    """The queue has been shut down."""


class WorkQueue:
    """
    Asyncio work queue.

    Args:
        name: Queue name, used in logs
        base_delay: First backoff delay in seconds
        max_delay: Upper bound of the backoff delay in seconds
        jitter_factor: Relative jitter applied to backoff delays (0.1 = ±10%)
    """

    def __init__(
        self,
        name: str = "",
        base_delay: float = 0.005,
        max_delay: float = 1000.0,
        jitter_factor: float = 0.1,
    ):
        self.name = name
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter_factor = jitter_factor

        self._queue: Deque[str] = deque()
        self._dirty: Set[str] = set()
        self._processing: Set[str] = set()
        self._failures: Dict[str, int] = {}
        self._timers: Set[asyncio.TimerHandle] = set()
        self._wakeup = asyncio.Event()
        self._shutting_down = False

    def __len__(self) -> int:
        return len(self._queue)

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    def add(self, key: str) -> None:
        """Queue a key unless it is already waiting."""
        if self._shutting_down or key in self._dirty:
            return

        self._dirty.add(key)
        if key in self._processing:
            return

        self._queue.append(key)
        self._notify()

    async def get(self) -> str:
        """
        Wait for the next key and mark it as being processed.

        Raises:
            ShutDownError: If the queue is shut down
        """
        while True:
            if self._shutting_down:
                raise ShutDownError(f"work queue {self.name} is shut down")
            if self._queue:
                break
            self._wakeup.clear()
            await self._wakeup.wait()

        key = self._queue.popleft()
        self._processing.add(key)
        self._dirty.discard(key)
        return key

    def done(self, key: str) -> None:
        """Mark a key as processed; re-queue it if it was added meanwhile."""
        self._processing.discard(key)
        if key in self._dirty and not self._shutting_down:
            self._queue.append(key)
            self._notify()

    def add_after(self, key: str, delay: float) -> None:
        """Queue a key after ``delay`` seconds."""
        if self._shutting_down:
            return
        if delay <= 0:
            self.add(key)
            return

        loop = asyncio.get_running_loop()
        handle: Optional[asyncio.TimerHandle] = None

        def fire() -> None:
            self._timers.discard(handle)
            self.add(key)

        handle = loop.call_later(delay, fire)
        self._timers.add(handle)

    def backoff_delay(self, key: str) -> float:
        """Delay for the next rate-limited add of ``key``."""
        failures = self._failures.get(key, 0)
        if failures <= 0:
            return 0.0
        delay = min(self.base_delay * (2 ** (failures - 1)), self.max_delay)
        jitter = delay * self.jitter_factor
        return max(0.0, delay + random.uniform(-jitter, jitter))

    def add_rate_limited(self, key: str) -> float:
        """Queue a key after its backoff delay; returns the delay used."""
        self._failures[key] = self._failures.get(key, 0) + 1
        delay = self.backoff_delay(key)
        self.add_after(key, delay)
        return delay

    def forget(self, key: str) -> None:
        """Reset the failure count of a key."""
        self._failures.pop(key, None)

    def num_requeues(self, key: str) -> int:
        return self._failures.get(key, 0)

    def shutdown(self) -> None:
        """Stop handing out keys and wake every waiting worker."""
        self._shutting_down = True
        for handle in list(self._timers):
            handle.cancel()
        self._timers.clear()
        self._notify()
        logger.debug(f"Work queue {self.name} shut down")

    def _notify(self) -> None:
        self._wakeup.set()
