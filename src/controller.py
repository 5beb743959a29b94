"""
Operator Controller - Worker pool driving a reconciler from a work queue.

Similar to Kubernetes controllers: dispatchers add object keys to the queue,
workers take one key at a time and call the reconciler. Failures are
requeued with exponential backoff, successes reset the key's backoff.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import List, Optional

from metrics import Metrics
from plugins.reconcilers.base import Reconciler
from workqueue import ShutDownError, WorkQueue

logger = logging.getLogger(__name__)


@dataclass
class ControllerConfig:
    """Configuration for a controller's worker pool."""

    max_concurrent_reconciles: int = 5
    reconcile_timeout: float = 300.0

    # Exponential backoff configuration
    backoff_base_delay: float = 0.5  # base delay in seconds
    backoff_max_delay: float = 300.0  # max delay in seconds
    backoff_jitter_factor: float = 0.1  # ±10% jitter


class Controller:
    """
    Runs ``max_concurrent_reconciles`` workers over a WorkQueue.

    A key is only ever processed by one worker at a time; different keys are
    reconciled concurrently.
    """

    def __init__(
        self,
        name: str,
        reconciler: Reconciler,
        config: Optional[ControllerConfig] = None,
        queue: Optional[WorkQueue] = None,
        metrics: Optional[Metrics] = None,
    ):
        self.name = name
        self.config = config or ControllerConfig()
        self.queue = queue if queue is not None else WorkQueue(
            name=name,
            base_delay=self.config.backoff_base_delay,
            max_delay=self.config.backoff_max_delay,
            jitter_factor=self.config.backoff_jitter_factor,
        )
        self.metrics = metrics
        self.running = False
        self._reconciler = reconciler
        self._workers: List[asyncio.Task] = []

    @property
    def reconciler(self) -> Reconciler:
        return self._reconciler

    def set_reconciler(self, reconciler: Reconciler) -> None:
        """Swap the reconciler; keys taken from now on use the new one."""
        self._reconciler = reconciler
        logger.info(f"Controller {self.name}: reconciler replaced")

    def enqueue(self, key: str) -> None:
        self.queue.add(key)
        self._report_depth()

    async def start(self) -> None:
        """Start the workers."""
        if self.running:
            return
        logger.info(
            f"Starting controller {self.name} with "
            f"{self.config.max_concurrent_reconciles} worker(s)"
        )
        self.running = True
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"{self.name}-worker-{i}")
            for i in range(self.config.max_concurrent_reconciles)
        ]

    async def stop(self) -> None:
        """Shut the queue down and wait for the workers to finish."""
        if not self.running:
            return
        logger.info(f"Stopping controller {self.name}")
        self.running = False
        self.queue.shutdown()

        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []

    async def _worker(self, index: int) -> None:
        while True:
            try:
                key = await self.queue.get()
            except ShutDownError:
                return

            try:
                await self.process(key)
            finally:
                self.queue.done(key)
                self._report_depth()

    async def process(self, key: str) -> None:
        """Reconcile one key and requeue it according to the outcome."""
        reconciler = self._reconciler
        try:
            result = await asyncio.wait_for(
                reconciler.reconcile(key), timeout=self.config.reconcile_timeout
            )
        except asyncio.TimeoutError:
            delay = self.queue.add_rate_limited(key)
            self._record("timeout")
            logger.error(
                f"Controller {self.name}: reconcile of {key} timed out after "
                f"{self.config.reconcile_timeout}s, retrying in {delay:.2f}s"
            )
            return
        except asyncio.CancelledError:
            raise
        except Exception as e:
            delay = self.queue.add_rate_limited(key)
            self._record("error")
            logger.error(
                f"Controller {self.name}: error reconciling {key}: {e} "
                f"(retry {self.queue.num_requeues(key)} in {delay:.2f}s)",
                exc_info=True,
            )
            return

        if result is not None and result.requeue_after is not None:
            self.queue.forget(key)
            self.queue.add_after(key, result.requeue_after)
            self._record("requeue")
            logger.debug(
                f"Controller {self.name}: requeueing {key} in {result.requeue_after}s"
            )
            return

        self.queue.forget(key)
        self._record("success")

    def _record(self, result: str) -> None:
        if self.metrics is not None:
            self.metrics.record_reconcile(self.name, result)

    def _report_depth(self) -> None:
        if self.metrics is not None:
            self.metrics.set_queue_depth(self.name, len(self.queue))
