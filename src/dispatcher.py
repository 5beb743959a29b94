"""
Event Watch Dispatcher - Maps watch events to work queue keys.

A dispatcher consumes a store's watch stream for one kind and adds the keys
produced by its handler to a controller's queue. Two handlers are provided:
one enqueueing the object itself, one enqueueing every Project whenever a
Seed changes.
"""

import asyncio
import logging
from typing import AsyncIterator, Awaitable, Callable, List, Optional, Union

from events import WatchEvent
from store import ResourceStore
from workqueue import WorkQueue

logger = logging.getLogger(__name__)

Handler = Callable[[WatchEvent], Union[List[str], Awaitable[List[str]]]]
BeforeDispatch = Callable[[WatchEvent], Awaitable[None]]


def enqueue_request_for_object(event: WatchEvent) -> List[str]:
    """Enqueue the key of the object the event is about."""
    return [event.object.key]


class EnqueueAllProjects:
    """Enqueue every Project on the control plane, whatever the event."""

    def __init__(self, master: ResourceStore):
        self.master = master

    async def __call__(self, event: WatchEvent) -> List[str]:
        try:
            projects = await self.master.list("Project")
        except Exception as e:
            logger.error(f"Failed to list projects: {e}", exc_info=True)
            return []
        return [project.name for project in projects]


class EventWatchDispatcher:
    """
    Feeds a work queue from a watch stream.

    Args:
        source: Async iterator of WatchEvents (e.g. ``store.watch(kind)``)
        handler: Maps an event to queue keys; may be sync or async
        queue: Queue to add the keys to
        name: Dispatcher name, used in logs
        before_dispatch: Optional hook awaited before the handler runs
    """

    def __init__(
        self,
        source: AsyncIterator[WatchEvent],
        handler: Handler,
        queue: WorkQueue,
        name: str = "",
        before_dispatch: Optional[BeforeDispatch] = None,
    ):
        self.source = source
        self.handler = handler
        self.queue = queue
        self.name = name
        self.before_dispatch = before_dispatch
        self._task: Optional[asyncio.Task] = None
        self.dispatched = 0

    async def run(self) -> None:
        """Consume the watch stream until it ends or stop() is called."""
        self._task = asyncio.current_task()
        logger.info(f"Dispatcher {self.name} started")
        try:
            async for event in self.source:
                await self.dispatch(event)
        except asyncio.CancelledError:
            logger.info(f"Dispatcher {self.name} stopped")
            raise
        finally:
            self._task = None

    async def dispatch(self, event: WatchEvent) -> List[str]:
        """Map one event to keys and add them to the queue."""
        if self.before_dispatch is not None:
            await self.before_dispatch(event)

        keys = self.handler(event)
        if asyncio.iscoroutine(keys):
            keys = await keys

        for key in keys:
            self.queue.add(key)
        self.dispatched += len(keys)
        logger.debug(
            f"Dispatcher {self.name}: {event.event_type.value} {event.kind} "
            f"{event.object.key} -> {len(keys)} key(s)"
        )
        return keys

    def stop(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
