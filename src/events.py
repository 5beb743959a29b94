"""
Events - In-memory pub/sub for watch events and recorded object events.

Provides the watch stream consumed by the dispatchers (ADDED / MODIFIED /
DELETED notifications for managed objects) and the EventRecorder used to
attach user-visible Normal/Warning events to the objects we reconcile.
"""

import asyncio
import json
import logging
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncIterator, Callable, Deque, Dict, List, Optional, Tuple

from resources import ManagedResource

logger = logging.getLogger(__name__)


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class EventType(Enum):
    """Types of watch events."""

    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"


@dataclass
class WatchEvent:
    """Event emitted by a store when an object changes."""

    event_type: EventType
    object: ManagedResource
    timestamp: str = field(default_factory=_utcnow)

    @property
    def kind(self) -> str:
        return self.object.kind

    def to_sse(self) -> str:
        """
        Format the event as an SSE message.

        Returns:
            SSE-formatted string with event type and JSON data lines.
        """
        data = {
            "event_type": self.event_type.value,
            "object": self.object.to_dict(),
            "timestamp": self.timestamp,
        }
        return f"event: {self.event_type.value}\ndata: {json.dumps(data)}\n\n"


@dataclass
class RecordedEvent:
    """A user-visible event attached to an object."""

    type: str
    reason: str
    message: str
    involved_kind: str
    involved_name: str
    involved_namespace: str = ""
    source: str = ""
    timestamp: str = field(default_factory=_utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "reason": self.reason,
            "message": self.message,
            "involved_object": {
                "kind": self.involved_kind,
                "name": self.involved_name,
                "namespace": self.involved_namespace,
            },
            "source": self.source,
            "timestamp": self.timestamp,
        }


class EventSubscription:
    """
    Async iterator for consuming events from a subscription.

    Reads events from a queue, applying an optional filter function.
    A ``None`` sentinel value stops iteration.
    """

    def __init__(
        self,
        queue: asyncio.Queue,
        filter_fn: Optional[Callable[[Any], bool]] = None,
    ):
        self._queue = queue
        self._filter_fn = filter_fn

    def __aiter__(self) -> AsyncIterator[Any]:
        return self

    async def __anext__(self) -> Any:
        while True:
            event = await self._queue.get()

            if event is None:
                raise StopAsyncIteration

            if self._filter_fn is None or self._filter_fn(event):
                return event


class EventBus:
    """
    In-memory pub/sub event bus.

    Maintains an ``asyncio.Queue`` per subscriber and publishes events
    non-blocking. Full queues cause events to be dropped (with a warning)
    to prevent back-pressure on publishers.
    """

    def __init__(self, queue_size: int = 1024):
        self._queue_size = queue_size
        self._subscribers: Dict[str, asyncio.Queue] = {}

    def publish_nowait(self, event: Any) -> None:
        """Publish an event to all subscribers from synchronous code."""
        for subscriber_id, queue in list(self._subscribers.items()):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(
                    f"Dropped event for subscriber {subscriber_id}: queue full"
                )

    async def publish(self, event: Any) -> None:
        """
        Publish an event to all subscribers (non-blocking).

        Args:
            event: The event to publish.
        """
        self.publish_nowait(event)

    async def subscribe(
        self,
        filter_fn: Optional[Callable[[Any], bool]] = None,
    ) -> Tuple[str, EventSubscription]:
        """
        Subscribe to events.

        Args:
            filter_fn: Optional predicate applied to each event.
                Only events for which it returns ``True`` are yielded.

        Returns:
            A tuple of ``(subscriber_id, EventSubscription)``.
        """
        subscriber_id = str(uuid.uuid4())
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)
        self._subscribers[subscriber_id] = queue

        logger.debug(f"New event subscriber: {subscriber_id}")
        return subscriber_id, EventSubscription(queue, filter_fn)

    async def unsubscribe(self, subscriber_id: str) -> None:
        """
        Remove a subscriber and clean up its queue.

        Sends a ``None`` sentinel so that the subscription's async
        iterator terminates gracefully.
        """
        queue = self._subscribers.pop(subscriber_id, None)

        if queue is not None:
            try:
                queue.put_nowait(None)
            except asyncio.QueueFull:
                pass
            logger.debug(f"Unsubscribed: {subscriber_id}")

    def subscriber_count(self) -> int:
        """Return the current number of subscribers."""
        return len(self._subscribers)


class EventRecorder:
    """
    Records Normal and Warning events against objects.

    Events are logged, kept in a bounded in-memory history (served by the
    admin API) and published on an optional EventBus.
    """

    NORMAL = "Normal"
    WARNING = "Warning"

    def __init__(
        self,
        component: str,
        event_bus: Optional[EventBus] = None,
        history_size: int = 256,
    ):
        self.component = component
        self._event_bus = event_bus
        self._history: Deque[RecordedEvent] = deque(maxlen=history_size)

    def for_component(self, component: str) -> "EventRecorder":
        """Return a recorder sharing this one's history and bus."""
        recorder = EventRecorder(component, self._event_bus)
        recorder._history = self._history
        return recorder

    def _record(
        self, event_type: str, obj: ManagedResource, reason: str, message: str
    ) -> RecordedEvent:
        event = RecordedEvent(
            type=event_type,
            reason=reason,
            message=message,
            involved_kind=obj.kind,
            involved_name=obj.name,
            involved_namespace=obj.namespace,
            source=self.component,
        )
        self._history.append(event)
        if self._event_bus is not None:
            self._event_bus.publish_nowait(event)
        return event

    def normal(self, obj: ManagedResource, reason: str, message: str) -> RecordedEvent:
        logger.info(f"{obj.kind} {obj.key}: {reason}: {message}")
        return self._record(self.NORMAL, obj, reason, message)

    def warning(self, obj: ManagedResource, reason: str, message: str) -> RecordedEvent:
        logger.warning(f"{obj.kind} {obj.key}: {reason}: {message}")
        return self._record(self.WARNING, obj, reason, message)

    def events(
        self, kind: Optional[str] = None, name: Optional[str] = None
    ) -> List[RecordedEvent]:
        """List recorded events, oldest first, optionally filtered."""
        return [
            e
            for e in self._history
            if (kind is None or e.involved_kind == kind)
            and (name is None or e.involved_name == name)
        ]
