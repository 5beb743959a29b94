"""
Resource Store - The Get/List/Create/Update/Patch/Delete contract.

Reads (get, list) are served from a cache that is eventually consistent with
the live state; writes go to the live state. Reconcile code never mutates
cached objects: every read returns a copy.

InMemoryResourceStore implements the contract in memory with an optional
cache lag, owner-reference garbage collection and finalizer handling. It
backs tests and single-process deployments; PostgresResourceStore (db.py)
backs real deployments.
"""

import asyncio
import copy
import itertools
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

from events import EventBus, EventType, WatchEvent
from mergepatch import apply_merge_patch
from resources import ManagedResource, object_key

logger = logging.getLogger(__name__)

PROPAGATION_BACKGROUND = "Background"
PROPAGATION_FOREGROUND = "Foreground"


class StoreError(Exception):
    """Base class for store errors."""

    def __init__(self, message: str, kind: str = "", namespace: str = "", name: str = ""):
        self.message = message
        self.kind = kind
        self.namespace = namespace
        self.name = name
        super().__init__(message)


class NotFoundError(StoreError):
    """The requested object does not exist."""


class AlreadyExistsError(StoreError):
    """An object with the same kind, namespace and name already exists."""


class ConflictError(StoreError):
    """An update was based on a stale resource version."""


def is_not_found(error: BaseException) -> bool:
    return isinstance(error, NotFoundError)


class ResourceStore(ABC):
    """
    Abstract interface for a cluster's object store.

    ``get`` and ``list`` read the cache; ``create``, ``update``, ``patch``
    and ``delete`` write the live state. Implementations must return
    independent copies from every call.
    """

    name: str = ""

    @abstractmethod
    async def get(self, kind: str, namespace: str, name: str) -> ManagedResource:
        """
        Read an object from the cache.

        Raises:
            NotFoundError: If the object is not (yet) in the cache
        """
        pass

    @abstractmethod
    async def list(
        self, kind: str, namespace: Optional[str] = None
    ) -> List[ManagedResource]:
        """List cached objects of a kind, optionally limited to a namespace."""
        pass

    @abstractmethod
    async def create(self, obj: ManagedResource) -> ManagedResource:
        """
        Create an object.

        Raises:
            AlreadyExistsError: If the object already exists
        """
        pass

    @abstractmethod
    async def update(self, obj: ManagedResource) -> ManagedResource:
        """
        Replace an object.

        Raises:
            NotFoundError: If the object does not exist
            ConflictError: If ``obj.resource_version`` is set and stale
        """
        pass

    @abstractmethod
    async def patch(
        self, kind: str, namespace: str, name: str, patch: Dict[str, Any]
    ) -> ManagedResource:
        """
        Apply a JSON merge patch to the serialized form of an object.

        Raises:
            NotFoundError: If the object does not exist
        """
        pass

    @abstractmethod
    async def delete(
        self,
        kind: str,
        namespace: str,
        name: str,
        propagation: str = PROPAGATION_BACKGROUND,
    ) -> None:
        """
        Delete an object.

        Objects carrying finalizers only get a deletion timestamp; they are
        removed once the last finalizer is gone. Dependents (objects owned by
        the deleted one) are garbage collected.

        Raises:
            NotFoundError: If the object does not exist
        """
        pass

    @abstractmethod
    def watch(self, kind: str) -> AsyncIterator[WatchEvent]:
        """Stream watch events for a kind, as seen by the cache."""
        pass

    async def close(self) -> None:
        """Release connections held by the store."""
        return None


@dataclass
class WriteRecord:
    """A write issued against an InMemoryResourceStore."""

    verb: str
    kind: str
    namespace: str
    name: str
    detail: Dict[str, Any] = field(default_factory=dict)

    @property
    def key(self) -> str:
        return object_key(self.namespace, self.name)


_Key = Tuple[str, str, str]


class InMemoryResourceStore(ResourceStore):
    """
    In-memory ResourceStore with an informer-style cache.

    Args:
        name: Store name, used in logs (e.g. the seed name)
        cache_lag: Seconds before a write becomes visible to get/list/watch.
            Zero makes the cache synchronous.
        event_bus: Bus used for watch events (created if omitted)
        max_writes: Number of most recent writes kept in ``writes``
    """

    def __init__(
        self,
        name: str = "local",
        cache_lag: float = 0.0,
        event_bus: Optional[EventBus] = None,
        max_writes: int = 1000,
    ):
        self.name = name
        self.cache_lag = cache_lag
        self._live: Dict[_Key, ManagedResource] = {}
        self._cache: Dict[_Key, ManagedResource] = {}
        self._versions = itertools.count(1)
        self._event_bus = event_bus or EventBus()
        self.max_writes = max_writes
        self.writes: List[WriteRecord] = []

    # ==================== Reads (cache) ====================

    async def get(self, kind: str, namespace: str, name: str) -> ManagedResource:
        obj = self._cache.get((kind, namespace, name))
        if obj is None:
            raise NotFoundError(
                f"{kind} {object_key(namespace, name)} not found",
                kind,
                namespace,
                name,
            )
        return obj.deep_copy()

    async def list(
        self, kind: str, namespace: Optional[str] = None
    ) -> List[ManagedResource]:
        items = [
            obj.deep_copy()
            for (k, ns, _), obj in self._cache.items()
            if k == kind and (namespace is None or ns == namespace)
        ]
        return sorted(items, key=lambda o: (o.namespace, o.name))

    # ==================== Writes (live) ====================

    async def create(self, obj: ManagedResource) -> ManagedResource:
        key = (obj.kind, obj.namespace, obj.name)
        if key in self._live:
            raise AlreadyExistsError(
                f"{obj.kind} {obj.key} already exists",
                obj.kind,
                obj.namespace,
                obj.name,
            )

        stored = obj.deep_copy()
        stored.uid = str(uuid.uuid4())
        stored.resource_version = next(self._versions)
        stored.deletion_timestamp = None
        self._live[key] = stored
        self._record("create", stored)
        self._schedule_sync(key)
        return stored.deep_copy()

    async def update(self, obj: ManagedResource) -> ManagedResource:
        key = (obj.kind, obj.namespace, obj.name)
        current = self._get_live(key)
        if obj.resource_version and obj.resource_version != current.resource_version:
            raise ConflictError(
                f"Operation cannot be fulfilled on {obj.kind} {obj.key}: "
                f"the object has been modified",
                obj.kind,
                obj.namespace,
                obj.name,
            )

        stored = obj.deep_copy()
        stored.uid = current.uid
        stored.deletion_timestamp = current.deletion_timestamp
        stored.resource_version = next(self._versions)
        self._live[key] = stored
        self._record("update", stored)
        self._finalize_if_released(key)
        self._schedule_sync(key)
        return stored.deep_copy()

    async def patch(
        self, kind: str, namespace: str, name: str, patch: Dict[str, Any]
    ) -> ManagedResource:
        key = (kind, namespace, name)
        current = self._get_live(key)

        patch = {
            k: v
            for k, v in patch.items()
            if k not in ("kind", "name", "namespace", "uid", "resource_version")
        }
        merged = apply_merge_patch(current.to_dict(), patch)
        stored = ManagedResource.from_dict(merged)
        stored.uid = current.uid
        stored.deletion_timestamp = current.deletion_timestamp
        stored.resource_version = next(self._versions)
        self._live[key] = stored
        self._record("patch", stored, patch=copy.deepcopy(patch))
        self._finalize_if_released(key)
        self._schedule_sync(key)
        return stored.deep_copy()

    async def delete(
        self,
        kind: str,
        namespace: str,
        name: str,
        propagation: str = PROPAGATION_BACKGROUND,
    ) -> None:
        key = (kind, namespace, name)
        current = self._get_live(key)
        self._record("delete", current, propagation=propagation)

        if current.finalizers:
            if current.deletion_timestamp is None:
                current.deletion_timestamp = datetime.now(timezone.utc)
                current.resource_version = next(self._versions)
                self._schedule_sync(key)
            return

        self._remove(key)

    # ==================== Watch ====================

    async def watch(self, kind: str) -> AsyncIterator[WatchEvent]:
        subscriber_id, subscription = await self._event_bus.subscribe(
            lambda e: isinstance(e, WatchEvent) and e.kind == kind
        )
        try:
            async for event in subscription:
                yield event
        finally:
            await self._event_bus.unsubscribe(subscriber_id)

    # ==================== Internals ====================

    def _get_live(self, key: _Key) -> ManagedResource:
        current = self._live.get(key)
        if current is None:
            kind, namespace, name = key
            raise NotFoundError(
                f"{kind} {object_key(namespace, name)} not found",
                kind,
                namespace,
                name,
            )
        return current

    def _record(self, verb: str, obj: ManagedResource, **detail: Any) -> None:
        self.writes.append(
            WriteRecord(verb, obj.kind, obj.namespace, obj.name, detail=detail)
        )
        if len(self.writes) > self.max_writes:
            del self.writes[: -self.max_writes]
        logger.debug(f"[{self.name}] {verb} {obj.kind} {obj.key}")

    def _finalize_if_released(self, key: _Key) -> None:
        current = self._live.get(key)
        if current is not None and current.is_deleting and not current.finalizers:
            self._remove(key)

    def _remove(self, key: _Key) -> None:
        removed = self._live.pop(key, None)
        self._schedule_sync(key)
        if removed is None:
            return

        # Garbage-collect dependents of the removed object
        dependents = [
            dep_key
            for dep_key, obj in self._live.items()
            if obj.owner_reference is not None
            and obj.owner_reference.kind == removed.kind
            and obj.owner_reference.name == removed.name
            and (not obj.owner_reference.uid or obj.owner_reference.uid == removed.uid)
        ]
        for dep_key in dependents:
            dependent = self._live[dep_key]
            if dependent.finalizers:
                if dependent.deletion_timestamp is None:
                    dependent.deletion_timestamp = datetime.now(timezone.utc)
                    self._schedule_sync(dep_key)
                continue
            self._remove(dep_key)

    def _schedule_sync(self, key: _Key) -> None:
        if self.cache_lag <= 0:
            self._sync_cache(key)
            return
        asyncio.get_running_loop().call_later(self.cache_lag, self._sync_cache, key)

    def _sync_cache(self, key: _Key) -> None:
        live = self._live.get(key)
        cached = self._cache.get(key)

        if live is None:
            if cached is None:
                return
            del self._cache[key]
            self._event_bus.publish_nowait(WatchEvent(EventType.DELETED, cached))
            return

        self._cache[key] = live.deep_copy()
        event_type = EventType.ADDED if cached is None else EventType.MODIFIED
        self._event_bus.publish_nowait(WatchEvent(event_type, live.deep_copy()))
