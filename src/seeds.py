"""
Seed Registry - Immutable snapshots of the seed stores.

Reconcilers get a SeedRegistry at construction time and never see it change.
When the seed topology changes, SeedRegistryProvider builds a new snapshot
and the project synchronizer is rebuilt around it.
"""

import logging
from types import MappingProxyType
from typing import Awaitable, Callable, Dict, Iterator, List, Mapping, Optional, Tuple

from resources import ManagedResource
from store import ResourceStore

logger = logging.getLogger(__name__)

SEED_KIND = "Seed"

StoreFactory = Callable[[ManagedResource], Awaitable[ResourceStore]]


class SeedRegistry:
    """Read-only mapping of seed name to ResourceStore."""

    def __init__(self, seeds: Optional[Mapping[str, ResourceStore]] = None):
        self._seeds = MappingProxyType(dict(seeds or {}))

    def names(self) -> List[str]:
        return list(self._seeds)

    def get(self, name: str) -> Optional[ResourceStore]:
        return self._seeds.get(name)

    def items(self) -> Iterator[Tuple[str, ResourceStore]]:
        return iter(self._seeds.items())

    def as_mapping(self) -> Mapping[str, ResourceStore]:
        return self._seeds

    def with_seed(self, name: str, store: ResourceStore) -> "SeedRegistry":
        """Return a new snapshot with ``name`` added or replaced."""
        seeds = dict(self._seeds)
        seeds[name] = store
        return SeedRegistry(seeds)

    def without_seed(self, name: str) -> "SeedRegistry":
        """Return a new snapshot without ``name``."""
        seeds = dict(self._seeds)
        seeds.pop(name, None)
        return SeedRegistry(seeds)

    def __iter__(self) -> Iterator[str]:
        return iter(self._seeds)

    def __len__(self) -> int:
        return len(self._seeds)

    def __contains__(self, name: object) -> bool:
        return name in self._seeds

    def __repr__(self) -> str:
        return f"SeedRegistry({self.names()!r})"


class SeedRegistryProvider:
    """
    Builds SeedRegistry snapshots from the Seed objects on the control plane.

    Args:
        master: Control-plane store holding the Seed objects
        store_factory: Async callable building a connected store for a Seed
    """

    def __init__(self, master: ResourceStore, store_factory: StoreFactory):
        self.master = master
        self.store_factory = store_factory
        self._current = SeedRegistry()
        self._connections: Dict[str, dict] = {}

    @property
    def current(self) -> SeedRegistry:
        return self._current

    async def refresh(self) -> SeedRegistry:
        """
        Rebuild the snapshot from the current Seed objects.

        Stores of seeds whose connection data is unchanged are reused; stores
        of removed or changed seeds are closed once the new snapshot is built.
        The control-plane store itself may serve as a seed (shared
        control-plane/seed setups) and is never closed here.

        Raises:
            Exception: Whatever the store factory raises for a new seed; the
                previous snapshot stays current in that case
        """
        seeds = await self.master.list(SEED_KIND)

        stores: Dict[str, ResourceStore] = {}
        connections: Dict[str, dict] = {}
        created: List[ResourceStore] = []
        try:
            for seed in seeds:
                if seed.is_deleting:
                    continue
                existing = self._current.get(seed.name)
                if existing is not None and self._connections.get(seed.name) == seed.data:
                    stores[seed.name] = existing
                else:
                    store = await self.store_factory(seed)
                    created.append(store)
                    stores[seed.name] = store
                    logger.info(f"Connected to seed {seed.name}")
                connections[seed.name] = dict(seed.data)
        except Exception:
            for store in created:
                if store is not self.master:
                    await store.close()
            raise

        previous = self._current
        self._current = SeedRegistry(stores)
        self._connections = connections

        for name, store in previous.items():
            if stores.get(name) is not store and store is not self.master:
                await store.close()
                logger.info(f"Disconnected from seed {name}")

        return self._current

    async def close(self) -> None:
        for _, store in self._current.items():
            if store is not self.master:
                await store.close()
        self._current = SeedRegistry()
        self._connections = {}
