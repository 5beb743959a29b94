"""
Resource Ensurer - The generic create / compare / update / recreate loop.

Every managed kind is described by a KindSpec in the KINDS table: how
equality is judged (structural deep-equal, content checksum, or last-applied
snapshot with a three-way merge patch), whether the kind is namespaced,
which fields cannot be changed in place and whether creation must be
observed in the cache before the next object is built.

ensure_kind() converges one kind for one cluster. A pass that finds
everything up to date issues no writes.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, Optional, Tuple

from checksum import checksum_for_mapping
from mergepatch import create_three_way_merge_patch
from metrics import Metrics
from plugins.base import NamedCreator
from resources import (
    CHECKSUM_ANNOTATION,
    LAST_APPLIED_CONFIG_ANNOTATION,
    STORE_OWNED_FIELDS,
    ManagedResource,
    OwnerReference,
    applied_fields,
    get_path,
    last_applied_configuration,
    object_key,
    semantic_equal,
    values_equal,
)
from store import PROPAGATION_FOREGROUND, NotFoundError, ResourceStore

logger = logging.getLogger(__name__)


class EqualityRule(Enum):
    """How the ensurer decides that an existing object is up to date."""

    STRUCTURAL = "structural"
    CHECKSUM = "checksum"
    LAST_APPLIED = "last-applied"


@dataclass(frozen=True)
class KindSpec:
    """Static description of a managed kind."""

    kind: str
    equality: EqualityRule
    namespaced: bool = True
    immutable_fields: Tuple[Tuple[str, ...], ...] = ()
    ordered: bool = False
    store_kind: Optional[str] = None

    @property
    def api_kind(self) -> str:
        """Kind the objects are stored as."""
        return self.store_kind or self.kind


_SELECTOR = ("data", "selector", "matchLabels")

KINDS: Dict[str, KindSpec] = {
    spec.kind: spec
    for spec in (
        KindSpec("ServiceAccount", EqualityRule.STRUCTURAL),
        KindSpec("Role", EqualityRule.STRUCTURAL),
        KindSpec("RoleBinding", EqualityRule.STRUCTURAL),
        KindSpec("ClusterRoleBinding", EqualityRule.STRUCTURAL, namespaced=False),
        KindSpec("Service", EqualityRule.STRUCTURAL),
        KindSpec(
            "LegacySecret",
            EqualityRule.LAST_APPLIED,
            ordered=True,
            store_kind="Secret",
        ),
        KindSpec("Secret", EqualityRule.CHECKSUM),
        KindSpec("ConfigMap", EqualityRule.CHECKSUM),
        KindSpec("Deployment", EqualityRule.STRUCTURAL, immutable_fields=(_SELECTOR,)),
        KindSpec("StatefulSet", EqualityRule.STRUCTURAL, immutable_fields=(_SELECTOR,)),
        KindSpec("PodDisruptionBudget", EqualityRule.STRUCTURAL),
        KindSpec("Namespace", EqualityRule.STRUCTURAL, namespaced=False),
        KindSpec("Project", EqualityRule.STRUCTURAL, namespaced=False),
    )
}


class EnsureError(Exception):
    """A step of the ensure loop failed for one object."""

    def __init__(self, kind: str, key: str, cause: Any):
        self.kind = kind
        self.key = key
        self.cause = cause
        super().__init__(f"failed to ensure {kind} {key}: {cause}")


class CacheSyncTimeoutError(EnsureError):
    """A created object did not show up in the cache in time."""

    def __init__(self, kind: str, namespace: str, name: str, timeout: float):
        self.namespace = namespace
        self.name = name
        self.timeout = timeout
        super().__init__(
            kind,
            object_key(namespace, name),
            f"timed out after {timeout}s waiting for {kind} '{name}' in "
            f"namespace '{namespace}' to appear in the cache",
        )


@dataclass
class EnsureResult:
    """Counts of the writes issued by one ensure pass."""

    created: int = 0
    updated: int = 0
    deleted: int = 0

    @property
    def changed(self) -> bool:
        return bool(self.created or self.updated or self.deleted)

    def merge(self, other: "EnsureResult") -> "EnsureResult":
        return EnsureResult(
            created=self.created + other.created,
            updated=self.updated + other.updated,
            deleted=self.deleted + other.deleted,
        )


class ResourceEnsurer:
    """
    Converges the objects built by creators against a store.

    Args:
        store: Store the objects live in
        metrics: Optional Metrics; each create or update is counted
        cache_poll_interval: Seconds between cache polls for ordered kinds
        cache_sync_timeout: Seconds to wait for an ordered object to be cached
    """

    def __init__(
        self,
        store: ResourceStore,
        metrics: Optional[Metrics] = None,
        cache_poll_interval: float = 0.1,
        cache_sync_timeout: float = 30.0,
    ):
        self.store = store
        self.metrics = metrics
        self.cache_poll_interval = cache_poll_interval
        self.cache_sync_timeout = cache_sync_timeout

    def for_store(self, store: ResourceStore) -> "ResourceEnsurer":
        """Return an ensurer with the same settings bound to another store."""
        return ResourceEnsurer(
            store,
            metrics=self.metrics,
            cache_poll_interval=self.cache_poll_interval,
            cache_sync_timeout=self.cache_sync_timeout,
        )

    async def ensure_kind(
        self,
        kind: str,
        creators: Iterable[NamedCreator],
        data: Any,
        namespace: str,
        owner: Optional[OwnerReference] = None,
    ) -> EnsureResult:
        """
        Ensure every object built by ``creators`` exists and is up to date.

        Args:
            kind: Key into KINDS
            creators: NamedCreator entries, processed in order
            data: Template data handed to every creator
            namespace: Target namespace (ignored for cluster-scoped kinds)
            owner: Owner reference set on objects that carry none

        Returns:
            EnsureResult with the number of creates, updates and deletes.
            A non-zero ``deleted`` means an object is waiting to be
            recreated on the next pass.

        Raises:
            EnsureError: On the first failing object
            CacheSyncTimeoutError: If an ordered object is not cached in time
        """
        spec = KINDS.get(kind)
        if spec is None:
            raise ValueError(f"Unknown kind: {kind}")

        ns = namespace if spec.namespaced else ""
        result = EnsureResult()

        for entry in creators:
            try:
                outcome = await self._ensure_object(spec, entry, data, ns, owner)
            except EnsureError:
                raise
            except Exception as e:
                raise EnsureError(spec.kind, object_key(ns, entry.name), e) from e

            if outcome == "created":
                result.created += 1
            elif outcome == "updated":
                result.updated += 1
            elif outcome == "deleted":
                result.deleted += 1

        return result

    async def _ensure_object(
        self,
        spec: KindSpec,
        entry: NamedCreator,
        data: Any,
        namespace: str,
        owner: Optional[OwnerReference],
    ) -> Optional[str]:
        try:
            existing: Optional[ManagedResource] = await self.store.get(
                spec.api_kind, namespace, entry.name
            )
        except NotFoundError:
            existing = None

        desired = entry.creator(
            data, existing.deep_copy() if existing is not None else None
        )
        self._complete(spec, desired, entry.name, namespace, owner)

        if existing is None:
            await self.store.create(desired)
            self._count_update(spec, desired, owner)
            logger.info(f"Created {spec.kind} {desired.key}")
            if spec.ordered:
                await self._wait_for_cache(spec, namespace, entry.name)
            return "created"

        if spec.equality is EqualityRule.LAST_APPLIED:
            return await self._patch_if_changed(spec, desired, existing, owner)

        for store_field in STORE_OWNED_FIELDS:
            if store_field == "status" and desired.status:
                continue
            setattr(desired, store_field, getattr(existing, store_field))

        if self._up_to_date(spec, desired, existing):
            return None

        # Immutable fields cannot be updated in place; recreate on the next pass
        for path in spec.immutable_fields:
            if not values_equal(get_path(desired, path), get_path(existing, path)):
                logger.info(
                    f"Immutable field {'.'.join(path)} of {spec.kind} "
                    f"{existing.key} changed, deleting it for recreation"
                )
                await self.store.delete(
                    spec.api_kind,
                    namespace,
                    entry.name,
                    propagation=PROPAGATION_FOREGROUND,
                )
                return "deleted"

        await self.store.update(desired)
        self._count_update(spec, desired, owner)
        logger.info(f"Updated {spec.kind} {desired.key}")
        return "updated"

    def _complete(
        self,
        spec: KindSpec,
        desired: ManagedResource,
        name: str,
        namespace: str,
        owner: Optional[OwnerReference],
    ) -> None:
        """Check the creator's output and stamp the bookkeeping annotation."""
        if desired.name != name:
            raise EnsureError(
                spec.kind,
                object_key(namespace, name),
                f"creator returned an object named '{desired.name}'",
            )

        desired.kind = spec.api_kind
        desired.namespace = namespace
        if owner is not None and desired.owner_reference is None:
            desired.owner_reference = owner

        if spec.equality is EqualityRule.CHECKSUM:
            desired.annotations[CHECKSUM_ANNOTATION] = checksum_for_mapping(desired.data)
        elif spec.equality is EqualityRule.LAST_APPLIED:
            desired.annotations[LAST_APPLIED_CONFIG_ANNOTATION] = (
                last_applied_configuration(desired)
            )

    def _up_to_date(
        self, spec: KindSpec, desired: ManagedResource, existing: ManagedResource
    ) -> bool:
        if spec.equality is EqualityRule.CHECKSUM:
            stored = existing.annotations.get(CHECKSUM_ANNOTATION)
            return stored is not None and stored == desired.annotations[CHECKSUM_ANNOTATION]
        return semantic_equal(desired, existing)

    async def _patch_if_changed(
        self,
        spec: KindSpec,
        desired: ManagedResource,
        existing: ManagedResource,
        owner: Optional[OwnerReference],
    ) -> Optional[str]:
        applied = desired.annotations[LAST_APPLIED_CONFIG_ANNOTATION]
        original = existing.annotations.get(LAST_APPLIED_CONFIG_ANNOTATION)
        if original == applied:
            return None

        if original is None:
            logger.debug(
                f"No last-applied configuration on {spec.kind} {existing.key}"
            )

        patch = create_three_way_merge_patch(
            original or "", applied_fields(desired), applied_fields(existing)
        )
        if not patch:
            return None

        await self.store.patch(spec.api_kind, existing.namespace, existing.name, patch)
        self._count_update(spec, desired, owner)
        logger.info(f"Patched {spec.kind} {existing.key}")
        return "updated"

    async def _wait_for_cache(self, spec: KindSpec, namespace: str, name: str) -> None:
        async def visible() -> None:
            while True:
                try:
                    await self.store.get(spec.api_kind, namespace, name)
                    return
                except NotFoundError:
                    await asyncio.sleep(self.cache_poll_interval)

        try:
            await asyncio.wait_for(visible(), timeout=self.cache_sync_timeout)
        except asyncio.TimeoutError:
            raise CacheSyncTimeoutError(
                spec.kind, namespace, name, self.cache_sync_timeout
            ) from None

    def _count_update(
        self,
        spec: KindSpec,
        obj: ManagedResource,
        owner: Optional[OwnerReference],
    ) -> None:
        if self.metrics is None:
            return
        cluster = owner.name if owner is not None else self.store.name
        self.metrics.record_resource_update(cluster, spec.kind, obj.name)
