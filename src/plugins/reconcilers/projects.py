"""
Project Synchronizer - Replicates Projects from the control plane to seeds.

Every Project on the control plane gets a copy on every registered seed: the
spec and labels are ensured through the ensure loop, then the seed copy's
status is patched to match the control plane. Status only ever flows from
the control plane to the seeds.

A cleanup finalizer keeps the control-plane Project around until its copy
has been deleted from every seed.
"""

import logging
from typing import Any, Awaitable, Callable, Optional

from ensurer import ResourceEnsurer
from events import EventRecorder
from mergepatch import create_merge_patch
from plugins.base import NamedCreator
from plugins.reconcilers.base import Reconciler, ReconcileResult
from resources import (
    ManagedResource,
    add_finalizer,
    has_finalizer,
    remove_finalizer,
    split_key,
)
from seeds import SeedRegistry
from store import NotFoundError, ResourceStore

logger = logging.getLogger(__name__)

PROJECT_KIND = "Project"
CLEANUP_FINALIZER = "fleetsync.io/cleanup-seed-projects"
RECONCILING_ERROR_REASON = "ReconcilingError"

SeedAction = Callable[[str, ResourceStore, ManagedResource], Awaitable[None]]


class SeedSyncError(Exception):
    """Syncing a Project to one seed failed."""

    def __init__(self, seed: str, cause: BaseException):
        self.seed = seed
        self.cause = cause
        super().__init__(f"failed syncing project for seed {seed}: {cause}")


def project_creator(project: ManagedResource) -> NamedCreator:
    """Creator copying a control-plane Project's name, labels and spec."""

    def create(_data, existing: Optional[ManagedResource]) -> ManagedResource:
        desired = existing or ManagedResource(kind=PROJECT_KIND, name=project.name)
        desired.labels = dict(project.labels)
        desired.data = project.deep_copy().data
        return desired

    return NamedCreator(project.name, create)


def _without_nulls(value: Any) -> Any:
    """Drop null entries; a merge patch cannot store them, only delete by them."""
    if isinstance(value, dict):
        return {k: _without_nulls(v) for k, v in value.items() if v is not None}
    return value


class ProjectSynchronizer(Reconciler):
    """
    Reconciles control-plane Projects onto every seed.

    Args:
        master: Control-plane store holding the Projects
        seeds: Snapshot of the seed stores to sync to
        recorder: Recorder for user-visible events
        ensurer: Template ensurer; rebound to each seed store
    """

    def __init__(
        self,
        master: ResourceStore,
        seeds: SeedRegistry,
        recorder: EventRecorder,
        ensurer: Optional[ResourceEnsurer] = None,
    ):
        self.master = master
        self.seeds = seeds
        self.recorder = recorder
        self.ensurer = ensurer or ResourceEnsurer(master)

    @property
    def name(self) -> str:
        return "project-sync-controller"

    def with_seeds(self, seeds: SeedRegistry) -> "ProjectSynchronizer":
        """Return a synchronizer bound to another seed snapshot."""
        return ProjectSynchronizer(self.master, seeds, self.recorder, self.ensurer)

    async def reconcile(self, key: str) -> ReconcileResult:
        _, name = split_key(key)
        try:
            project = await self.master.get(PROJECT_KIND, "", name)
        except NotFoundError:
            logger.debug(f"Project {name} not found, nothing to do")
            return ReconcileResult()

        try:
            if project.is_deleting:
                await self._handle_deletion(project)
            else:
                await self._sync(project)
        except SeedSyncError as e:
            self.recorder.warning(project, RECONCILING_ERROR_REASON, str(e))
            raise

        return ReconcileResult()

    async def _sync(self, project: ManagedResource) -> None:
        if not has_finalizer(project, CLEANUP_FINALIZER):
            add_finalizer(project, CLEANUP_FINALIZER)
            project = await self.master.update(project)
            logger.info(f"Added finalizer {CLEANUP_FINALIZER} to project {project.name}")

        creators = [project_creator(project)]

        async def sync_seed(
            seed: str, store: ResourceStore, project: ManagedResource
        ) -> None:
            await self.ensurer.for_store(store).ensure_kind(
                PROJECT_KIND, creators, None, ""
            )

            seed_project = await store.get(PROJECT_KIND, "", project.name)
            patch = create_merge_patch(
                {"status": seed_project.status},
                {"status": _without_nulls(project.status)},
            )
            if patch:
                await store.patch(PROJECT_KIND, "", project.name, patch)
                logger.debug(f"Patched status of project {project.name} on seed {seed}")

        await self._sync_all_seeds(project, sync_seed)

    async def _handle_deletion(self, project: ManagedResource) -> None:
        async def delete_from_seed(
            seed: str, store: ResourceStore, project: ManagedResource
        ) -> None:
            try:
                await store.delete(PROJECT_KIND, "", project.name)
            except NotFoundError:
                pass

        await self._sync_all_seeds(project, delete_from_seed)

        if not has_finalizer(project, CLEANUP_FINALIZER):
            return

        remaining = list(project.finalizers)
        remove_finalizer(project, CLEANUP_FINALIZER)
        patch = create_merge_patch(
            {"finalizers": remaining}, {"finalizers": project.finalizers}
        )
        try:
            await self.master.patch(PROJECT_KIND, "", project.name, patch)
        except NotFoundError:
            # Shared control-plane/seed setups already removed it above
            return
        logger.info(f"Removed finalizer {CLEANUP_FINALIZER} from project {project.name}")

    async def _sync_all_seeds(self, project: ManagedResource, action: SeedAction) -> None:
        for seed, store in self.seeds.items():
            try:
                await action(seed, store, project)
            except Exception as e:
                raise SeedSyncError(seed, e) from e
            logger.debug(f"Reconciled project {project.name} with seed {seed}")
