"""
Cluster Reconciler - Deploys the control plane of a user cluster.

For every Cluster object the reconciler makes sure the cluster namespace
exists, builds the cluster's template data and then runs the ensure loop for
each component kind in a fixed order. Objects in the cluster namespace carry
an owner reference to the Cluster, so deleting the Cluster removes them.
"""

import logging
from typing import Optional

from ensurer import EnsureResult, ResourceEnsurer
from events import EventRecorder
from plugins.reconcilers.base import Reconciler, ReconcileResult
from plugins.registry import CreatorRegistry
from resources import ManagedResource, OwnerReference, split_key
from store import NotFoundError, ResourceStore
from template_data import (
    CLUSTER_KIND,
    NAMESPACE_PREFIX,
    TemplateData,
    TemplateDataProvider,
)

logger = logging.getLogger(__name__)

RECONCILING_ERROR_REASON = "ReconcilingError"


class ClusterReconciler(Reconciler):
    """
    Reconciles Cluster objects.

    Args:
        store: Store holding the Cluster objects and their control planes
        creators: Registry of creators per component kind
        template_data: Provider building per-cluster template data
        recorder: Recorder for user-visible events
        ensurer: Ensure loop bound to ``store`` (built when omitted)
        recreate_delay: Seconds before the pass that recreates objects
            deleted because an immutable field changed
    """

    def __init__(
        self,
        store: ResourceStore,
        creators: CreatorRegistry,
        template_data: TemplateDataProvider,
        recorder: EventRecorder,
        ensurer: Optional[ResourceEnsurer] = None,
        recreate_delay: float = 5.0,
    ):
        self.store = store
        self.creators = creators
        self.template_data = template_data
        self.recorder = recorder
        self.ensurer = ensurer or ResourceEnsurer(store)
        self.recreate_delay = recreate_delay

    @property
    def name(self) -> str:
        return "cluster-controller"

    async def reconcile(self, key: str) -> ReconcileResult:
        _, name = split_key(key)
        try:
            cluster = await self.store.get(CLUSTER_KIND, "", name)
        except NotFoundError:
            logger.debug(f"Cluster {name} not found, nothing to do")
            return ReconcileResult()

        if cluster.is_deleting:
            logger.debug(f"Cluster {name} is being deleted, skipping")
            return ReconcileResult()

        try:
            cluster = await self.ensure_namespace(cluster)
            result = await self.ensure_resources_are_deployed(cluster)
        except Exception as e:
            self.recorder.warning(cluster, RECONCILING_ERROR_REASON, str(e))
            raise

        if result.deleted:
            logger.info(
                f"Cluster {name}: {result.deleted} object(s) deleted for "
                f"recreation, requeueing in {self.recreate_delay}s"
            )
            return ReconcileResult(requeue_after=self.recreate_delay)
        return ReconcileResult()

    async def ensure_namespace(self, cluster: ManagedResource) -> ManagedResource:
        """Record the cluster namespace in the status and create it if absent."""
        if not cluster.status.get("namespace"):
            cluster = await self.store.patch(
                CLUSTER_KIND,
                "",
                cluster.name,
                {"status": {"namespace": f"{NAMESPACE_PREFIX}{cluster.name}"}},
            )

        namespace = cluster.status["namespace"]
        try:
            await self.store.get("Namespace", "", namespace)
            return cluster
        except NotFoundError:
            pass

        await self.store.create(
            ManagedResource(
                kind="Namespace",
                name=namespace,
                owner_reference=OwnerReference(
                    kind=CLUSTER_KIND, name=cluster.name, uid=cluster.uid
                ),
            )
        )
        if self.ensurer.metrics is not None:
            self.ensurer.metrics.record_resource_update(
                cluster.name, "Namespace", namespace
            )
        logger.info(f"Created namespace {namespace} for cluster {cluster.name}")
        return cluster

    async def ensure_resources_are_deployed(
        self, cluster: ManagedResource
    ) -> EnsureResult:
        """
        Run the ensure loop for every component kind.

        Raises:
            TemplateDataError: If the cluster's datacenter is unknown
            EnsureError: On the first failing object
        """
        data = self.template_data.for_cluster(cluster)

        steps = (
            self.ensure_service_accounts,
            self.ensure_roles,
            self.ensure_role_bindings,
            self.ensure_cluster_role_bindings,
            self.ensure_services,
            self.ensure_legacy_secrets,
            self.ensure_secrets,
            self.ensure_config_maps,
            self.ensure_deployments,
            self.ensure_stateful_sets,
            self.ensure_pod_disruption_budgets,
        )

        result = EnsureResult()
        for step in steps:
            result = result.merge(await step(cluster, data))
        return result

    async def _ensure(
        self, kind: str, cluster: ManagedResource, data: TemplateData
    ) -> EnsureResult:
        return await self.ensurer.ensure_kind(
            kind,
            self.creators.creators_for(kind, data),
            data,
            data.namespace,
            owner=data.cluster_ref(),
        )

    async def ensure_service_accounts(
        self, cluster: ManagedResource, data: TemplateData
    ) -> EnsureResult:
        return await self._ensure("ServiceAccount", cluster, data)

    async def ensure_roles(
        self, cluster: ManagedResource, data: TemplateData
    ) -> EnsureResult:
        return await self._ensure("Role", cluster, data)

    async def ensure_role_bindings(
        self, cluster: ManagedResource, data: TemplateData
    ) -> EnsureResult:
        return await self._ensure("RoleBinding", cluster, data)

    async def ensure_cluster_role_bindings(
        self, cluster: ManagedResource, data: TemplateData
    ) -> EnsureResult:
        return await self._ensure("ClusterRoleBinding", cluster, data)

    async def ensure_services(
        self, cluster: ManagedResource, data: TemplateData
    ) -> EnsureResult:
        return await self._ensure("Service", cluster, data)

    async def ensure_legacy_secrets(
        self, cluster: ManagedResource, data: TemplateData
    ) -> EnsureResult:
        """Secrets that depend on each other; created strictly in order."""
        return await self._ensure("LegacySecret", cluster, data)

    async def ensure_secrets(
        self, cluster: ManagedResource, data: TemplateData
    ) -> EnsureResult:
        return await self._ensure("Secret", cluster, data)

    async def ensure_config_maps(
        self, cluster: ManagedResource, data: TemplateData
    ) -> EnsureResult:
        return await self._ensure("ConfigMap", cluster, data)

    async def ensure_deployments(
        self, cluster: ManagedResource, data: TemplateData
    ) -> EnsureResult:
        return await self._ensure("Deployment", cluster, data)

    async def ensure_stateful_sets(
        self, cluster: ManagedResource, data: TemplateData
    ) -> EnsureResult:
        return await self._ensure("StatefulSet", cluster, data)

    async def ensure_pod_disruption_budgets(
        self, cluster: ManagedResource, data: TemplateData
    ) -> EnsureResult:
        return await self._ensure("PodDisruptionBudget", cluster, data)
