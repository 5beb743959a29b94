"""
Template Data - Per-cluster configuration consumed by creators.

Bundles the cluster object, its datacenter record and the operator-wide
settings (registry override, node port range, node access network, etcd disk
size, Prometheus rule settings) that creators need to shape the cluster's
control-plane objects.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

from resources import ManagedResource, OwnerReference

logger = logging.getLogger(__name__)

CLUSTER_KIND = "Cluster"
NAMESPACE_PREFIX = "cluster-"


class TemplateDataError(Exception):
    """Raised when template data cannot be assembled for a cluster."""


@dataclass(frozen=True)
class Datacenter:
    """A datacenter record from the operator configuration."""

    name: str
    country: str = ""
    location: str = ""
    seed: str = ""
    spec: Dict[str, Any] = field(default_factory=dict, hash=False)

    @classmethod
    def from_dict(cls, name: str, data: Dict[str, Any]) -> "Datacenter":
        return cls(
            name=name,
            country=data.get("country", ""),
            location=data.get("location", ""),
            seed=data.get("seed", ""),
            spec=dict(data.get("spec") or {}),
        )


def cluster_namespace(cluster: ManagedResource) -> str:
    """Namespace holding a cluster's control plane."""
    return cluster.status.get("namespace") or f"{NAMESPACE_PREFIX}{cluster.name}"


@dataclass(frozen=True)
class TemplateData:
    """Everything a creator may read while building an object."""

    cluster: ManagedResource
    datacenter: Datacenter
    seed_datacenter: str = ""
    overwrite_registry: str = ""
    node_port_range: str = "30000-32767"
    node_access_network: str = "10.254.0.0/16"
    etcd_disk_size: str = "5Gi"
    in_cluster_prometheus_rules_file: str = ""
    in_cluster_prometheus_disable_default_rules: bool = False

    @property
    def namespace(self) -> str:
        return cluster_namespace(self.cluster)

    @property
    def machine_networks(self) -> list:
        return list(self.cluster.data.get("machine_networks") or [])

    def cluster_ref(self) -> OwnerReference:
        """Owner reference pointing at the cluster."""
        return OwnerReference(
            kind=CLUSTER_KIND,
            name=self.cluster.name,
            uid=self.cluster.uid,
            controller=True,
        )

    def image_registry(self, default: str) -> str:
        """Return the registry to pull from, honouring the override."""
        return self.overwrite_registry or default


class TemplateDataProvider:
    """Builds TemplateData for clusters from operator-wide settings."""

    def __init__(
        self,
        datacenters: Mapping[str, Datacenter],
        seed_datacenter: str = "",
        overwrite_registry: str = "",
        node_port_range: str = "30000-32767",
        node_access_network: str = "10.254.0.0/16",
        etcd_disk_size: str = "5Gi",
        in_cluster_prometheus_rules_file: str = "",
        in_cluster_prometheus_disable_default_rules: bool = False,
    ):
        self.datacenters = dict(datacenters)
        self.seed_datacenter = seed_datacenter
        self.overwrite_registry = overwrite_registry
        self.node_port_range = node_port_range
        self.node_access_network = node_access_network
        self.etcd_disk_size = etcd_disk_size
        self.in_cluster_prometheus_rules_file = in_cluster_prometheus_rules_file
        self.in_cluster_prometheus_disable_default_rules = (
            in_cluster_prometheus_disable_default_rules
        )

    @classmethod
    def from_config(cls, config: Any) -> "TemplateDataProvider":
        """Build a provider from a config.ClusterConfig."""
        return cls(
            datacenters={
                name: Datacenter.from_dict(name, raw)
                for name, raw in config.datacenters.items()
            },
            seed_datacenter=config.seed_datacenter,
            overwrite_registry=config.overwrite_registry,
            node_port_range=config.node_port_range,
            node_access_network=config.node_access_network,
            etcd_disk_size=config.etcd_disk_size,
            in_cluster_prometheus_rules_file=config.in_cluster_prometheus_rules_file,
            in_cluster_prometheus_disable_default_rules=(
                config.in_cluster_prometheus_disable_default_rules
            ),
        )

    def for_cluster(self, cluster: ManagedResource) -> TemplateData:
        """
        Assemble template data for a cluster.

        Raises:
            TemplateDataError: If the cluster's datacenter is unknown
        """
        name: Optional[str] = cluster.data.get("datacenter")
        datacenter = self.datacenters.get(name or "")
        if datacenter is None:
            raise TemplateDataError(f"failed to get datacenter {name}")

        return TemplateData(
            cluster=cluster,
            datacenter=datacenter,
            seed_datacenter=self.seed_datacenter,
            overwrite_registry=self.overwrite_registry,
            node_port_range=self.node_port_range,
            node_access_network=self.node_access_network,
            etcd_disk_size=self.etcd_disk_size,
            in_cluster_prometheus_rules_file=self.in_cluster_prometheus_rules_file,
            in_cluster_prometheus_disable_default_rules=(
                self.in_cluster_prometheus_disable_default_rules
            ),
        )
