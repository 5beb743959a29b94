"""Unit tests for template_data.py."""

import pytest

from config import ClusterConfig
from resources import ManagedResource
from template_data import (
    Datacenter,
    TemplateDataError,
    TemplateDataProvider,
    cluster_namespace,
)


class TestDatacenter:
    def test_from_dict(self):
        dc = Datacenter.from_dict(
            "europe-west3-c",
            {"country": "DE", "location": "Frankfurt", "seed": "seed-a", "spec": {"x": 1}},
        )
        assert dc.country == "DE"
        assert dc.seed == "seed-a"
        assert dc.spec == {"x": 1}

    def test_from_dict_defaults(self):
        dc = Datacenter.from_dict("dc", {})
        assert dc.location == ""
        assert dc.spec == {}


class TestClusterNamespace:
    def test_defaults_to_prefixed_name(self):
        assert cluster_namespace(ManagedResource(kind="Cluster", name="abc")) == "cluster-abc"

    def test_status_wins(self):
        cluster = ManagedResource(
            kind="Cluster", name="abc", status={"namespace": "custom"}
        )
        assert cluster_namespace(cluster) == "custom"


class TestTemplateDataProvider:
    """Tests for TemplateDataProvider.for_cluster."""

    def test_builds_template_data(self, template_provider, sample_cluster):
        sample_cluster.uid = "u-1"
        data = template_provider.for_cluster(sample_cluster)

        assert data.datacenter.name == "europe-west3-c"
        assert data.seed_datacenter == "seed-a"
        assert data.namespace == "cluster-abc123"
        assert data.machine_networks == []
        ref = data.cluster_ref()
        assert (ref.kind, ref.name, ref.uid, ref.controller) == (
            "Cluster",
            "abc123",
            "u-1",
            True,
        )

    def test_unknown_datacenter(self, template_provider, sample_cluster):
        sample_cluster.data["datacenter"] = "nowhere"

        with pytest.raises(TemplateDataError, match="failed to get datacenter nowhere"):
            template_provider.for_cluster(sample_cluster)

    def test_image_registry_override(self, datacenters, sample_cluster):
        provider = TemplateDataProvider(datacenters, overwrite_registry="registry.local")
        data = provider.for_cluster(sample_cluster)

        assert data.image_registry("gcr.io") == "registry.local"

    def test_image_registry_default(self, template_provider, sample_cluster):
        data = template_provider.for_cluster(sample_cluster)
        assert data.image_registry("gcr.io") == "gcr.io"

    def test_from_config(self, sample_cluster):
        config = ClusterConfig(
            datacenters={"europe-west3-c": {"seed": "seed-a"}},
            seed_datacenter="seed-a",
            etcd_disk_size="10Gi",
            in_cluster_prometheus_disable_default_rules=True,
        )

        data = TemplateDataProvider.from_config(config).for_cluster(sample_cluster)

        assert data.etcd_disk_size == "10Gi"
        assert data.in_cluster_prometheus_disable_default_rules
        assert data.datacenter.seed == "seed-a"
