"""Unit tests for ensurer.py - The create / compare / update / recreate loop."""

import pytest

from conftest import config_map_creator, deployment_creator, writes_of
from ensurer import (
    KINDS,
    CacheSyncTimeoutError,
    EnsureError,
    EnsureResult,
    EqualityRule,
    ResourceEnsurer,
)
from plugins.base import NamedCreator
from resources import (
    CHECKSUM_ANNOTATION,
    LAST_APPLIED_CONFIG_ANNOTATION,
    ManagedResource,
    OwnerReference,
)
from store import InMemoryResourceStore

OWNER = OwnerReference(kind="Cluster", name="abc123", uid="u-1")


def legacy_secret_creator(name, payload, labels=None):
    def create(data, existing):
        obj = existing or ManagedResource(kind="Secret", name=name)
        obj.labels = dict(labels or {})
        obj.data = dict(payload)
        return obj

    return NamedCreator(name, create)


def fresh_service_creator(name, port):
    """Creator that ignores the existing object and builds from scratch."""

    def create(data, existing):
        return ManagedResource(
            kind="Service", name=name, data={"ports": [{"port": port}]}
        )

    return NamedCreator(name, create)


class TestKindTable:
    def test_equality_rules(self):
        assert KINDS["Secret"].equality is EqualityRule.CHECKSUM
        assert KINDS["ConfigMap"].equality is EqualityRule.CHECKSUM
        assert KINDS["LegacySecret"].equality is EqualityRule.LAST_APPLIED
        assert KINDS["Deployment"].equality is EqualityRule.STRUCTURAL

    def test_legacy_secrets_are_stored_as_secrets(self):
        assert KINDS["LegacySecret"].api_kind == "Secret"
        assert KINDS["LegacySecret"].ordered

    def test_selectors_are_immutable(self):
        for kind in ("Deployment", "StatefulSet"):
            assert ("data", "selector", "matchLabels") in KINDS[kind].immutable_fields

    def test_cluster_scoped_kinds(self):
        assert not KINDS["ClusterRoleBinding"].namespaced
        assert not KINDS["Project"].namespaced


class TestEnsureResult:
    def test_merge(self):
        merged = EnsureResult(created=1).merge(EnsureResult(updated=2, deleted=1))
        assert merged == EnsureResult(created=1, updated=2, deleted=1)
        assert merged.changed

    def test_empty_is_unchanged(self):
        assert not EnsureResult().changed


@pytest.mark.asyncio
class TestStructural:
    """Tests for kinds compared with structural equality."""

    @pytest.fixture
    def ensurer(self, store, metrics):
        return ResourceEnsurer(store, metrics=metrics)

    async def test_creates_missing_object(self, ensurer, store):
        result = await ensurer.ensure_kind(
            "Deployment", [deployment_creator("apiserver", {"app": "apiserver"})],
            None, "cluster-abc123", owner=OWNER,
        )

        assert result == EnsureResult(created=1)
        obj = await store.get("Deployment", "cluster-abc123", "apiserver")
        assert obj.owner_reference == OWNER

    async def test_second_pass_issues_no_writes(self, ensurer, store):
        creators = [deployment_creator("apiserver", {"app": "apiserver"})]
        await ensurer.ensure_kind("Deployment", creators, None, "ns", owner=OWNER)
        store.writes.clear()

        result = await ensurer.ensure_kind(
            "Deployment", creators, None, "ns", owner=OWNER
        )

        assert not result.changed
        assert store.writes == []

    async def test_fresh_objects_are_idempotent(self, ensurer, store):
        """Test creators that do not start from the existing object."""
        creators = [fresh_service_creator("apiserver", 443)]
        await ensurer.ensure_kind("Service", creators, None, "ns", owner=OWNER)
        store.writes.clear()

        await ensurer.ensure_kind("Service", creators, None, "ns", owner=OWNER)

        assert store.writes == []

    async def test_changed_object_is_updated(self, ensurer, store):
        await ensurer.ensure_kind(
            "Deployment", [deployment_creator("apiserver", {"app": "a"})], None, "ns"
        )

        result = await ensurer.ensure_kind(
            "Deployment",
            [deployment_creator("apiserver", {"app": "a"}, replicas=3)],
            None,
            "ns",
        )

        assert result == EnsureResult(updated=1)
        obj = await store.get("Deployment", "ns", "apiserver")
        assert obj.data["replicas"] == 3

    async def test_existing_status_is_kept(self, ensurer, store):
        creators = [deployment_creator("apiserver", {"app": "a"})]
        await ensurer.ensure_kind("Deployment", creators, None, "ns")
        await store.patch("Deployment", "ns", "apiserver", {"status": {"ready": 1}})
        store.writes.clear()

        await ensurer.ensure_kind("Deployment", creators, None, "ns")

        assert store.writes == []
        assert (await store.get("Deployment", "ns", "apiserver")).status == {
            "ready": 1
        }

    async def test_cluster_scoped_kind_ignores_namespace(self, ensurer, store):
        def binding(data, existing):
            return ManagedResource(kind="ClusterRoleBinding", name="admin")

        await ensurer.ensure_kind(
            "ClusterRoleBinding", [NamedCreator("admin", binding)], None, "ns"
        )

        assert (await store.get("ClusterRoleBinding", "", "admin")).namespace == ""

    async def test_creator_receives_copy_of_existing(self, ensurer, store):
        await store.create(
            ManagedResource(kind="Service", name="svc", namespace="ns", labels={"a": "1"})
        )
        seen = []

        def create(data, existing):
            seen.append(existing)
            existing.labels["a"] = "2"
            return existing

        await ensurer.ensure_kind("Service", [NamedCreator("svc", create)], None, "ns")

        assert seen[0].uid
        assert (await store.get("Service", "ns", "svc")).labels == {"a": "2"}

    async def test_unknown_kind(self, ensurer):
        with pytest.raises(ValueError, match="Unknown kind"):
            await ensurer.ensure_kind("Widget", [], None, "ns")


@pytest.mark.asyncio
class TestImmutableFields:
    """Tests for deleting objects whose immutable fields changed."""

    async def test_selector_change_deletes_instead_of_updating(self, store):
        ensurer = ResourceEnsurer(store)
        await ensurer.ensure_kind(
            "Deployment", [deployment_creator("apiserver", {"app": "old"})], None, "ns"
        )
        store.writes.clear()

        result = await ensurer.ensure_kind(
            "Deployment", [deployment_creator("apiserver", {"app": "new"})], None, "ns"
        )

        assert result == EnsureResult(deleted=1)
        assert writes_of(store) == [("delete", "Deployment", "ns/apiserver")]
        assert store.writes[0].detail == {"propagation": "Foreground"}

    async def test_next_pass_recreates(self, store):
        ensurer = ResourceEnsurer(store)
        await ensurer.ensure_kind(
            "StatefulSet", [_stateful_set("etcd", {"app": "old"})], None, "ns"
        )
        await ensurer.ensure_kind(
            "StatefulSet", [_stateful_set("etcd", {"app": "new"})], None, "ns"
        )

        result = await ensurer.ensure_kind(
            "StatefulSet", [_stateful_set("etcd", {"app": "new"})], None, "ns"
        )

        assert result == EnsureResult(created=1)
        obj = await store.get("StatefulSet", "ns", "etcd")
        assert obj.data["selector"]["matchLabels"] == {"app": "new"}

    async def test_other_entries_still_processed(self, store):
        ensurer = ResourceEnsurer(store)
        await ensurer.ensure_kind(
            "Deployment", [deployment_creator("a", {"app": "old"})], None, "ns"
        )

        result = await ensurer.ensure_kind(
            "Deployment",
            [deployment_creator("a", {"app": "new"}), deployment_creator("b", {})],
            None,
            "ns",
        )

        assert result == EnsureResult(created=1, deleted=1)


def _stateful_set(name, match_labels):
    def create(data, existing):
        obj = existing or ManagedResource(kind="StatefulSet", name=name)
        obj.data = {"selector": {"matchLabels": dict(match_labels)}}
        return obj

    return NamedCreator(name, create)


@pytest.mark.asyncio
class TestChecksum:
    """Tests for Secrets and ConfigMaps compared by checksum annotation."""

    async def test_annotation_is_stamped(self, store):
        ensurer = ResourceEnsurer(store)
        await ensurer.ensure_kind(
            "ConfigMap", [config_map_creator("cfg", {"a": "1"})], None, "ns"
        )

        obj = await store.get("ConfigMap", "ns", "cfg")
        assert obj.annotations[CHECKSUM_ANNOTATION].isdigit()

    async def test_same_payload_issues_no_writes(self, store):
        ensurer = ResourceEnsurer(store)
        creators = [config_map_creator("cfg", {"a": "1", "b": "2"})]
        await ensurer.ensure_kind("ConfigMap", creators, None, "ns")
        store.writes.clear()

        await ensurer.ensure_kind(
            "ConfigMap", [config_map_creator("cfg", {"b": "2", "a": "1"})], None, "ns"
        )

        assert store.writes == []

    async def test_payload_change_updates(self, store):
        ensurer = ResourceEnsurer(store)
        await ensurer.ensure_kind(
            "Secret", [_secret("ca", {"ca.crt": b"v1"})], None, "ns"
        )

        result = await ensurer.ensure_kind(
            "Secret", [_secret("ca", {"ca.crt": b"v2"})], None, "ns"
        )

        assert result == EnsureResult(updated=1)
        assert (await store.get("Secret", "ns", "ca")).data == {"ca.crt": b"v2"}

    async def test_missing_annotation_updates(self, store):
        await store.create(
            ManagedResource(kind="ConfigMap", name="cfg", namespace="ns", data={"a": "1"})
        )

        result = await ResourceEnsurer(store).ensure_kind(
            "ConfigMap", [config_map_creator("cfg", {"a": "1"})], None, "ns"
        )

        assert result == EnsureResult(updated=1)

    async def test_only_payload_is_compared(self, store):
        """Test that label drift alone does not trigger an update."""
        def fresh(data, existing):
            return ManagedResource(kind="ConfigMap", name="cfg", data={"a": "1"})

        ensurer = ResourceEnsurer(store)
        creators = [NamedCreator("cfg", fresh)]
        await ensurer.ensure_kind("ConfigMap", creators, None, "ns")
        await store.patch("ConfigMap", "ns", "cfg", {"labels": {"drift": "yes"}})
        store.writes.clear()

        await ensurer.ensure_kind("ConfigMap", creators, None, "ns")

        assert store.writes == []


def _secret(name, payload):
    def create(data, existing):
        obj = existing or ManagedResource(kind="Secret", name=name)
        obj.data = dict(payload)
        return obj

    return NamedCreator(name, create)


@pytest.mark.asyncio
class TestLastApplied:
    """Tests for legacy secrets patched with a three-way merge."""

    @pytest.fixture
    def ensurer(self, store):
        return ResourceEnsurer(store, cache_poll_interval=0.001)

    async def test_created_with_snapshot(self, ensurer, store):
        await ensurer.ensure_kind(
            "LegacySecret", [legacy_secret_creator("token", {"t": b"x"})], None, "ns"
        )

        obj = await store.get("Secret", "ns", "token")
        assert LAST_APPLIED_CONFIG_ANNOTATION in obj.annotations

    async def test_unchanged_issues_no_writes(self, ensurer, store):
        creators = [legacy_secret_creator("token", {"t": b"x"})]
        await ensurer.ensure_kind("LegacySecret", creators, None, "ns")
        store.writes.clear()

        result = await ensurer.ensure_kind("LegacySecret", creators, None, "ns")

        assert not result.changed
        assert store.writes == []

    async def test_change_is_patched_keeping_foreign_fields(self, ensurer, store):
        await ensurer.ensure_kind(
            "LegacySecret", [legacy_secret_creator("token", {"t": b"x"})], None, "ns"
        )
        await store.patch("Secret", "ns", "token", {"labels": {"external": "1"}})
        store.writes.clear()

        result = await ensurer.ensure_kind(
            "LegacySecret", [legacy_secret_creator("token", {"t": b"y"})], None, "ns"
        )

        assert result == EnsureResult(updated=1)
        assert writes_of(store) == [("patch", "Secret", "ns/token")]
        obj = await store.get("Secret", "ns", "token")
        assert obj.data == {"t": b"y"}
        assert obj.labels == {"external": "1"}

    async def test_change_keeps_foreign_finalizers(self, ensurer, store):
        def fresh(payload):
            def create(data, existing):
                return ManagedResource(kind="Secret", name="token", data=dict(payload))

            return [NamedCreator("token", create)]

        await ensurer.ensure_kind("LegacySecret", fresh({"t": b"x"}), None, "ns")
        await store.patch("Secret", "ns", "token", {"finalizers": ["external/protect"]})
        store.writes.clear()

        await ensurer.ensure_kind("LegacySecret", fresh({"t": b"y"}), None, "ns")

        assert "finalizers" not in store.writes[0].detail["patch"]
        obj = await store.get("Secret", "ns", "token")
        assert obj.data == {"t": b"y"}
        assert obj.finalizers == ["external/protect"]

    async def test_field_we_stopped_setting_is_removed(self, ensurer, store):
        await ensurer.ensure_kind(
            "LegacySecret",
            [legacy_secret_creator("token", {"t": b"x"}, labels={"old": "1"})],
            None,
            "ns",
        )

        await ensurer.ensure_kind(
            "LegacySecret", [legacy_secret_creator("token", {"t": b"x"})], None, "ns"
        )

        assert (await store.get("Secret", "ns", "token")).labels == {}

    async def test_ordered_creation_waits_for_cache(self):
        store = InMemoryResourceStore(name="seed-a", cache_lag=0.01)
        ensurer = ResourceEnsurer(store, cache_poll_interval=0.002)
        visible_before = {}

        def tracking(name):
            def create(data, existing):
                visible_before[name] = sorted(k[2] for k in store._cache)
                return ManagedResource(kind="Secret", name=name, data={"k": b"v"})

            return NamedCreator(name, create)

        result = await ensurer.ensure_kind(
            "LegacySecret", [tracking("c1"), tracking("c2"), tracking("c3")],
            None, "ns",
        )

        assert result == EnsureResult(created=3)
        assert visible_before == {"c1": [], "c2": ["c1"], "c3": ["c1", "c2"]}

    async def test_cache_sync_timeout(self):
        store = InMemoryResourceStore(name="seed-a", cache_lag=5.0)
        ensurer = ResourceEnsurer(
            store, cache_poll_interval=0.005, cache_sync_timeout=0.05
        )

        with pytest.raises(CacheSyncTimeoutError) as exc_info:
            await ensurer.ensure_kind(
                "LegacySecret",
                [legacy_secret_creator("c1", {}), legacy_secret_creator("c2", {})],
                None,
                "ns",
            )

        assert exc_info.value.name == "c1"
        assert isinstance(exc_info.value, EnsureError)
        assert "appear in the cache" in str(exc_info.value)
        assert writes_of(store) == [("create", "Secret", "ns/c1")]


@pytest.mark.asyncio
class TestFailures:
    """Tests for fail-fast error handling."""

    async def test_first_failure_stops_the_pass(self, failing_store):
        failing_store.fail("create", RuntimeError("boom"))

        with pytest.raises(EnsureError) as exc_info:
            await ResourceEnsurer(failing_store).ensure_kind(
                "ConfigMap",
                [config_map_creator("a", {}), config_map_creator("b", {})],
                None,
                "ns",
            )

        assert str(exc_info.value) == "failed to ensure ConfigMap ns/a: boom"
        assert isinstance(exc_info.value.cause, RuntimeError)
        assert failing_store.writes == []

    async def test_creator_error_is_wrapped(self, store):
        def broken(data, existing):
            raise KeyError("missing")

        with pytest.raises(EnsureError, match="Service ns/svc"):
            await ResourceEnsurer(store).ensure_kind(
                "Service", [NamedCreator("svc", broken)], None, "ns"
            )

    async def test_name_mismatch(self, store):
        def wrong_name(data, existing):
            return ManagedResource(kind="Service", name="other")

        with pytest.raises(EnsureError, match="creator returned an object named 'other'"):
            await ResourceEnsurer(store).ensure_kind(
                "Service", [NamedCreator("svc", wrong_name)], None, "ns"
            )

        assert store.writes == []


@pytest.mark.asyncio
class TestMetrics:
    async def test_writes_are_counted_per_cluster(self, store, metrics):
        ensurer = ResourceEnsurer(store, metrics=metrics)
        creators = [config_map_creator("cfg", {"a": "1"})]

        await ensurer.ensure_kind("ConfigMap", creators, None, "ns", owner=OWNER)
        await ensurer.ensure_kind("ConfigMap", creators, None, "ns", owner=OWNER)
        await ensurer.ensure_kind(
            "ConfigMap", [config_map_creator("cfg", {"a": "2"})], None, "ns", owner=OWNER
        )

        assert metrics.sample(
            "fleetsync_seed_resource_updates_total",
            cluster="abc123",
            kind="ConfigMap",
            name="cfg",
        ) == 2.0

    async def test_store_name_without_owner(self, store, metrics):
        await ResourceEnsurer(store, metrics=metrics).ensure_kind(
            "ConfigMap", [config_map_creator("cfg", {})], None, "ns"
        )

        assert metrics.sample(
            "fleetsync_seed_resource_updates_total",
            cluster="seed-a",
            kind="ConfigMap",
            name="cfg",
        ) == 1.0

    async def test_for_store_keeps_settings(self, store, metrics):
        ensurer = ResourceEnsurer(store, metrics=metrics, cache_sync_timeout=3.0)
        other = InMemoryResourceStore(name="seed-b")

        bound = ensurer.for_store(other)

        assert bound.store is other
        assert bound.metrics is metrics
        assert bound.cache_sync_timeout == 3.0
