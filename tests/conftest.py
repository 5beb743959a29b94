"""Pytest configuration and fixtures."""

import pytest
from unittest.mock import AsyncMock, MagicMock

from events import EventRecorder
from metrics import Metrics
from plugins.base import NamedCreator
from resources import ManagedResource
from store import InMemoryResourceStore
from template_data import Datacenter, TemplateDataProvider


class FailingStore(InMemoryResourceStore):
    """In-memory store that fails chosen verbs with a chosen error."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.failures = {}

    def fail(self, verb, error):
        self.failures[verb] = error

    def _maybe_fail(self, verb):
        error = self.failures.get(verb)
        if error is not None:
            raise error

    async def create(self, obj):
        self._maybe_fail("create")
        return await super().create(obj)

    async def update(self, obj):
        self._maybe_fail("update")
        return await super().update(obj)

    async def patch(self, kind, namespace, name, patch):
        self._maybe_fail("patch")
        return await super().patch(kind, namespace, name, patch)

    async def delete(self, kind, namespace, name, propagation="Background"):
        self._maybe_fail("delete")
        return await super().delete(kind, namespace, name, propagation)


def writes_of(store, verb=None):
    """(verb, kind, key) tuples of the writes issued against a store."""
    return [
        (w.verb, w.kind, w.key)
        for w in store.writes
        if verb is None or w.verb == verb
    ]


@pytest.fixture
def mock_pool():
    """Create a mock asyncpg pool."""
    pool = AsyncMock()
    pool.acquire = MagicMock()
    return pool


@pytest.fixture
def mock_connection():
    """Create a mock asyncpg connection."""
    conn = AsyncMock()
    return conn


@pytest.fixture
def store():
    """In-memory store with a synchronous cache."""
    return InMemoryResourceStore(name="seed-a")


@pytest.fixture
def failing_store():
    return FailingStore(name="seed-a")


@pytest.fixture
def metrics():
    return Metrics()


@pytest.fixture
def recorder():
    return EventRecorder("test")


@pytest.fixture
def datacenters():
    return {
        "europe-west3-c": Datacenter(
            name="europe-west3-c", country="DE", location="Frankfurt", seed="seed-a"
        )
    }


@pytest.fixture
def template_provider(datacenters):
    return TemplateDataProvider(datacenters, seed_datacenter="seed-a")


@pytest.fixture
def sample_cluster():
    """Sample Cluster object for testing."""
    return ManagedResource(
        kind="Cluster",
        name="abc123",
        labels={"project": "p1"},
        data={"datacenter": "europe-west3-c", "machine_networks": []},
    )


@pytest.fixture
def sample_project():
    """Sample Project object for testing."""
    return ManagedResource(
        kind="Project",
        name="my-project",
        labels={"team": "platform"},
        data={"name": "My Project", "owners": ["alice"]},
        status={"phase": "Active"},
    )


def config_map_creator(name, payload):
    """Creator building a ConfigMap with a fixed payload."""

    def create(data, existing):
        obj = existing or ManagedResource(kind="ConfigMap", name=name)
        obj.data = dict(payload)
        return obj

    return NamedCreator(name, create)


def deployment_creator(name, match_labels, replicas=1):
    """Creator building a Deployment with a selector and replica count."""

    def create(data, existing):
        obj = existing or ManagedResource(kind="Deployment", name=name)
        obj.labels = {"app": name}
        obj.data = {
            "replicas": replicas,
            "selector": {"matchLabels": dict(match_labels)},
        }
        return obj

    return NamedCreator(name, create)
