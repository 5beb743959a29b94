"""Unit tests for main.py - Application wiring."""

import pytest
from unittest.mock import AsyncMock, patch

from config import Config
from controller import Controller
from events import EventType, WatchEvent
from main import Application
from plugins.reconcilers.projects import ProjectSynchronizer
from resources import ManagedResource
from seeds import SEED_KIND, SeedRegistry, SeedRegistryProvider
from store import InMemoryResourceStore


@pytest.fixture
def app():
    with patch("main.get_config", return_value=Config.default()):
        return Application()


@pytest.fixture
def master():
    return InMemoryResourceStore(name="master")


def _seed_event(name):
    return WatchEvent(EventType.ADDED, ManagedResource(kind=SEED_KIND, name=name))


@pytest.mark.asyncio
class TestApplication:
    async def test_shared_seed_uses_control_plane(self, app, master):
        app.master = master
        seed = ManagedResource(kind=SEED_KIND, name="local", data={"shared": True})

        assert await app._seed_store(seed) is master

    async def test_remote_seed_connects(self, app, master):
        app.master = master
        seed = ManagedResource(kind=SEED_KIND, name="seed-a", data={"host": "db"})
        remote = InMemoryResourceStore(name="seed-a")

        with patch("main.connect_seed_store", new=AsyncMock(return_value=remote)):
            assert await app._seed_store(seed) is remote

    async def test_refresh_swaps_synchronizer(self, app, master, recorder):
        seed_store = InMemoryResourceStore(name="seed-a")

        async def factory(seed):
            return seed_store

        app.seed_provider = SeedRegistryProvider(master, factory)
        original = ProjectSynchronizer(master, SeedRegistry(), recorder)
        app.project_controller = Controller(original.name, original)
        await master.create(ManagedResource(kind=SEED_KIND, name="seed-a"))

        await app._refresh_seeds(_seed_event("seed-a"))

        current = app.project_controller.reconciler
        assert current is not original
        assert current.seeds.names() == ["seed-a"]
        assert original.seeds.names() == []

    async def test_refresh_failure_keeps_snapshot(self, app, master, recorder):
        async def factory(seed):
            raise ConnectionError("unreachable")

        app.seed_provider = SeedRegistryProvider(master, factory)
        original = ProjectSynchronizer(master, SeedRegistry(), recorder)
        app.project_controller = Controller(original.name, original)
        await master.create(ManagedResource(kind=SEED_KIND, name="seed-a"))

        await app._refresh_seeds(_seed_event("seed-a"))

        assert app.project_controller.reconciler is original

    async def test_enqueue_existing(self, app, master, recorder):
        await master.create(ManagedResource(kind="Cluster", name="abc123"))
        await master.create(ManagedResource(kind="Project", name="p1"))
        app.master = master
        synchronizer = ProjectSynchronizer(master, SeedRegistry(), recorder)
        app.project_controller = Controller(synchronizer.name, synchronizer)
        app.cluster_controller = Controller("cluster-controller", synchronizer)

        await app.enqueue_existing()

        assert len(app.cluster_controller.queue) == 1
        assert len(app.project_controller.queue) == 1

    async def test_stop_when_not_running(self, app):
        await app.stop()
        assert not app.running
