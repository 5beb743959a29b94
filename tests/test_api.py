"""Unit tests for api.py - Admin HTTP API."""

import pytest
from fastapi.testclient import TestClient

from api import create_app
from controller import Controller, ControllerConfig
from plugins.reconcilers.base import Reconciler, ReconcileResult
from resources import ManagedResource
from seeds import SeedRegistry
from store import InMemoryResourceStore


class NoopReconciler(Reconciler):
    def __init__(self, name):
        self._name = name

    @property
    def name(self):
        return self._name

    async def reconcile(self, key):
        return ReconcileResult()


@pytest.fixture
def controllers():
    return {
        name: Controller(
            name,
            NoopReconciler(name),
            config=ControllerConfig(max_concurrent_reconciles=2),
        )
        for name in ("project-sync-controller", "cluster-controller")
    }


@pytest.fixture
def client(controllers, recorder, metrics):
    seeds = SeedRegistry(
        {"seed-a": InMemoryResourceStore(), "seed-b": InMemoryResourceStore()}
    )
    app = create_app(controllers, lambda: seeds, recorder, metrics)
    return TestClient(app)


class TestHealthAndMetrics:
    def test_health_check(self, client):
        response = client.get("/")
        assert response.status_code == 200
        assert response.json() == {"status": "ok", "service": "fleetsync-operator"}

    def test_metrics(self, client, metrics):
        metrics.record_reconcile("cluster-controller", "success")

        response = client.get("/metrics")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")
        assert "fleetsync_reconcile_total" in response.text


class TestSeeds:
    def test_lists_current_snapshot(self, client):
        response = client.get("/api/v1/seeds")
        assert response.json() == {"seeds": ["seed-a", "seed-b"]}


class TestEvents:
    def test_lists_and_filters(self, client, recorder):
        recorder.warning(
            ManagedResource(kind="Project", name="p1"), "ReconcilingError", "boom"
        )
        recorder.normal(ManagedResource(kind="Cluster", name="c1"), "Synced", "ok")

        all_events = client.get("/api/v1/events").json()
        projects = client.get("/api/v1/events", params={"kind": "Project"}).json()

        assert len(all_events) == 2
        assert len(projects) == 1
        assert projects[0]["reason"] == "ReconcilingError"
        assert projects[0]["involved_object"] == {
            "kind": "Project",
            "name": "p1",
            "namespace": "",
        }


class TestTriggerReconcile:
    def test_not_running_is_unavailable(self, client):
        response = client.post("/api/v1/projects/p1/reconcile")
        assert response.status_code == 503

    def test_queues_project(self, client, controllers):
        controllers["project-sync-controller"].running = True

        response = client.post("/api/v1/projects/p1/reconcile")

        assert response.status_code == 202
        assert response.json() == {
            "controller": "project-sync-controller",
            "key": "p1",
            "status": "queued",
        }
        assert len(controllers["project-sync-controller"].queue) == 1

    def test_queues_cluster(self, client, controllers):
        controllers["cluster-controller"].running = True

        response = client.post("/api/v1/clusters/abc123/reconcile")

        assert response.status_code == 202
        assert len(controllers["cluster-controller"].queue) == 1


class TestControllers:
    def test_lists_controllers(self, client, controllers):
        controllers["cluster-controller"].enqueue("abc123")

        response = client.get("/api/v1/controllers")

        assert response.json() == [
            {
                "name": "cluster-controller",
                "running": False,
                "workers": 2,
                "queue_depth": 1,
            },
            {
                "name": "project-sync-controller",
                "running": False,
                "workers": 2,
                "queue_depth": 0,
            },
        ]
