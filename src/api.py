"""
Admin API - HTTP endpoints for inspecting and nudging the operator.

Serves health, Prometheus metrics, the current seed snapshot, recorded
events and the controllers' queues, and lets an operator trigger a
reconcile of a Project or Cluster by name.
"""

import logging
from typing import Callable, Dict, List, Optional

import uvicorn
from fastapi import FastAPI, HTTPException, Response
from pydantic import BaseModel, Field

from controller import Controller
from events import EventRecorder
from metrics import Metrics
from seeds import SeedRegistry

logger = logging.getLogger(__name__)

PROJECT_CONTROLLER = "project-sync-controller"
CLUSTER_CONTROLLER = "cluster-controller"


class SeedList(BaseModel):
    """Response model for the seed snapshot."""

    seeds: List[str]


class InvolvedObject(BaseModel):
    kind: str
    name: str
    namespace: str = ""


class EventResponse(BaseModel):
    """Response model for a recorded event."""

    type: str
    reason: str
    message: str
    involved_object: InvolvedObject
    source: str = ""
    timestamp: str


class ControllerInfo(BaseModel):
    """Response model for controller information."""

    name: str
    running: bool
    workers: int
    queue_depth: int = Field(..., description="Keys waiting in the work queue")


class ReconcileTriggered(BaseModel):
    controller: str
    key: str
    status: str = "queued"


def create_app(
    controllers: Dict[str, Controller],
    seeds: Callable[[], SeedRegistry],
    recorder: EventRecorder,
    metrics: Metrics,
) -> FastAPI:
    """
    Build the admin FastAPI application.

    Args:
        controllers: Controllers by name
        seeds: Returns the current seed snapshot
        recorder: Recorder whose history backs /api/v1/events
        metrics: Metrics rendered at /metrics
    """
    app = FastAPI(
        title="fleetsync operator",
        description="Admin API of the fleetsync reconciliation engine",
        version="1.0.0",
    )

    def trigger(controller_name: str, key: str) -> ReconcileTriggered:
        controller = controllers.get(controller_name)
        if controller is None or not controller.running:
            raise HTTPException(
                status_code=503, detail=f"Controller {controller_name} not running"
            )
        controller.enqueue(key)
        logger.info(f"Reconcile of {key} requested on {controller_name}")
        return ReconcileTriggered(controller=controller_name, key=key)

    @app.get("/")
    async def health_check():
        """Health check endpoint."""
        return {"status": "ok", "service": "fleetsync-operator"}

    @app.get("/metrics")
    async def get_metrics():
        return Response(content=metrics.render(), media_type=metrics.content_type)

    @app.get("/api/v1/seeds", response_model=SeedList)
    async def list_seeds():
        return SeedList(seeds=seeds().names())

    @app.get("/api/v1/events", response_model=List[EventResponse])
    async def list_events(kind: Optional[str] = None, name: Optional[str] = None):
        """Recorded events, oldest first, optionally filtered by object."""
        return [
            EventResponse(**event.to_dict())
            for event in recorder.events(kind=kind, name=name)
        ]

    @app.post(
        "/api/v1/projects/{name}/reconcile",
        response_model=ReconcileTriggered,
        status_code=202,
    )
    async def reconcile_project(name: str):
        return trigger(PROJECT_CONTROLLER, name)

    @app.post(
        "/api/v1/clusters/{name}/reconcile",
        response_model=ReconcileTriggered,
        status_code=202,
    )
    async def reconcile_cluster(name: str):
        return trigger(CLUSTER_CONTROLLER, name)

    @app.get("/api/v1/controllers", response_model=List[ControllerInfo])
    async def list_controllers():
        return [
            ControllerInfo(
                name=name,
                running=controller.running,
                workers=controller.config.max_concurrent_reconciles,
                queue_depth=len(controller.queue),
            )
            for name, controller in sorted(controllers.items())
        ]

    return app


class APIServer:
    """Runs the admin app under uvicorn."""

    def __init__(self, app: FastAPI, host: str = "0.0.0.0", port: int = 8000):
        self.app = app
        self.host = host
        self.port = port
        self.server: Optional[uvicorn.Server] = None

    async def start(self) -> None:
        config = uvicorn.Config(
            self.app,
            host=self.host,
            port=self.port,
            log_level="info",
        )
        self.server = uvicorn.Server(config)

        logger.info(f"Starting admin API on {self.host}:{self.port}")
        await self.server.serve()

    async def stop(self) -> None:
        logger.info("Stopping admin API")
        if self.server:
            self.server.should_exit = True
