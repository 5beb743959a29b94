"""
Main entry point for the fleetsync operator.

Wires the control-plane store, the seed snapshot, the creator plugins, the
cluster and project controllers, their watch dispatchers and the admin API,
and runs them until SIGINT or SIGTERM.
"""

import asyncio
import logging
import signal
from typing import List, Optional

from api import APIServer, create_app
from config import get_config
from controller import Controller, ControllerConfig
from db import PostgresResourceStore, connect_seed_store
from dispatcher import EnqueueAllProjects, EventWatchDispatcher, enqueue_request_for_object
from ensurer import ResourceEnsurer
from events import EventBus, EventRecorder, WatchEvent
from metrics import Metrics
from plugins.reconcilers.cluster import ClusterReconciler
from plugins.reconcilers.projects import PROJECT_KIND, ProjectSynchronizer
from plugins.registry import discover_creators, get_registry
from resources import ManagedResource
from seeds import SEED_KIND, SeedRegistryProvider
from store import ResourceStore
from template_data import CLUSTER_KIND, TemplateDataProvider

logger = logging.getLogger(__name__)


class Application:
    """Main application that orchestrates the controllers and the API."""

    def __init__(self):
        self.config = get_config()
        self.master: Optional[PostgresResourceStore] = None
        self.event_bus: Optional[EventBus] = None
        self.recorder: Optional[EventRecorder] = None
        self.metrics: Optional[Metrics] = None
        self.seed_provider: Optional[SeedRegistryProvider] = None
        self.cluster_controller: Optional[Controller] = None
        self.project_controller: Optional[Controller] = None
        self.dispatchers: List[EventWatchDispatcher] = []
        self.api_server: Optional[APIServer] = None
        self.running = False

    async def _seed_store(self, seed: ManagedResource) -> ResourceStore:
        # Shared control-plane/seed setups point a Seed back at the control plane
        if seed.data.get("shared"):
            return self.master
        return await connect_seed_store(seed)

    async def initialize(self):
        """Initialize all components."""
        logger.info("Initializing fleetsync operator")

        db_config = self.config.database
        self.master = PostgresResourceStore(
            name="master",
            host=db_config.host,
            port=db_config.port,
            database=db_config.database,
            user=db_config.user,
            password=db_config.password,
            min_pool_size=db_config.min_pool_size,
            max_pool_size=db_config.max_pool_size,
        )
        await self.master.connect()
        await self.master.initialize_schema()
        logger.info("Database initialized")

        self.event_bus = EventBus()
        self.recorder = EventRecorder("fleetsync-operator", self.event_bus)
        self.metrics = Metrics()

        registry = get_registry()
        loaded = discover_creators(registry)
        logger.info(f"Loaded {loaded} creator plugin(s), {len(registry)} creator(s)")

        ctrl_config = self.config.controller
        ensurer = ResourceEnsurer(
            self.master,
            metrics=self.metrics,
            cache_poll_interval=ctrl_config.cache_poll_interval,
            cache_sync_timeout=ctrl_config.cache_sync_timeout,
        )
        controller_config = ControllerConfig(
            max_concurrent_reconciles=ctrl_config.max_concurrent_reconciles,
            reconcile_timeout=ctrl_config.reconcile_timeout,
            backoff_base_delay=ctrl_config.backoff_base_delay,
            backoff_max_delay=ctrl_config.backoff_max_delay,
            backoff_jitter_factor=ctrl_config.backoff_jitter_factor,
        )

        self.seed_provider = SeedRegistryProvider(self.master, self._seed_store)
        seeds = await self.seed_provider.refresh()
        logger.info(f"Seeds: {', '.join(seeds.names()) or 'none'}")

        cluster_reconciler = ClusterReconciler(
            self.master,
            registry,
            TemplateDataProvider.from_config(self.config.cluster),
            self.recorder.for_component("cluster-controller"),
            ensurer=ensurer,
            recreate_delay=ctrl_config.recreate_requeue_delay,
        )
        self.cluster_controller = Controller(
            cluster_reconciler.name,
            cluster_reconciler,
            controller_config,
            metrics=self.metrics,
        )

        project_reconciler = ProjectSynchronizer(
            self.master,
            seeds,
            self.recorder.for_component("project-sync-controller"),
            ensurer=ensurer,
        )
        self.project_controller = Controller(
            project_reconciler.name,
            project_reconciler,
            controller_config,
            metrics=self.metrics,
        )

        self.dispatchers = [
            EventWatchDispatcher(
                self.master.watch(CLUSTER_KIND),
                enqueue_request_for_object,
                self.cluster_controller.queue,
                name="clusters",
            ),
            EventWatchDispatcher(
                self.master.watch(PROJECT_KIND),
                enqueue_request_for_object,
                self.project_controller.queue,
                name="projects",
            ),
            EventWatchDispatcher(
                self.master.watch(SEED_KIND),
                EnqueueAllProjects(self.master),
                self.project_controller.queue,
                name="seeds",
                before_dispatch=self._refresh_seeds,
            ),
        ]

        controllers = {
            self.cluster_controller.name: self.cluster_controller,
            self.project_controller.name: self.project_controller,
        }
        app = create_app(
            controllers,
            lambda: self.seed_provider.current,
            self.recorder,
            self.metrics,
        )
        self.api_server = APIServer(app, self.config.api.host, self.config.api.port)

        logger.info("All components initialized")

    async def _refresh_seeds(self, event: WatchEvent) -> None:
        """Swap a new seed snapshot into the project controller."""
        try:
            seeds = await self.seed_provider.refresh()
        except Exception as e:
            logger.error(
                f"Failed to refresh seeds after {event.event_type.value} of "
                f"seed {event.object.name}, keeping the previous snapshot: {e}",
                exc_info=True,
            )
            return

        synchronizer = self.project_controller.reconciler.with_seeds(seeds)
        self.project_controller.set_reconciler(synchronizer)
        logger.info(f"Seed snapshot updated: {', '.join(seeds.names()) or 'none'}")

    async def enqueue_existing(self) -> None:
        """Queue every known Cluster and Project once at startup."""
        for cluster in await self.master.list(CLUSTER_KIND):
            self.cluster_controller.enqueue(cluster.key)
        for project in await self.master.list(PROJECT_KIND):
            self.project_controller.enqueue(project.key)

    async def start(self):
        """Start the application."""
        if not self.cluster_controller:
            await self.initialize()

        self.running = True
        logger.info("Starting fleetsync operator")

        await self.cluster_controller.start()
        await self.project_controller.start()
        await self.enqueue_existing()

        tasks = [asyncio.create_task(d.run()) for d in self.dispatchers]
        tasks.append(asyncio.create_task(self.api_server.start()))

        try:
            await asyncio.gather(*tasks)
        except asyncio.CancelledError:
            logger.info("Application tasks cancelled")

    async def stop(self):
        """Stop the application gracefully."""
        if not self.running:
            return
        logger.info("Stopping fleetsync operator")
        self.running = False

        if self.api_server:
            await self.api_server.stop()

        for dispatcher in self.dispatchers:
            dispatcher.stop()

        for controller in (self.cluster_controller, self.project_controller):
            if controller:
                await controller.stop()

        if self.seed_provider:
            await self.seed_provider.close()

        if self.master:
            await self.master.close()

        logger.info("fleetsync operator stopped")


async def main():
    """Main entry point."""
    config = get_config()
    logging.basicConfig(
        level=getattr(logging, config.api.log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    app = Application()

    # Set up signal handlers for graceful shutdown
    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("Received shutdown signal")
        asyncio.create_task(app.stop())

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await app.start()
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    finally:
        await app.stop()


def run():
    """Console script entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
