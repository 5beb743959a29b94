"""
Metrics - Prometheus counters and gauges exported by the operator.

Each Metrics instance owns its own CollectorRegistry so that several
instances (one per test, for example) never clash on metric names.
"""

import logging
from typing import Optional

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    generate_latest,
)

logger = logging.getLogger(__name__)


class Metrics:
    """Operator metrics, exposed in the Prometheus text format."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()

        self.seed_resource_updates = Counter(
            "fleetsync_seed_resource_updates",
            "Number of create or update operations issued against a cluster's objects",
            ["cluster", "kind", "name"],
            registry=self.registry,
        )
        self.reconciles = Counter(
            "fleetsync_reconcile",
            "Number of reconcile passes by controller and result",
            ["controller", "result"],
            registry=self.registry,
        )
        self.workqueue_depth = Gauge(
            "fleetsync_workqueue_depth",
            "Number of keys waiting in a controller's work queue",
            ["controller"],
            registry=self.registry,
        )

    def record_resource_update(self, cluster: str, kind: str, name: str) -> None:
        self.seed_resource_updates.labels(cluster=cluster, kind=kind, name=name).inc()

    def record_reconcile(self, controller: str, result: str) -> None:
        self.reconciles.labels(controller=controller, result=result).inc()

    def set_queue_depth(self, controller: str, depth: int) -> None:
        self.workqueue_depth.labels(controller=controller).set(depth)

    def sample(self, metric: str, /, **labels: str) -> float:
        """Read the current value of a sample (0.0 when never recorded)."""
        value = self.registry.get_sample_value(metric, labels)
        return value if value is not None else 0.0

    def render(self) -> bytes:
        """Render all metrics in the Prometheus exposition format."""
        return generate_latest(self.registry)

    content_type = CONTENT_TYPE_LATEST
