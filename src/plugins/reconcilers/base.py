"""
Reconciler Base - Abstract interface for reconcilers driven by a Controller.

A reconciler converges one object, identified by its queue key, towards its
desired state. It is called repeatedly and must be idempotent: a pass that
finds nothing to change issues no writes. Errors are raised to the
controller, which requeues the key with backoff.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    """Result from a reconciler's reconcile() call."""

    requeue_after: Optional[float] = None

    @property
    def requeue(self) -> bool:
        return self.requeue_after is not None


class Reconciler(ABC):
    """Abstract base class for reconcilers."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique identifier for this reconciler, used as the controller name."""
        pass

    @abstractmethod
    async def reconcile(self, key: str) -> ReconcileResult:
        """
        Reconcile the object identified by ``key``.

        Args:
            key: ``namespace/name`` or ``name`` for cluster-scoped objects

        Returns:
            ReconcileResult; ``requeue_after`` asks for another pass

        Raises:
            Exception: Any failure; the controller requeues with backoff
        """
        pass
