"""
Reconcilers package.

Reconcilers own the reconciliation logic for one object kind each: the
cluster reconciler deploys a cluster's control-plane objects, the project
synchronizer replicates Projects to every seed.
"""

from plugins.reconcilers.base import Reconciler, ReconcileResult

__all__ = ["Reconciler", "ReconcileResult"]
