"""
Plugin system for the fleetsync operator.

Creators are discovered as plugins and registered per object kind;
reconcilers consume them to converge each cluster's control plane.
"""

from plugins.base import Creator, CreatorCondition, CreatorSpec, NamedCreator
from plugins.reconcilers.base import Reconciler, ReconcileResult
from plugins.registry import CreatorRegistry, get_registry

__all__ = [
    "Creator",
    "CreatorCondition",
    "CreatorSpec",
    "NamedCreator",
    "Reconciler",
    "ReconcileResult",
    "CreatorRegistry",
    "get_registry",
]
