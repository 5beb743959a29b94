"""
Creator Registry - Discovery and registration of creator plugins.

This module provides the central registry of creators, keyed by object kind.
Creators ship in separate packages and are discovered via the
'fleetsync.creators' entry point group; each entry point is a callable that
receives the registry and registers its creators.
"""

from importlib.metadata import entry_points
from typing import Dict, List, Optional

from plugins.base import (
    Creator,
    CreatorCondition,
    CreatorSpec,
    NamedCreator,
    logger,
)
from template_data import TemplateData

ENTRY_POINT_GROUP = "fleetsync.creators"


class CreatorRegistry:
    """
    Central registry for creator plugins.

    Keeps creators per kind in registration order. Registering the same
    (kind, name) twice replaces the earlier creator in place.
    """

    def __init__(self):
        self._creators: Dict[str, List[CreatorSpec]] = {}

    # Registration methods

    def register(
        self,
        kind: str,
        name: str,
        creator: Creator,
        condition: Optional[CreatorCondition] = None,
    ) -> None:
        """
        Register a creator for a kind.

        Args:
            kind: Kind key from the ensurer's kind table (e.g. "Deployment")
            name: Name of the object the creator builds
            creator: The creator callable
            condition: Optional predicate on the template data; the creator
                is skipped when it returns False
        """
        spec = CreatorSpec(kind=kind, name=name, creator=creator, condition=condition)
        specs = self._creators.setdefault(kind, [])

        for index, existing in enumerate(specs):
            if existing.name == name:
                logger.warning(f"Overwriting existing creator: {kind}/{name}")
                specs[index] = spec
                return

        specs.append(spec)
        logger.info(f"Registered creator: {kind}/{name}")

    # Lookup methods

    def creators_for(
        self, kind: str, data: Optional[TemplateData] = None
    ) -> List[NamedCreator]:
        """
        Get the creators for a kind, in registration order.

        Args:
            kind: The kind key
            data: When given, creators whose condition rejects it are left out

        Returns:
            List of NamedCreator
        """
        return [
            spec.named()
            for spec in self._creators.get(kind, [])
            if data is None or spec.applies_to(data)
        ]

    def kinds(self) -> List[str]:
        """List all kinds with at least one registered creator."""
        return [kind for kind, specs in self._creators.items() if specs]

    def has_creator(self, kind: str, name: str) -> bool:
        return any(spec.name == name for spec in self._creators.get(kind, []))

    def __len__(self) -> int:
        return sum(len(specs) for specs in self._creators.values())


# Global registry instance
_registry: Optional[CreatorRegistry] = None


def get_registry() -> CreatorRegistry:
    """Get the global creator registry singleton."""
    global _registry
    if _registry is None:
        _registry = CreatorRegistry()
    return _registry


def reset_registry() -> None:
    """Reset the global registry (mainly for testing)."""
    global _registry
    _registry = None


def discover_creators(registry: Optional[CreatorRegistry] = None) -> int:
    """
    Discover creator plugins via entry points.

    A plugin that fails to load is logged and skipped, so one broken package
    does not keep the operator from starting.

    Returns:
        Number of entry points loaded successfully.
    """
    if registry is None:
        registry = get_registry()
    loaded = 0

    for ep in entry_points(group=ENTRY_POINT_GROUP):
        try:
            register = ep.load()
            register(registry)
            loaded += 1
        except Exception as e:
            logger.warning(f"Could not load creator plugin {ep.name}: {e}")

    return loaded
