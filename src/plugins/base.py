"""
Plugin Base - Types shared by creator plugins.

A creator builds the desired state of one managed object from the cluster's
template data and the currently cached object (None when absent). Creators
must be deterministic and must not mutate the object they are given.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Optional

from resources import ManagedResource
from template_data import TemplateData

logger = logging.getLogger("plugins")

Creator = Callable[[TemplateData, Optional[ManagedResource]], ManagedResource]
CreatorCondition = Callable[[TemplateData], bool]


@dataclass(frozen=True)
class NamedCreator:
    """A creator bound to the name of the object it builds."""

    name: str
    creator: Creator


@dataclass(frozen=True)
class CreatorSpec:
    """A registered creator, with an optional condition gating it."""

    kind: str
    name: str
    creator: Creator
    condition: Optional[CreatorCondition] = None

    def applies_to(self, data: TemplateData) -> bool:
        return self.condition is None or bool(self.condition(data))

    def named(self) -> NamedCreator:
        return NamedCreator(self.name, self.creator)
