from __future__ import annotations

from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Any

from entitysync.domain.models import Entity
from entitysync.domain.types import DesiredEdge


def group_by_type(entities: list[Entity]) -> dict[str, list[Entity]]:
    grouped: dict[str, list[Entity]] = defaultdict(list)
    for entity in entities:
        grouped[entity.entity_type].append(entity)
    return grouped


def raw_value(entity: Entity, key: str) -> Any:
    return (entity.raw_data or {}).get(key)


class BaseLinker(ABC):
    """Computes the desired relationship set for one integration.

    Linkers only derive edges. Side effects such as creating child work units
    belong to fan-out policies reacting to the processed scope.
    """

    integration_id: str

    @abstractmethod
    def link(self, entities: list[Entity]) -> list[DesiredEdge]:
        raise NotImplementedError


class ParentChildLinker(BaseLinker):
    # Company "contains" endpoint, matched on a parent key read from each side.

    parent_type = "company"
    child_type = "endpoint"
    relationship_type = "contains"

    def parent_key(self, parent: Entity) -> str | None:
        return parent.external_id

    @abstractmethod
    def child_parent_key(self, child: Entity) -> str | None:
        raise NotImplementedError

    def link(self, entities: list[Entity]) -> list[DesiredEdge]:
        by_type = group_by_type(entities)
        parents: dict[str, str] = {}
        for parent in by_type.get(self.parent_type, []):
            key = self.parent_key(parent)
            if key:
                parents[str(key)] = parent.id
        edges: list[DesiredEdge] = []
        for child in by_type.get(self.child_type, []):
            key = self.child_parent_key(child)
            parent_id = parents.get(str(key)) if key else None
            if parent_id is None:
                continue
            edges.append(
                DesiredEdge(
                    parent_entity_id=parent_id,
                    child_entity_id=child.id,
                    relationship_type=self.relationship_type,
                    site_id=child.site_id,
                )
            )
        return edges
