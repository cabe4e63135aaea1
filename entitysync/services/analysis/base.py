from __future__ import annotations

from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from entitysync.core.errors import InvalidAlertTargetError
from entitysync.domain.models import Entity, EntityRelationship
from entitysync.domain.types import (
    AlertCandidate,
    AnalyzerResult,
    SyncScope,
    TagAssignment,
    state_priority,
)
from entitysync.persistence.repos import entities as entities_repo
from entitysync.persistence.repos import relationships as relationships_repo


def build_fingerprint(
    alert_type: str,
    *,
    entity_id: str | None = None,
    site_id: str | None = None,
    connection_id: str | None = None,
    discriminator: str | None = None,
) -> str:
    # Deterministic identity for deduplication: target plus alert type.
    targets = [value for value in (entity_id, site_id, connection_id) if value]
    if len(targets) != 1:
        raise InvalidAlertTargetError(
            f"Alert {alert_type} must target exactly one of entity, site, or connection"
        )
    if entity_id:
        fingerprint = f"{alert_type}:{entity_id}"
    elif site_id:
        fingerprint = f"{alert_type}:site:{site_id}"
    else:
        fingerprint = f"{alert_type}:connection:{connection_id}"
    if discriminator:
        fingerprint = f"{fingerprint}:{discriminator}"
    return fingerprint


@dataclass
class AnalysisContext:
    """Read-only view of one scope's entities and edges for analyzers.

    Lookups are served from an id index and parent/child adjacency lists built
    once per pass; traversal is one hop, so no cycle handling is needed.
    """

    scope: SyncScope
    entities: list[Entity]
    relationships: list[EntityRelationship]
    sync_id: str | None = None
    _by_id: dict[str, Entity] = field(init=False, repr=False)
    _by_type: dict[str, list[Entity]] = field(init=False, repr=False)
    _edges_by_entity: dict[str, list[EntityRelationship]] = field(init=False, repr=False)
    _children: dict[str, list[EntityRelationship]] = field(init=False, repr=False)
    _parents: dict[str, list[EntityRelationship]] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self._by_id = {entity.id: entity for entity in self.entities}
        self._by_type = defaultdict(list)
        for entity in self.entities:
            self._by_type[entity.entity_type].append(entity)
        self._edges_by_entity = defaultdict(list)
        self._children = defaultdict(list)
        self._parents = defaultdict(list)
        for edge in self.relationships:
            self._children[edge.parent_entity_id].append(edge)
            self._parents[edge.child_entity_id].append(edge)
            self._edges_by_entity[edge.parent_entity_id].append(edge)
            if edge.child_entity_id != edge.parent_entity_id:
                self._edges_by_entity[edge.child_entity_id].append(edge)

    @classmethod
    async def load(
        cls, session: AsyncSession, scope: SyncScope, *, sync_id: str | None = None
    ) -> AnalysisContext:
        # Analysis always covers the whole (tenant, integration, connection) scope.
        base = scope.for_type(None).without_site()
        entities = await entities_repo.list_scope_entities(session, base)
        relationships = await relationships_repo.list_scope_relationships(
            session, base, include_site=False
        )
        return cls(scope=base, entities=entities, relationships=relationships, sync_id=sync_id)

    def get_entities(self, entity_type: str) -> list[Entity]:
        return list(self._by_type.get(entity_type, []))

    def get_entity(self, entity_id: str) -> Entity | None:
        return self._by_id.get(entity_id)

    def get_relationships(
        self, entity_id: str, relationship_type: str | None = None
    ) -> list[EntityRelationship]:
        edges = self._edges_by_entity.get(entity_id, [])
        if relationship_type is None:
            return list(edges)
        return [edge for edge in edges if edge.relationship_type == relationship_type]

    def get_child_entities(
        self, entity_id: str, relationship_type: str | None = None
    ) -> list[Entity]:
        children = []
        for edge in self._children.get(entity_id, []):
            if relationship_type is not None and edge.relationship_type != relationship_type:
                continue
            child = self._by_id.get(edge.child_entity_id)
            if child is not None:
                children.append(child)
        return children

    def get_parent_entity(
        self, entity_id: str, relationship_type: str | None = None
    ) -> Entity | None:
        for edge in self._parents.get(entity_id, []):
            if relationship_type is not None and edge.relationship_type != relationship_type:
                continue
            parent = self._by_id.get(edge.parent_entity_id)
            if parent is not None:
                return parent
        return None


class BaseAnalyzer(ABC):
    """Pluggable rule module producing alerts, tags and states for one integration."""

    name: str
    integration_id: str
    # Tag source owned by this analyzer; its tags are replaced wholesale each pass.
    tag_source: str
    # Alert types this analyzer may emit. Empty means undeclared.
    alert_types: tuple[str, ...] = ()

    @abstractmethod
    async def analyze(self, context: AnalysisContext) -> AnalyzerResult:
        raise NotImplementedError

    def create_alert(
        self,
        result: AnalyzerResult,
        *,
        alert_type: str,
        severity: str,
        message: str,
        entity: Entity | None = None,
        site_id: str | None = None,
        connection_id: str | None = None,
        metadata: dict[str, Any] | None = None,
        discriminator: str | None = None,
    ) -> AlertCandidate:
        fingerprint = build_fingerprint(
            alert_type,
            entity_id=entity.id if entity is not None else None,
            site_id=site_id,
            connection_id=connection_id,
            discriminator=discriminator,
        )
        candidate = AlertCandidate(
            alert_type=alert_type,
            severity=severity,
            message=message,
            fingerprint=fingerprint,
            entity_id=entity.id if entity is not None else None,
            # Entity alerts also carry the entity's scope columns.
            site_id=entity.site_id if entity is not None else site_id,
            connection_id=entity.connection_id if entity is not None else connection_id,
            metadata=metadata,
        )
        result.alerts.append(candidate)
        return candidate

    def add_tags(
        self, result: AnalyzerResult, entity_id: str, *tags: str, category: str | None = None
    ) -> None:
        assignments = result.entity_tags.setdefault(entity_id, [])
        for tag in tags:
            assignments.append(TagAssignment(tag=tag, source=self.tag_source, category=category))

    def set_state(self, result: AnalyzerResult, entity_id: str, state: str) -> None:
        # Within one analyzer the highest state wins as well.
        current = result.entity_states.get(entity_id)
        if current is None or state_priority(state) > state_priority(current):
            result.entity_states[entity_id] = state
