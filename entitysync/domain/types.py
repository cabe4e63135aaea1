from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


# Entity health states ordered by severity; merges keep the highest.
STATE_PRIORITY: dict[str, int] = {
    "normal": 0,
    "low": 1,
    "warn": 2,
    "critical": 4,
}

ALERT_SEVERITIES = ("low", "medium", "high", "critical")

# Work unit statuses that still represent pending or in-flight work.
NON_TERMINAL_STATUSES = ("pending", "queued", "running")


def state_priority(state: str) -> int:
    return STATE_PRIORITY[state]


@dataclass(frozen=True)
class SyncScope:
    # Partition a work unit, its entities, and its completion counters belong to.
    tenant_id: str
    integration_id: str
    entity_type: str | None = None
    site_id: str | None = None
    connection_id: str | None = None

    def for_type(self, entity_type: str | None) -> SyncScope:
        return SyncScope(
            tenant_id=self.tenant_id,
            integration_id=self.integration_id,
            entity_type=entity_type,
            site_id=self.site_id,
            connection_id=self.connection_id,
        )

    def without_site(self) -> SyncScope:
        return SyncScope(
            tenant_id=self.tenant_id,
            integration_id=self.integration_id,
            entity_type=self.entity_type,
            site_id=None,
            connection_id=self.connection_id,
        )


@dataclass(frozen=True)
class RawRecord:
    # Adapter output: one source object keyed by its source-stable id.
    external_id: str
    payload: dict[str, Any]
    display_name: str | None = None
    site_id: str | None = None


@dataclass(frozen=True)
class FetchPage:
    records: list[RawRecord]
    next_cursor: str | None = None


@dataclass(frozen=True)
class DesiredEdge:
    parent_entity_id: str
    child_entity_id: str
    relationship_type: str
    metadata: dict[str, Any] | None = None
    site_id: str | None = None

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.parent_entity_id, self.child_entity_id, self.relationship_type)


@dataclass
class AlertCandidate:
    alert_type: str
    severity: str
    message: str
    fingerprint: str
    entity_id: str | None = None
    site_id: str | None = None
    connection_id: str | None = None
    metadata: dict[str, Any] | None = None


@dataclass(frozen=True)
class TagAssignment:
    tag: str
    source: str
    category: str | None = None


@dataclass
class AnalyzerResult:
    alerts: list[AlertCandidate] = field(default_factory=list)
    entity_tags: dict[str, list[TagAssignment]] = field(default_factory=dict)
    entity_states: dict[str, str] = field(default_factory=dict)


@dataclass
class ReconcileCounts:
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    deleted: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "created": self.created,
            "updated": self.updated,
            "unchanged": self.unchanged,
            "deleted": self.deleted,
        }


@dataclass(frozen=True)
class WorkUnit:
    # Detached snapshot of a sync job row handed to adapters and pipeline stages.
    id: str
    tenant_id: str
    integration_id: str
    entity_type: str
    sync_id: str
    priority: int
    trigger: str = "scheduled"
    site_id: str | None = None
    connection_id: str | None = None
    attempts: int = 0
    config: dict[str, Any] | None = None

    @property
    def scope(self) -> SyncScope:
        return SyncScope(
            tenant_id=self.tenant_id,
            integration_id=self.integration_id,
            entity_type=self.entity_type,
            site_id=self.site_id,
            connection_id=self.connection_id,
        )

    @classmethod
    def from_row(cls, row: Any, *, config: dict[str, Any] | None = None) -> WorkUnit:
        return cls(
            id=row.id,
            tenant_id=row.tenant_id,
            integration_id=row.integration_id,
            entity_type=row.entity_type,
            sync_id=row.sync_id,
            priority=row.priority,
            trigger=row.trigger,
            site_id=row.site_id,
            connection_id=row.connection_id,
            attempts=row.attempts,
            config=config,
        )
