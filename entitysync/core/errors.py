from __future__ import annotations


class EntitySyncError(Exception):
    """Base error for entitysync."""


class ConfigurationError(EntitySyncError):
    """Unknown integration, missing adapter, or missing credentials."""


class AdapterError(EntitySyncError):
    """Source adapter failed to fetch a page (HTTP failure, rate limit)."""


class ReconciliationError(EntitySyncError):
    """Reconciliation invariant violated."""


class DuplicateExternalIdError(ReconciliationError):
    """The same external id appeared twice in one reconciliation pass."""

    def __init__(self, entity_type: str, external_ids: list[str]) -> None:
        self.entity_type = entity_type
        self.external_ids = external_ids
        preview = ", ".join(external_ids[:5])
        super().__init__(f"Duplicate external ids for {entity_type}: {preview}")


class BatchWriteError(EntitySyncError):
    """A chunked write failed; the stage is aborted."""


class AnalyzerError(EntitySyncError):
    """An analyzer raised; nothing from the pass is applied."""


class WorkUnitNotFoundError(EntitySyncError):
    """Sync job row missing for a dispatched id."""


class InvalidAlertTargetError(EntitySyncError):
    """Alert candidate must target exactly one of entity, connection, or site."""


class AlertNotFoundError(EntitySyncError):
    """Alert id unknown for the operator action."""
