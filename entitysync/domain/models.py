from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# JSONB on Postgres, plain JSON elsewhere (SQLite test databases).
JSONType = JSON().with_variant(JSONB(), "postgresql")


def new_id() -> str:
    # Surrogate ids are generated client-side and never reused.
    return uuid4().hex


class Base(DeclarativeBase):
    pass


class TenantIntegration(Base):
    __tablename__ = "tenant_integrations"
    __table_args__ = (
        UniqueConstraint("tenant_id", "integration_id", name="uq_tenant_integrations"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    # Catalogue key, e.g. "dattormm" or "microsoft-365".
    integration_id: Mapped[str] = mapped_column(String)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    # Connector settings; credentials are resolved by the connector layer.
    config_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class IntegrationConnection(Base):
    __tablename__ = "integration_connections"
    __table_args__ = (
        Index("ix_integration_connections_scope", "tenant_id", "integration_id", "status"),
    )

    # One tenant integration may fan out into several source accounts.
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    tenant_id: Mapped[str] = mapped_column(String)
    integration_id: Mapped[str] = mapped_column(String)
    name: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String, default="active", nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class SiteMapping(Base):
    __tablename__ = "site_mappings"
    __table_args__ = (
        Index("ix_site_mappings_scope", "tenant_id", "integration_id"),
    )

    # Maps a source-side company/site external id onto a local site.
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    tenant_id: Mapped[str] = mapped_column(String)
    integration_id: Mapped[str] = mapped_column(String)
    connection_id: Mapped[str | None] = mapped_column(String, nullable=True)
    site_id: Mapped[str] = mapped_column(String)
    external_id: Mapped[str] = mapped_column(String)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class SyncJob(Base):
    __tablename__ = "sync_jobs"
    __table_args__ = (
        Index("ix_sync_jobs_due", "status", "scheduled_for", "priority"),
        Index(
            "ix_sync_jobs_scope",
            "tenant_id",
            "integration_id",
            "entity_type",
            "connection_id",
            "status",
        ),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    tenant_id: Mapped[str] = mapped_column(String)
    integration_id: Mapped[str] = mapped_column(String)
    entity_type: Mapped[str] = mapped_column(String)
    site_id: Mapped[str | None] = mapped_column(String, nullable=True)
    connection_id: Mapped[str | None] = mapped_column(String, nullable=True)
    # pending -> queued -> running -> completed | failed
    status: Mapped[str] = mapped_column(String, default="pending", nullable=False)
    priority: Mapped[int] = mapped_column(Integer, default=5, nullable=False)
    trigger: Mapped[str] = mapped_column(String, default="scheduled", nullable=False)
    scheduled_for: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # Groups every work unit of one logical cycle.
    sync_id: Mapped[str] = mapped_column(String, default=new_id, nullable=False)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    metrics_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class Entity(Base):
    __tablename__ = "entities"
    __table_args__ = (
        # NULL connection ids compare equal here, unlike a plain unique constraint.
        Index(
            "uq_entities_external",
            "tenant_id",
            "integration_id",
            "entity_type",
            text("coalesce(connection_id, '')"),
            "external_id",
            unique=True,
        ),
        Index("ix_entities_scope", "tenant_id", "integration_id", "entity_type", "site_id"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    tenant_id: Mapped[str] = mapped_column(String)
    integration_id: Mapped[str] = mapped_column(String)
    entity_type: Mapped[str] = mapped_column(String)
    # Source-system key; the stable identity of the entity.
    external_id: Mapped[str] = mapped_column(String)
    display_name: Mapped[str | None] = mapped_column(String, nullable=True)
    raw_data: Mapped[dict[str, Any]] = mapped_column(JSONType)
    data_hash: Mapped[str] = mapped_column(String)
    # normal | low | warn | critical
    state: Mapped[str] = mapped_column(String, default="normal", nullable=False)
    last_seen_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    sync_id: Mapped[str | None] = mapped_column(String, nullable=True)
    site_id: Mapped[str | None] = mapped_column(String, nullable=True)
    connection_id: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class EntityRelationship(Base):
    __tablename__ = "entity_relationships"
    __table_args__ = (
        UniqueConstraint(
            "parent_entity_id",
            "child_entity_id",
            "relationship_type",
            name="uq_entity_relationships_edge",
        ),
        Index("ix_entity_relationships_scope", "tenant_id", "integration_id", "site_id"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    tenant_id: Mapped[str] = mapped_column(String)
    integration_id: Mapped[str] = mapped_column(String)
    parent_entity_id: Mapped[str] = mapped_column(
        String, ForeignKey("entities.id", ondelete="CASCADE"), index=True
    )
    child_entity_id: Mapped[str] = mapped_column(
        String, ForeignKey("entities.id", ondelete="CASCADE"), index=True
    )
    relationship_type: Mapped[str] = mapped_column(String)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    site_id: Mapped[str | None] = mapped_column(String, nullable=True)
    connection_id: Mapped[str | None] = mapped_column(String, nullable=True)
    last_seen_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    sync_id: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class EntityAlert(Base):
    __tablename__ = "entity_alerts"
    __table_args__ = (
        UniqueConstraint("tenant_id", "integration_id", "fingerprint", name="uq_entity_alerts_fingerprint"),
        Index("ix_entity_alerts_scope", "tenant_id", "integration_id", "status"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    tenant_id: Mapped[str] = mapped_column(String)
    integration_id: Mapped[str] = mapped_column(String)
    # Exactly one of entity_id / site_id / connection_id is the alert target.
    entity_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    site_id: Mapped[str | None] = mapped_column(String, nullable=True)
    connection_id: Mapped[str | None] = mapped_column(String, nullable=True)
    alert_type: Mapped[str] = mapped_column(String)
    severity: Mapped[str] = mapped_column(String)
    message: Mapped[str] = mapped_column(Text)
    fingerprint: Mapped[str] = mapped_column(String)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    # active | resolved | suppressed
    status: Mapped[str] = mapped_column(String, default="active", nullable=False)
    last_seen_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    sync_id: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class EntityTag(Base):
    __tablename__ = "entity_tags"
    __table_args__ = (
        UniqueConstraint("entity_id", "tag", "source", name="uq_entity_tags_source"),
        Index("ix_entity_tags_source", "entity_id", "source"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    entity_id: Mapped[str] = mapped_column(String, ForeignKey("entities.id", ondelete="CASCADE"))
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    tag: Mapped[str] = mapped_column(String)
    category: Mapped[str | None] = mapped_column(String, nullable=True)
    # Analyzer that owns the tag; replaced wholesale on every pass.
    source: Mapped[str] = mapped_column(String)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
