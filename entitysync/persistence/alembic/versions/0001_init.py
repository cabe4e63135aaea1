"""initial sync engine schema

Revision ID: 0001_init
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps(*, updated: bool = True) -> list[sa.Column]:
    columns = [sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now())]
    if updated:
        columns.append(sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()))
    return columns


def upgrade() -> None:
    op.create_table(
        "tenant_integrations",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("integration_id", sa.String(), nullable=False),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("config_json", postgresql.JSONB(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("tenant_id", "integration_id", name="uq_tenant_integrations"),
    )
    op.create_index("ix_tenant_integrations_tenant_id", "tenant_integrations", ["tenant_id"])

    op.create_table(
        "integration_connections",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("integration_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="active"),
        *_timestamps(),
    )
    op.create_index(
        "ix_integration_connections_scope",
        "integration_connections",
        ["tenant_id", "integration_id", "status"],
    )

    op.create_table(
        "site_mappings",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("integration_id", sa.String(), nullable=False),
        sa.Column("connection_id", sa.String(), nullable=True),
        sa.Column("site_id", sa.String(), nullable=False),
        sa.Column("external_id", sa.String(), nullable=False),
        *_timestamps(updated=False),
    )
    op.create_index("ix_site_mappings_scope", "site_mappings", ["tenant_id", "integration_id"])

    op.create_table(
        "sync_jobs",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("integration_id", sa.String(), nullable=False),
        sa.Column("entity_type", sa.String(), nullable=False),
        sa.Column("site_id", sa.String(), nullable=True),
        sa.Column("connection_id", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="5"),
        sa.Column("trigger", sa.String(), nullable=False, server_default="scheduled"),
        sa.Column("scheduled_for", sa.DateTime(timezone=True), nullable=True),
        sa.Column("sync_id", sa.String(), nullable=False),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("metrics_json", postgresql.JSONB(), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    # Scheduler poll and active-unit lookups.
    op.create_index("ix_sync_jobs_due", "sync_jobs", ["status", "scheduled_for", "priority"])
    op.create_index(
        "ix_sync_jobs_scope",
        "sync_jobs",
        ["tenant_id", "integration_id", "entity_type", "connection_id", "status"],
    )

    op.create_table(
        "entities",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("integration_id", sa.String(), nullable=False),
        sa.Column("entity_type", sa.String(), nullable=False),
        sa.Column("external_id", sa.String(), nullable=False),
        sa.Column("display_name", sa.String(), nullable=True),
        sa.Column("raw_data", postgresql.JSONB(), nullable=False),
        sa.Column("data_hash", sa.String(), nullable=False),
        sa.Column("state", sa.String(), nullable=False, server_default="normal"),
        sa.Column("last_seen_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("sync_id", sa.String(), nullable=True),
        sa.Column("site_id", sa.String(), nullable=True),
        sa.Column("connection_id", sa.String(), nullable=True),
        *_timestamps(),
    )
    # NULL connection ids must still collide, so the key indexes COALESCE(connection_id, '').
    op.create_index(
        "uq_entities_external",
        "entities",
        [
            "tenant_id",
            "integration_id",
            "entity_type",
            sa.text("coalesce(connection_id, '')"),
            "external_id",
        ],
        unique=True,
    )
    op.create_index(
        "ix_entities_scope", "entities", ["tenant_id", "integration_id", "entity_type", "site_id"]
    )

    op.create_table(
        "entity_relationships",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("integration_id", sa.String(), nullable=False),
        sa.Column(
            "parent_entity_id",
            sa.String(),
            sa.ForeignKey("entities.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "child_entity_id",
            sa.String(),
            sa.ForeignKey("entities.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("relationship_type", sa.String(), nullable=False),
        sa.Column("metadata_json", postgresql.JSONB(), nullable=True),
        sa.Column("site_id", sa.String(), nullable=True),
        sa.Column("connection_id", sa.String(), nullable=True),
        sa.Column("last_seen_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("sync_id", sa.String(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint(
            "parent_entity_id",
            "child_entity_id",
            "relationship_type",
            name="uq_entity_relationships_edge",
        ),
    )
    op.create_index(
        "ix_entity_relationships_parent_entity_id", "entity_relationships", ["parent_entity_id"]
    )
    op.create_index(
        "ix_entity_relationships_child_entity_id", "entity_relationships", ["child_entity_id"]
    )
    op.create_index(
        "ix_entity_relationships_scope", "entity_relationships", ["tenant_id", "integration_id", "site_id"]
    )

    op.create_table(
        "entity_alerts",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("integration_id", sa.String(), nullable=False),
        sa.Column("entity_id", sa.String(), nullable=True),
        sa.Column("site_id", sa.String(), nullable=True),
        sa.Column("connection_id", sa.String(), nullable=True),
        sa.Column("alert_type", sa.String(), nullable=False),
        sa.Column("severity", sa.String(), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("fingerprint", sa.String(), nullable=False),
        sa.Column("metadata_json", postgresql.JSONB(), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="active"),
        sa.Column("last_seen_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("sync_id", sa.String(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint(
            "tenant_id", "integration_id", "fingerprint", name="uq_entity_alerts_fingerprint"
        ),
    )
    op.create_index("ix_entity_alerts_entity_id", "entity_alerts", ["entity_id"])
    op.create_index("ix_entity_alerts_scope", "entity_alerts", ["tenant_id", "integration_id", "status"])

    op.create_table(
        "entity_tags",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column(
            "entity_id",
            sa.String(),
            sa.ForeignKey("entities.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("tag", sa.String(), nullable=False),
        sa.Column("category", sa.String(), nullable=True),
        sa.Column("source", sa.String(), nullable=False),
        *_timestamps(updated=False),
        sa.UniqueConstraint("entity_id", "tag", "source", name="uq_entity_tags_source"),
    )
    op.create_index("ix_entity_tags_tenant_id", "entity_tags", ["tenant_id"])
    op.create_index("ix_entity_tags_source", "entity_tags", ["entity_id", "source"])


def downgrade() -> None:
    op.drop_table("entity_tags")
    op.drop_table("entity_alerts")
    op.drop_table("entity_relationships")
    op.drop_table("entities")
    op.drop_table("sync_jobs")
    op.drop_table("site_mappings")
    op.drop_table("integration_connections")
    op.drop_table("tenant_integrations")
