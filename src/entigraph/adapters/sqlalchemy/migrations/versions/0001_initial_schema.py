"""Initial schema

Revision ID: 0001
Revises:
Create Date: 2026-10-18 00:00:00
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op

revision = "0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "entity",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("slug", sa.String(length=255), nullable=False),
        sa.Column("type", sa.String(length=20), nullable=False),
        sa.Column("schema_type", sa.String(length=100), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("same_as", sa.String(length=500), nullable=True),
        sa.Column("wikidata_id", sa.String(length=20), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("mention_count", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id", name="pk_entity"),
        sa.UniqueConstraint("slug", name="uq_entity_entity_slug"),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_entity_type_status", "entity", ["type", "status"])

    op.create_table(
        "entity_alias",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("entity_id", sa.Integer(), nullable=False),
        sa.Column("alias", sa.String(length=255), nullable=False),
        sa.Column("alias_slug", sa.String(length=255), nullable=False),
        sa.Column("source", sa.String(length=20), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(
            ["entity_id"],
            ["entity.id"],
            name="fk_entity_alias_entity_alias_entity_id_entity",
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("id", name="pk_entity_alias"),
        sa.UniqueConstraint("alias_slug", name="uq_entity_alias_entity_alias_alias_slug"),
    )
    op.create_index("ix_entity_alias_entity_id", "entity_alias", ["entity_id"])

    op.create_table(
        "entity_mention",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("entity_id", sa.Integer(), nullable=False),
        sa.Column("document_id", sa.Integer(), nullable=False),
        sa.Column("confidence", sa.Float(), nullable=False),
        sa.Column("context", sa.Text(), nullable=False),
        sa.Column("is_primary", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(
            ["entity_id"],
            ["entity.id"],
            name="fk_entity_mention_entity_mention_entity_id_entity",
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("id", name="pk_entity_mention"),
        sa.UniqueConstraint(
            "entity_id", "document_id", name="uq_entity_mention_entity_document"
        ),
    )
    op.create_index("ix_entity_mention_document_id", "entity_mention", ["document_id"])
    op.create_index("ix_entity_mention_confidence", "entity_mention", ["confidence"])

    op.create_table(
        "entity_merge",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("source_id", sa.Integer(), nullable=False),
        sa.Column("target_id", sa.Integer(), nullable=False),
        sa.Column("reason", sa.String(length=20), nullable=False),
        sa.Column("source_name", sa.String(length=255), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column("created_by", sa.String(length=100), nullable=True),
        sa.PrimaryKeyConstraint("id", name="pk_entity_merge"),
        sa.UniqueConstraint("source_id", name="uq_entity_merge_entity_merge_source_id"),
    )
    op.create_index("ix_entity_merge_target_id", "entity_merge", ["target_id"])

    op.create_table(
        "document",
        sa.Column("id", sa.Integer(), autoincrement=False, nullable=False),
        sa.Column("title", sa.String(length=500), nullable=False),
        sa.Column("body", sa.Text(), nullable=False),
        sa.Column("content_type", sa.String(length=50), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("url", sa.String(length=500), nullable=True),
        sa.Column("extracted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id", name="pk_document"),
    )
    op.create_index("ix_document_type_status", "document", ["content_type", "status"])

    op.create_table(
        "rendered_document",
        sa.Column("document_id", sa.Integer(), autoincrement=False, nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("rendered_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("document_id", name="pk_rendered_document"),
    )

    op.create_table(
        "state_entry",
        sa.Column("key", sa.String(length=191), nullable=False),
        sa.Column("value", sa.JSON(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("key", name="pk_state_entry"),
    )

    op.create_table(
        "cache_entry",
        sa.Column("key", sa.String(length=191), nullable=False),
        sa.Column("value", sa.JSON(), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("key", name="pk_cache_entry"),
    )
    op.create_index("ix_cache_entry_expires_at", "cache_entry", ["expires_at"])

    op.create_table(
        "scheduled_task",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("job_name", sa.String(length=191), nullable=False),
        sa.Column("args", sa.JSON(), nullable=False),
        sa.Column("group_name", sa.String(length=100), nullable=False),
        sa.Column("run_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id", name="pk_scheduled_task"),
    )
    op.create_index("ix_scheduled_task_job_name", "scheduled_task", ["job_name"])
    op.create_index("ix_scheduled_task_status_run_at", "scheduled_task", ["status", "run_at"])


def downgrade() -> None:
    op.drop_table("scheduled_task")
    op.drop_table("cache_entry")
    op.drop_table("state_entry")
    op.drop_table("rendered_document")
    op.drop_table("document")
    op.drop_table("entity_merge")
    op.drop_table("entity_mention")
    op.drop_table("entity_alias")
    op.drop_table("entity")
