"""SQLAlchemy mapping metadata for the entigraph domain model."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from functools import cache
from typing import TYPE_CHECKING

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Dialect,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Table,
    Text,
    TypeDecorator,
    UniqueConstraint,
    func,
    orm,
)
from sqlalchemy.orm import configure_mappers

from entigraph.domain.model import (
    Alias,
    AliasSource,
    Document,
    Entity,
    EntityMerge,
    EntityStatus,
    EntityType,
    Mention,
    MergeReason,
    RenderedDocument,
)

if TYPE_CHECKING:
    from sqlalchemy.engine import Engine

log = logging.getLogger(__name__)


class UTCDateTime(TypeDecorator[datetime]):
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Dialect) -> datetime | None:
        _ = dialect
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return value.astimezone(UTC)

    def process_result_value(self, value: datetime | None, dialect: Dialect) -> datetime | None:
        _ = dialect
        if value is None:
            return None
        return value if value.tzinfo else value.replace(tzinfo=UTC)


mapper_registry = orm.registry()
mapper_registry.metadata.naming_convention = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_label)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_label)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}

# Canonical entity graph -------------------------------------------------------

entity_table = Table(
    "entity",
    mapper_registry.metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(255), nullable=False),
    Column("slug", String(255), nullable=False, unique=True),
    Column("type", Enum(EntityType, native_enum=False), nullable=False),
    Column("schema_type", String(100), nullable=True),
    Column("description", Text, nullable=True),
    Column("same_as", String(500), nullable=True),
    Column("wikidata_id", String(20), nullable=True),
    Column("status", Enum(EntityStatus, native_enum=False), nullable=False),
    Column("mention_count", Integer, nullable=False, default=0),
    Column("created_at", UTCDateTime(), nullable=False),
    Column("updated_at", UTCDateTime(), nullable=False),
    Index("ix_entity_type_status", "type", "status"),
    sqlite_autoincrement=True,
)

alias_table = Table(
    "entity_alias",
    mapper_registry.metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column(
        "entity_id",
        Integer,
        ForeignKey("entity.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    ),
    Column("alias", String(255), nullable=False),
    Column("alias_slug", String(255), nullable=False, unique=True),
    Column("source", Enum(AliasSource, native_enum=False), nullable=False),
    Column("created_at", UTCDateTime(), nullable=False),
)

mention_table = Table(
    "entity_mention",
    mapper_registry.metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column(
        "entity_id",
        Integer,
        ForeignKey("entity.id", ondelete="CASCADE"),
        nullable=False,
    ),
    Column("document_id", Integer, nullable=False),
    Column("confidence", Float, nullable=False, default=0.5),
    Column("context", Text, nullable=False, default=""),
    Column("is_primary", Boolean, nullable=False, default=False),
    Column("created_at", UTCDateTime(), nullable=False),
    UniqueConstraint("entity_id", "document_id", name="uq_entity_mention_entity_document"),
    Index("ix_entity_mention_document_id", "document_id"),
    Index("ix_entity_mention_confidence", "confidence"),
)

entity_merge_table = Table(
    "entity_merge",
    mapper_registry.metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("source_id", Integer, nullable=False, unique=True),
    Column("target_id", Integer, nullable=False, index=True),
    Column("reason", Enum(MergeReason, native_enum=False), nullable=False),
    Column("source_name", String(255), nullable=True),
    Column("created_at", UTCDateTime(), nullable=False, server_default=func.now()),
    Column("created_by", String(100), nullable=True),
)

# Content ----------------------------------------------------------------------

document_table = Table(
    "document",
    mapper_registry.metadata,
    Column("id", Integer, primary_key=True, autoincrement=False),
    Column("title", String(500), nullable=False),
    Column("body", Text, nullable=False),
    Column("content_type", String(50), nullable=False),
    Column("status", String(20), nullable=False),
    Column("url", String(500), nullable=True),
    Column("extracted_at", UTCDateTime(), nullable=True),
    Column("updated_at", UTCDateTime(), nullable=False),
    Index("ix_document_type_status", "content_type", "status"),
)

rendered_document_table = Table(
    "rendered_document",
    mapper_registry.metadata,
    Column("document_id", Integer, primary_key=True, autoincrement=False),
    Column("payload", JSON, nullable=False),
    Column("rendered_at", UTCDateTime(), nullable=False),
)

# Job infrastructure -----------------------------------------------------------

state_entry_table = Table(
    "state_entry",
    mapper_registry.metadata,
    Column("key", String(191), primary_key=True),
    Column("value", JSON, nullable=True),
    Column("version", Integer, nullable=False, default=1),
    Column("updated_at", UTCDateTime(), nullable=False),
)

cache_entry_table = Table(
    "cache_entry",
    mapper_registry.metadata,
    Column("key", String(191), primary_key=True),
    Column("value", JSON, nullable=True),
    Column("expires_at", UTCDateTime(), nullable=False, index=True),
)

scheduled_task_table = Table(
    "scheduled_task",
    mapper_registry.metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("job_name", String(191), nullable=False, index=True),
    Column("args", JSON, nullable=False),
    Column("group_name", String(100), nullable=False),
    Column("run_at", UTCDateTime(), nullable=False),
    Column("attempts", Integer, nullable=False, default=0),
    Column("status", String(20), nullable=False),
    Column("last_error", Text, nullable=True),
    Column("created_at", UTCDateTime(), nullable=False),
    Index("ix_scheduled_task_status_run_at", "status", "run_at"),
)


@cache
def start_mappers() -> orm.registry:
    """Configure SQLAlchemy mappers for the domain model."""

    log.info("Starting SQLAlchemy mappers")

    mapper_registry.map_imperatively(Entity, entity_table)
    mapper_registry.map_imperatively(Alias, alias_table)
    mapper_registry.map_imperatively(Mention, mention_table)
    mapper_registry.map_imperatively(EntityMerge, entity_merge_table)
    mapper_registry.map_imperatively(Document, document_table)
    mapper_registry.map_imperatively(RenderedDocument, rendered_document_table)

    configure_mappers()
    return mapper_registry


def create_all_tables(engine: Engine) -> None:
    """Create database tables for the mapped metadata."""

    log.info("Creating all tables")
    mapper_registry.metadata.create_all(engine)
