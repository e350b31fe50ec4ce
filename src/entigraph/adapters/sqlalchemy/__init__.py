"""SQLAlchemy adapter package for entigraph."""

from __future__ import annotations

from .mappings import create_all_tables, mapper_registry, start_mappers
from .repositories import (
    SqlAlchemyCanonicalStore,
    SqlAlchemyDocumentRepository,
    SqlAlchemyMentionRepository,
    SqlAlchemyRenderedDocumentRepository,
)
from .state_store import SqlAlchemyKeyValueStore, SqlAlchemyTTLCache
from .task_queue import SqlAlchemyTaskQueue
from .unit_of_work import (
    SqlAlchemyUnitOfWork,
    create_database_engine,
    shutdown,
    startup,
)

__all__ = [
    "SqlAlchemyCanonicalStore",
    "SqlAlchemyDocumentRepository",
    "SqlAlchemyKeyValueStore",
    "SqlAlchemyMentionRepository",
    "SqlAlchemyRenderedDocumentRepository",
    "SqlAlchemyTTLCache",
    "SqlAlchemyTaskQueue",
    "SqlAlchemyUnitOfWork",
    "create_all_tables",
    "create_database_engine",
    "mapper_registry",
    "shutdown",
    "start_mappers",
    "startup",
]
