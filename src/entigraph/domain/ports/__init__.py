"""Domain ports (protocols) for external collaborators."""

from __future__ import annotations

from .collaborators import ExtractionService, MaterializationService, MaterializerFactory
from .persistence import (
    CanonicalStore,
    ConfidenceStats,
    ContentSource,
    EntityPage,
    IndexStatistics,
    MentionRepository,
    RenderedDocumentRepository,
)
from .scheduling import ScheduledTask, TaskQueue
from .state import JsonValue, KeyValueStore, TTLCache
from .unit_of_work import (
    PipelineRepositories,
    PipelineUnitOfWork,
    RepositoryCollection,
    UnitOfWork,
    UnitOfWorkFactory,
)

__all__ = [
    "CanonicalStore",
    "ConfidenceStats",
    "ContentSource",
    "EntityPage",
    "ExtractionService",
    "IndexStatistics",
    "JsonValue",
    "KeyValueStore",
    "MaterializationService",
    "MaterializerFactory",
    "MentionRepository",
    "PipelineRepositories",
    "PipelineUnitOfWork",
    "RenderedDocumentRepository",
    "RepositoryCollection",
    "ScheduledTask",
    "TTLCache",
    "TaskQueue",
    "UnitOfWork",
    "UnitOfWorkFactory",
]
