"""Unit-of-work abstractions for coordinating repositories."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import Callable
    from contextlib import AbstractContextManager
    from types import TracebackType

    from .persistence import (
        CanonicalStore,
        ContentSource,
        MentionRepository,
        RenderedDocumentRepository,
    )
    from .scheduling import TaskQueue
    from .state import KeyValueStore, TTLCache


@runtime_checkable
class RepositoryCollection(Protocol):
    """Marker protocol for groups of repositories managed together."""


@runtime_checkable
class UnitOfWork[TRepositories: RepositoryCollection](Protocol):
    """Generic unit-of-work boundary around a repository collection."""

    @property
    def repositories(self) -> TRepositories: ...

    def __enter__(self) -> UnitOfWork[TRepositories]: ...

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_value: BaseException | None,
        traceback: TracebackType | None,
    ) -> bool: ...

    def commit(self) -> None: ...

    def rollback(self) -> None: ...


@dataclass(slots=True)
class PipelineRepositories(RepositoryCollection):
    """Everything a pipeline or propagation invocation reads and writes."""

    entities: CanonicalStore
    mentions: MentionRepository
    documents: ContentSource
    rendered: RenderedDocumentRepository
    state: KeyValueStore
    cache: TTLCache
    tasks: TaskQueue
    savepoint: Callable[[], AbstractContextManager[object]]


type PipelineUnitOfWork = UnitOfWork[PipelineRepositories]
type UnitOfWorkFactory = Callable[[], PipelineUnitOfWork]
