"""SQLAlchemy-backed unit of work for the indexing pipeline."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Literal

from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker

from entigraph.adapters.sqlalchemy.mappings import start_mappers
from entigraph.adapters.sqlalchemy.migrations import upgrade_head
from entigraph.adapters.sqlalchemy.repositories import (
    SqlAlchemyCanonicalStore,
    SqlAlchemyDocumentRepository,
    SqlAlchemyMentionRepository,
    SqlAlchemyRenderedDocumentRepository,
)
from entigraph.adapters.sqlalchemy.state_store import SqlAlchemyKeyValueStore, SqlAlchemyTTLCache
from entigraph.adapters.sqlalchemy.task_queue import SqlAlchemyTaskQueue
from entigraph.config.storage import get_database_config
from entigraph.domain.ports import PipelineRepositories, RepositoryCollection

if TYPE_CHECKING:
    from types import TracebackType

    from sqlalchemy.engine import Connection, Engine


class StartupError(RuntimeError):
    """Raised when a SQLAlchemy unit of work is used before initialisation."""


@dataclass(slots=True)
class _AdapterState:
    _engine: Engine | None = None
    _session_factory: sessionmaker[Session] | None = None

    @property
    def engine(self) -> Engine | None:
        return self._engine

    @engine.setter
    def engine(self, value: Engine | None) -> None:
        self._session_factory = None
        self._engine = value

    @property
    def session_factory(self) -> sessionmaker[Session]:
        if self._engine is None:
            raise StartupError(
                "SQLAlchemy adapter not initialised. Call entigraph.adapters.sqlalchemy."
                "unit_of_work.startup() before requesting a unit of work."
            )
        if self._session_factory is None:
            self._session_factory = sessionmaker(bind=self._engine, expire_on_commit=False)
        return self._session_factory


_STATE = _AdapterState()


def create_database_engine(database_uri: str, *, echo: bool = False) -> Engine:
    """Create an engine; SQLite gets explicit BEGIN so SAVEPOINTs nest properly."""

    engine = create_engine(database_uri, echo=echo, future=True)
    if engine.dialect.name == "sqlite":
        _enable_sqlite_transactions(engine)
    return engine


def _enable_sqlite_transactions(engine: Engine) -> None:
    @event.listens_for(engine, "connect")
    def _on_connect(  # pyright: ignore[reportUnusedFunction]
        dbapi_connection: Any, connection_record: Any
    ) -> None:
        _ = connection_record
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(connection: Connection) -> None:  # pyright: ignore[reportUnusedFunction]
        connection.exec_driver_sql("BEGIN")


def startup(
    *,
    engine: Engine | None = None,
    database_uri: str | None = None,
    force: bool = False,
) -> None:
    """Initialise the engine, mappers, schema and session factory."""

    if _STATE.engine is not None and not force:
        raise StartupError(
            "SQLAlchemy adapter already initialised. Pass force=True to reconfigure."
        )

    if engine is None:
        database = get_database_config()
        engine = create_database_engine(database_uri or database.uri, echo=database.echo)
    start_mappers()
    upgrade_head(engine=engine)
    _STATE.engine = engine


def configured_engine() -> Engine | None:
    """Return the engine currently managed by the adapter (if any)."""

    return _STATE.engine


def is_started() -> bool:
    return _STATE.engine is not None


def shutdown() -> None:
    """Dispose the managed engine and reset state (primarily for tests)."""

    if _STATE.engine is not None:
        _STATE.engine.dispose()
    _STATE.engine = None


class BaseSqlAlchemyUnitOfWork[TRepositories: RepositoryCollection](ABC):
    """Generic SQLAlchemy unit of work with pluggable repository collections."""

    def __init__(self) -> None:
        self.session_factory: sessionmaker[Session] = _STATE.session_factory
        self._session: Session | None = None

    @abstractmethod
    def _build_repositories(self, session: Session) -> TRepositories: ...

    def __enter__(self) -> BaseSqlAlchemyUnitOfWork[TRepositories]:
        self.session = self.session_factory()
        self._repositories = self._build_repositories(self.session)
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_value: BaseException | None,
        traceback: TracebackType | None,
    ) -> Literal[False]:
        if exc_type is not None:
            self.rollback()
        self.session.close()
        self.session = None
        return False

    def commit(self) -> None:
        self.session.commit()

    def rollback(self) -> None:
        self.session.rollback()

    @property
    def repositories(self) -> TRepositories:
        if self._session is None:
            raise StartupError("Unit of work session not initialised")
        return self._repositories

    @property
    def session(self) -> Session:
        if self._session is None:
            raise StartupError("Unit of work session not initialised")
        return self._session

    @session.setter
    def session(self, session: Session | None) -> None:
        if self._session is not None and session is not None:
            raise StartupError("Unit of work session already initialised")
        self._session = session


class SqlAlchemyUnitOfWork(BaseSqlAlchemyUnitOfWork[PipelineRepositories]):
    """One transaction spanning the entity graph, job state and task queue."""

    def _build_repositories(self, session: Session) -> PipelineRepositories:
        return PipelineRepositories(
            entities=SqlAlchemyCanonicalStore(session),
            mentions=SqlAlchemyMentionRepository(session),
            documents=SqlAlchemyDocumentRepository(session),
            rendered=SqlAlchemyRenderedDocumentRepository(session),
            state=SqlAlchemyKeyValueStore(session),
            cache=SqlAlchemyTTLCache(session),
            tasks=SqlAlchemyTaskQueue(session),
            savepoint=session.begin_nested,
        )


if TYPE_CHECKING:
    from entigraph.domain.ports import PipelineUnitOfWork

    _uow_check: PipelineUnitOfWork = SqlAlchemyUnitOfWork()
