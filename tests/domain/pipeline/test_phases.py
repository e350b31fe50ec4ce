from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import pytest

from entigraph.adapters.materialization import materializer_factory
from entigraph.config.pipeline import PipelineSettings
from entigraph.domain.errors import ExtractionError, RateLimitError
from entigraph.domain.events import EventBus, PhaseCompleted, PhaseFailed, PhaseStarted
from entigraph.domain.model import (
    CanonicalRecord,
    EntityType,
    Phase,
    PipelineConfig,
    PipelineState,
    PipelineStatus,
    PreparedDocument,
)
from entigraph.domain.pipeline import (
    ExtractionJob,
    LinkingJob,
    MaterializationJob,
    PipelineOrchestrator,
    PipelineStateRepository,
    PreparationJob,
    best_context,
    primary_entities,
)
from tests.helpers.pipeline import (
    FakeExtractor,
    add_documents,
    candidate,
    collect,
    create_entity,
    link_documents,
    make_document,
)

if TYPE_CHECKING:
    from collections.abc import Callable

    from entigraph.adapters.sqlalchemy.unit_of_work import SqlAlchemyUnitOfWork
    from entigraph.domain.ports import PipelineRepositories

NOW = datetime(2026, 5, 1, 8, 0, tzinfo=UTC)


@pytest.fixture
def events() -> EventBus:
    return EventBus()


def _enter(uow_factory: Callable[[], SqlAlchemyUnitOfWork], phase: Phase) -> None:
    with uow_factory() as uow:
        PipelineStateRepository(uow.repositories.state).save(
            PipelineState(status=PipelineStatus.RUNNING, phase=phase, config=PipelineConfig())
        )
        uow.commit()


def _load(uow_factory: Callable[[], SqlAlchemyUnitOfWork]) -> PipelineState:
    with uow_factory() as uow:
        return PipelineStateRepository(uow.repositories.state).load()


def _prepared(document_id: int, content: str) -> PreparedDocument:
    return PreparedDocument(
        document_id=document_id,
        title=f"Document {document_id}",
        content=content,
        char_count=len(content),
        prepared_at=NOW,
    )


def _record(
    entity_id: int,
    name: str,
    document_ids: list[int],
    **kwargs: object,
) -> CanonicalRecord:
    return CanonicalRecord(
        entity_id=entity_id,
        name=name,
        type=EntityType.ORG,
        document_ids=document_ids,
        **kwargs,  # type: ignore[arg-type]
    )


# Linking helpers -------------------------------------------------------------


def test_best_context_prefers_highest_matching_candidate() -> None:
    record = _record(1, "OpenAI", [1], aliases=["Open AI"])
    candidates = [
        candidate("OpenAI", confidence=0.7, context="first"),
        candidate("open ai", confidence=0.9, context="alias spelling"),
        candidate("Anthropic", confidence=0.99, context="unrelated"),
    ]

    assert best_context(record, candidates) == (0.9, "alias spelling")


def test_best_context_defaults_without_stronger_match() -> None:
    record = _record(1, "OpenAI", [1])

    assert best_context(record, []) == (0.5, "")
    assert best_context(record, [candidate("OpenAI", confidence=0.5, context="tie")]) == (0.5, "")


def test_best_context_matches_substrings_both_ways() -> None:
    record = _record(1, "OpenAI Inc", [1])

    assert best_context(record, [candidate("OpenAI", confidence=0.8, context="c")]) == (0.8, "c")


def test_primary_entities_uses_global_breadth() -> None:
    records = [
        _record(1, "Narrow", [1]),
        _record(2, "Broad", [1, 2, 3]),
        _record(3, "Medium", [2, 3]),
        _record(4, "Tied", [4]),
        _record(5, "Tied Later", [4]),
    ]

    assert primary_entities(records) == {1: 2, 2: 2, 3: 2, 4: 4}


# Preparation -----------------------------------------------------------------


def test_preparation_collects_eligible_documents(
    sqlite_unit_of_work: Callable[[], SqlAlchemyUnitOfWork],
    events: EventBus,
) -> None:
    add_documents(
        sqlite_unit_of_work,
        make_document(1, title="<b>Launch</b>"),
        make_document(2, body="<p>too short</p>"),
        make_document(3, status="draft"),
        make_document(4, content_type="attachment"),
        make_document(5, content_type="page"),
    )
    _enter(sqlite_unit_of_work, Phase.PREPARATION)
    started = collect(events, PhaseStarted)
    completed = collect(events, PhaseCompleted)

    result = PreparationJob(sqlite_unit_of_work, events, clock=lambda: NOW).run()

    assert result is not None
    assert result.done
    with sqlite_unit_of_work() as uow:
        prepared = PipelineStateRepository(uow.repositories.state).prepared_documents()
    assert [item.document_id for item in prepared] == [1, 5]
    assert prepared[0].content.startswith("Launch\n\nThe quarterly report")
    assert prepared[0].char_count == len(prepared[0].content)
    assert started == [PhaseStarted(phase=Phase.PREPARATION, total=3)]
    assert completed == [PhaseCompleted(phase=Phase.PREPARATION, completed=3, failed=0)]

    progress = _load(sqlite_unit_of_work).progress
    assert progress.total == 3
    assert progress.skipped == 1
    assert progress.phase.skipped == 1
    assert progress.phase.is_finished


def test_phase_job_ignores_invocation_outside_its_phase(
    sqlite_unit_of_work: Callable[[], SqlAlchemyUnitOfWork],
    events: EventBus,
) -> None:
    add_documents(sqlite_unit_of_work, make_document(1))
    _enter(sqlite_unit_of_work, Phase.EXTRACTION)

    assert PreparationJob(sqlite_unit_of_work, events).run() is None


def test_preparation_reschedules_until_backlog_is_done(
    sqlite_unit_of_work: Callable[[], SqlAlchemyUnitOfWork],
    events: EventBus,
) -> None:
    add_documents(sqlite_unit_of_work, *(make_document(index) for index in range(1, 6)))
    _enter(sqlite_unit_of_work, Phase.PREPARATION)
    job = PreparationJob(
        sqlite_unit_of_work,
        events,
        settings=PipelineSettings(preparation_batch_size=2),
        clock=lambda: NOW,
    )

    first = job.run()

    assert first is not None
    assert not first.done
    with sqlite_unit_of_work() as uow:
        assert [task.job_name for task in uow.repositories.tasks.pending()] == [
            Phase.PREPARATION.job_name
        ]
        assert PipelineStateRepository(uow.repositories.state).cursor(Phase.PREPARATION) == {
            "offset": 2
        }


# Extraction ------------------------------------------------------------------


def _seed_prepared(
    uow_factory: Callable[[], SqlAlchemyUnitOfWork],
    *documents: PreparedDocument,
) -> None:
    _enter(uow_factory, Phase.EXTRACTION)
    with uow_factory() as uow:
        PipelineStateRepository(uow.repositories.state).add_prepared_documents(list(documents))
        uow.commit()


def test_extraction_counts_per_document_failures(
    sqlite_unit_of_work: Callable[[], SqlAlchemyUnitOfWork],
    events: EventBus,
) -> None:
    add_documents(sqlite_unit_of_work, make_document(1), make_document(2), make_document(3))
    _seed_prepared(
        sqlite_unit_of_work,
        _prepared(1, "alpha OpenAI"),
        _prepared(2, "beta broken"),
        _prepared(3, "gamma OpenAI"),
    )
    extractor = FakeExtractor(
        responses={"OpenAI": [candidate("OpenAI")]},
        failures={"broken": ExtractionError("bad response")},
    )
    completed = collect(events, PhaseCompleted)

    result = ExtractionJob(sqlite_unit_of_work, events, extractor, clock=lambda: NOW).run()

    assert result is not None
    assert result.done
    assert completed == [PhaseCompleted(phase=Phase.EXTRACTION, completed=2, failed=1)]
    with sqlite_unit_of_work() as uow:
        states = PipelineStateRepository(uow.repositories.state)
        assert [(item.name, item.document_id) for item in states.candidates()] == [
            ("OpenAI", 1),
            ("OpenAI", 3),
        ]
        assert states.batch_size_state() is not None
        documents = uow.repositories.documents
        extracted = [documents.get_document(index) for index in (1, 2, 3)]
        assert [doc.extracted_at is not None for doc in extracted if doc] == [True, False, True]
    progress = _load(sqlite_unit_of_work).progress
    assert progress.failed == 1
    assert progress.current_batch == 1


def test_extraction_rate_limit_rolls_back_the_invocation(
    sqlite_unit_of_work: Callable[[], SqlAlchemyUnitOfWork],
    events: EventBus,
) -> None:
    _seed_prepared(sqlite_unit_of_work, _prepared(1, "alpha OpenAI"), _prepared(2, "throttled"))
    extractor = FakeExtractor(
        responses={"OpenAI": [candidate("OpenAI")]},
        failures={"throttled": RateLimitError(retry_after=30)},
    )
    failed = collect(events, PhaseFailed)

    with pytest.raises(RateLimitError):
        ExtractionJob(sqlite_unit_of_work, events, extractor).run()

    assert failed == []
    with sqlite_unit_of_work() as uow:
        states = PipelineStateRepository(uow.repositories.state)
        assert states.cursor(Phase.EXTRACTION) is None
        assert states.candidates() == []


# Linking ---------------------------------------------------------------------


def test_linking_writes_mentions_with_best_context(
    sqlite_unit_of_work: Callable[[], SqlAlchemyUnitOfWork],
    events: EventBus,
) -> None:
    add_documents(sqlite_unit_of_work, make_document(1), make_document(2))
    openai = create_entity(sqlite_unit_of_work, "OpenAI", aliases=("Open AI",))
    altman = create_entity(sqlite_unit_of_work, "Sam Altman", EntityType.PERSON)
    _enter(sqlite_unit_of_work, Phase.LINKING)
    with sqlite_unit_of_work() as uow:
        states = PipelineStateRepository(uow.repositories.state)
        states.add_candidates(
            [
                candidate("OpenAI", confidence=0.95, context="OpenAI shipped").for_document(1),
                candidate("Open AI", confidence=0.8, context="Open AI said").for_document(2),
                candidate("Sam Altman", EntityType.PERSON, confidence=0.7).for_document(2),
            ]
        )
        states.save_canonical_records(
            {
                "openai": _record(openai, "OpenAI", [1, 2], aliases=["Open AI"]),
                "sam altman": _record(altman, "Sam Altman", [2]),
            }
        )
        uow.commit()

    result = LinkingJob(sqlite_unit_of_work, events).run()

    assert result is not None
    assert result.done
    with sqlite_unit_of_work() as uow:
        entities = uow.repositories.entities
        first = [
            (item.entity.name, item.confidence, item.is_primary)
            for item in entities.get_entities_for_post(1)
        ]
        second = {
            item.entity.name: (item.confidence, item.context, item.is_primary)
            for item in entities.get_entities_for_post(2)
        }
        assert PipelineStateRepository(uow.repositories.state).candidates() == []
    assert first == [("OpenAI", 0.95, True)]
    assert second == {
        "OpenAI": (0.8, "Open AI said", True),
        "Sam Altman": (0.7, "", False),
    }


def test_linking_failure_is_counted_and_the_phase_still_advances(
    sqlite_unit_of_work: Callable[[], SqlAlchemyUnitOfWork],
    events: EventBus,
) -> None:
    add_documents(sqlite_unit_of_work, make_document(1), make_document(2))
    openai = create_entity(sqlite_unit_of_work, "OpenAI")
    PipelineOrchestrator(sqlite_unit_of_work, events, clock=lambda: NOW)
    _enter(sqlite_unit_of_work, Phase.LINKING)
    with sqlite_unit_of_work() as uow:
        PipelineStateRepository(uow.repositories.state).save_canonical_records(
            {
                "openai": _record(openai, "OpenAI", [1, 2]),
                "vanished": _record(404, "Vanished", [1]),
            }
        )
        uow.commit()
    completed = collect(events, PhaseCompleted)
    failed = collect(events, PhaseFailed)

    result = LinkingJob(sqlite_unit_of_work, events, clock=lambda: NOW).run()

    assert result is not None
    assert result.done
    assert failed == []
    assert completed == [PhaseCompleted(phase=Phase.LINKING, completed=2, failed=1)]
    with sqlite_unit_of_work() as uow:
        mentions = uow.repositories.mentions
        assert [m.entity_id for m in mentions.get_mentions_for_document(1)] == [openai]
        assert [m.entity_id for m in mentions.get_mentions_for_document(2)] == [openai]
    state = _load(sqlite_unit_of_work)
    assert state.status is PipelineStatus.RUNNING
    assert state.phase is Phase.INDEXING


# Materialization -------------------------------------------------------------


class _PoisonedMaterializer:
    """Renders normally except for documents whose write violates a constraint."""

    def __init__(self, repositories: PipelineRepositories, poisoned: set[int]) -> None:
        self.repositories = repositories
        self.inner = materializer_factory()(repositories)
        self.poisoned = poisoned

    def regenerate(self, document_id: int) -> dict[str, Any] | None:
        if document_id in self.poisoned:
            self.repositories.entities.link_mention(404, document_id, 0.9)
        return self.inner.regenerate(document_id)

    def invalidate(self, document_id: int) -> None:
        self.inner.invalidate(document_id)

    def get_cached(self, document_id: int) -> dict[str, Any] | None:
        return self.inner.get_cached(document_id)


def test_materialization_failure_leaves_the_batch_usable(
    sqlite_unit_of_work: Callable[[], SqlAlchemyUnitOfWork],
    events: EventBus,
) -> None:
    add_documents(sqlite_unit_of_work, make_document(1), make_document(2), make_document(3))
    openai = create_entity(sqlite_unit_of_work, "OpenAI")
    link_documents(sqlite_unit_of_work, openai, [1, 2, 3])
    _enter(sqlite_unit_of_work, Phase.MATERIALIZATION)
    completed = collect(events, PhaseCompleted)

    def factory(repositories: PipelineRepositories) -> _PoisonedMaterializer:
        return _PoisonedMaterializer(repositories, {2})

    result = MaterializationJob(sqlite_unit_of_work, events, factory, clock=lambda: NOW).run()

    assert result is not None
    assert result.done
    assert completed == [PhaseCompleted(phase=Phase.MATERIALIZATION, completed=2, failed=1)]
    with sqlite_unit_of_work() as uow:
        rendered = uow.repositories.rendered
        assert [rendered.get(index) is not None for index in (1, 2, 3)] == [True, False, True]
