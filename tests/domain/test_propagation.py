from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from entigraph.config.pipeline import PipelineSettings
from entigraph.domain.events import EntityPropagationComplete, EventBus
from entigraph.domain.pipeline import Worker
from entigraph.domain.propagation import PROPAGATION_JOB, PropagationEngine
from tests.helpers.pipeline import MaterializerRecorder, collect, create_entity, link_documents

if TYPE_CHECKING:
    from collections.abc import Callable

    from entigraph.adapters.sqlalchemy.unit_of_work import SqlAlchemyUnitOfWork


@pytest.fixture
def recorder() -> MaterializerRecorder:
    return MaterializerRecorder()


@pytest.fixture
def events() -> EventBus:
    return EventBus()


@pytest.fixture
def engine(
    sqlite_unit_of_work: Callable[[], SqlAlchemyUnitOfWork],
    events: EventBus,
    recorder: MaterializerRecorder,
) -> PropagationEngine:
    return PropagationEngine(
        sqlite_unit_of_work,
        events,
        recorder,
        settings=PipelineSettings(propagation_batch_size=50),
    )


def _pending(uow_factory: Callable[[], SqlAlchemyUnitOfWork]) -> list[dict[str, object]]:
    with uow_factory() as uow:
        return [dict(task.args) for task in uow.repositories.tasks.pending(PROPAGATION_JOB)]


def test_schedule_without_documents_completes_immediately(
    sqlite_unit_of_work: Callable[[], SqlAlchemyUnitOfWork],
    engine: PropagationEngine,
    events: EventBus,
) -> None:
    entity_id = create_entity(sqlite_unit_of_work, "Lonely Entity")
    completed = collect(events, EntityPropagationComplete)

    assert engine.schedule(entity_id) is False

    assert completed == [EntityPropagationComplete(entity_id=entity_id, rounds=0, failures=0)]
    assert _pending(sqlite_unit_of_work) == []
    assert not engine.is_propagating(entity_id)


def test_propagation_walks_documents_in_batches(
    sqlite_unit_of_work: Callable[[], SqlAlchemyUnitOfWork],
    engine: PropagationEngine,
    events: EventBus,
    recorder: MaterializerRecorder,
) -> None:
    entity_id = create_entity(sqlite_unit_of_work, "OpenAI")
    link_documents(sqlite_unit_of_work, entity_id, range(1, 121))
    completed = collect(events, EntityPropagationComplete)

    assert engine.schedule(entity_id) is True
    assert engine.is_propagating(entity_id)
    assert engine.propagating_entities() == [entity_id]
    assert _pending(sqlite_unit_of_work) == [{"entity_id": entity_id, "last_document_id": 0}]

    worker = Worker(sqlite_unit_of_work, {PROPAGATION_JOB: engine.handle})
    executed = worker.run_pending()

    assert executed == 4
    assert recorder.regenerated == list(range(1, 121))
    assert completed == [EntityPropagationComplete(entity_id=entity_id, rounds=3, failures=0)]
    assert not engine.is_propagating(entity_id)
    assert _pending(sqlite_unit_of_work) == []


def test_each_round_advances_cursor_to_max_document_id(
    sqlite_unit_of_work: Callable[[], SqlAlchemyUnitOfWork],
    engine: PropagationEngine,
) -> None:
    entity_id = create_entity(sqlite_unit_of_work, "OpenAI")
    link_documents(sqlite_unit_of_work, entity_id, [5, *range(100, 150), 900])
    engine.schedule(entity_id)

    marker = engine.execute(entity_id)

    assert marker is not None
    assert marker.last_document_id == 148
    assert marker.rounds == 1
    status = engine.status(entity_id)
    assert status.is_propagating
    assert status.last_document_id == 148
    assert engine.remaining(entity_id) == 2
    assert {"entity_id": entity_id, "last_document_id": 148} in _pending(sqlite_unit_of_work)


def test_mentions_added_mid_flight_extend_the_chain(
    sqlite_unit_of_work: Callable[[], SqlAlchemyUnitOfWork],
    engine: PropagationEngine,
    recorder: MaterializerRecorder,
) -> None:
    entity_id = create_entity(sqlite_unit_of_work, "OpenAI")
    link_documents(sqlite_unit_of_work, entity_id, range(1, 51))
    engine.schedule(entity_id)
    engine.execute(entity_id)

    link_documents(sqlite_unit_of_work, entity_id, [75])
    engine.execute(entity_id)
    assert engine.is_propagating(entity_id)
    engine.execute(entity_id)

    assert recorder.regenerated == [*range(1, 51), 75]
    assert not engine.is_propagating(entity_id)


def test_partial_batch_keeps_the_chain_open_for_late_mentions(
    sqlite_unit_of_work: Callable[[], SqlAlchemyUnitOfWork],
    engine: PropagationEngine,
    events: EventBus,
    recorder: MaterializerRecorder,
) -> None:
    entity_id = create_entity(sqlite_unit_of_work, "OpenAI")
    link_documents(sqlite_unit_of_work, entity_id, range(1, 11))
    completed = collect(events, EntityPropagationComplete)
    engine.schedule(entity_id)

    marker = engine.execute(entity_id)

    assert marker is not None
    assert marker.last_document_id == 10
    assert completed == []
    assert engine.is_propagating(entity_id)
    assert _pending(sqlite_unit_of_work) == [{"entity_id": entity_id, "last_document_id": 10}]

    link_documents(sqlite_unit_of_work, entity_id, [11])
    worker = Worker(sqlite_unit_of_work, {PROPAGATION_JOB: engine.handle})

    assert worker.run_pending() == 2
    assert recorder.regenerated == list(range(1, 12))
    assert completed == [EntityPropagationComplete(entity_id=entity_id, rounds=2, failures=0)]
    assert not engine.is_propagating(entity_id)


def test_exactly_full_batch_finishes_on_the_empty_round(
    sqlite_unit_of_work: Callable[[], SqlAlchemyUnitOfWork],
    engine: PropagationEngine,
    events: EventBus,
    recorder: MaterializerRecorder,
) -> None:
    entity_id = create_entity(sqlite_unit_of_work, "OpenAI")
    link_documents(sqlite_unit_of_work, entity_id, range(1, 51))
    completed = collect(events, EntityPropagationComplete)
    engine.schedule(entity_id)

    worker = Worker(sqlite_unit_of_work, {PROPAGATION_JOB: engine.handle})

    assert worker.run_pending() == 2
    assert recorder.regenerated == list(range(1, 51))
    assert completed == [EntityPropagationComplete(entity_id=entity_id, rounds=1, failures=0)]
    assert _pending(sqlite_unit_of_work) == []


def test_failed_documents_are_counted_and_skipped(
    sqlite_unit_of_work: Callable[[], SqlAlchemyUnitOfWork],
    engine: PropagationEngine,
    events: EventBus,
    recorder: MaterializerRecorder,
) -> None:
    entity_id = create_entity(sqlite_unit_of_work, "OpenAI")
    link_documents(sqlite_unit_of_work, entity_id, [1, 2, 3])
    recorder.failing.add(2)
    completed = collect(events, EntityPropagationComplete)
    engine.schedule(entity_id)

    engine.execute(entity_id)
    assert completed == []
    engine.execute(entity_id)

    assert recorder.regenerated == [1, 3]
    assert completed == [EntityPropagationComplete(entity_id=entity_id, rounds=1, failures=1)]


def test_execute_without_marker_is_a_no_op(
    sqlite_unit_of_work: Callable[[], SqlAlchemyUnitOfWork],
    engine: PropagationEngine,
    recorder: MaterializerRecorder,
) -> None:
    entity_id = create_entity(sqlite_unit_of_work, "OpenAI")
    link_documents(sqlite_unit_of_work, entity_id, [1])

    assert engine.execute(entity_id) is None
    assert recorder.regenerated == []


def test_cancel_clears_marker_and_pending_rounds(
    sqlite_unit_of_work: Callable[[], SqlAlchemyUnitOfWork],
    engine: PropagationEngine,
    recorder: MaterializerRecorder,
) -> None:
    entity_id = create_entity(sqlite_unit_of_work, "OpenAI")
    link_documents(sqlite_unit_of_work, entity_id, range(1, 80))
    engine.schedule(entity_id)

    assert engine.cancel(entity_id) is True

    assert not engine.is_propagating(entity_id)
    assert _pending(sqlite_unit_of_work) == []
    assert engine.execute(entity_id) is None
    assert recorder.regenerated == []
    assert engine.cancel(entity_id) is False


def test_rescheduling_replaces_pending_round(
    sqlite_unit_of_work: Callable[[], SqlAlchemyUnitOfWork],
    engine: PropagationEngine,
) -> None:
    entity_id = create_entity(sqlite_unit_of_work, "OpenAI")
    link_documents(sqlite_unit_of_work, entity_id, range(1, 80))

    engine.schedule(entity_id)
    engine.schedule(entity_id)

    assert len(_pending(sqlite_unit_of_work)) == 1


def test_handle_rejects_tasks_without_entity(engine: PropagationEngine) -> None:
    with pytest.raises(ValueError, match="entity id"):
        engine.handle({"last_document_id": 3})
