from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from entigraph.adapters.materialization import materializer_factory
from entigraph.config.pipeline import PipelineSettings
from entigraph.domain.curation import EntityCuration
from entigraph.domain.errors import (
    EntityNotFoundError,
    InvalidEntityUpdateError,
    MentionNotFoundError,
)
from entigraph.domain.events import EntityPropagationComplete, EventBus
from entigraph.domain.model import EntityType
from entigraph.domain.propagation import PROPAGATION_JOB, PropagationEngine
from tests.helpers.pipeline import (
    add_documents,
    collect,
    create_entity,
    link_documents,
    make_document,
)

if TYPE_CHECKING:
    from collections.abc import Callable

    from entigraph.adapters.sqlalchemy.unit_of_work import SqlAlchemyUnitOfWork


@pytest.fixture
def events() -> EventBus:
    return EventBus()


@pytest.fixture
def propagation(
    sqlite_unit_of_work: Callable[[], SqlAlchemyUnitOfWork],
    events: EventBus,
) -> PropagationEngine:
    return PropagationEngine(
        sqlite_unit_of_work,
        events,
        materializer_factory(),
        settings=PipelineSettings(),
    )


@pytest.fixture
def curation(
    sqlite_unit_of_work: Callable[[], SqlAlchemyUnitOfWork],
    events: EventBus,
    propagation: PropagationEngine,
) -> EntityCuration:
    return EntityCuration(sqlite_unit_of_work, events, propagation, materializer_factory())


def _render(uow_factory: Callable[[], SqlAlchemyUnitOfWork], *document_ids: int) -> None:
    with uow_factory() as uow:
        materializer = materializer_factory()(uow.repositories)
        for document_id in document_ids:
            materializer.regenerate(document_id)
        uow.commit()


def _cached(uow_factory: Callable[[], SqlAlchemyUnitOfWork], document_id: int) -> bool:
    with uow_factory() as uow:
        return uow.repositories.rendered.get(document_id) is not None


def _pending_entities(uow_factory: Callable[[], SqlAlchemyUnitOfWork]) -> list[object]:
    with uow_factory() as uow:
        return [task.args["entity_id"] for task in uow.repositories.tasks.pending(PROPAGATION_JOB)]


def test_update_entity_invalidates_documents_and_starts_propagation(
    sqlite_unit_of_work: Callable[[], SqlAlchemyUnitOfWork],
    curation: EntityCuration,
    propagation: PropagationEngine,
) -> None:
    add_documents(sqlite_unit_of_work, make_document(1), make_document(2))
    entity_id = create_entity(sqlite_unit_of_work, "OpenAI")
    link_documents(sqlite_unit_of_work, entity_id, [1, 2])
    _render(sqlite_unit_of_work, 1, 2)

    entity = curation.update_entity(entity_id, {"description": "AI lab"})

    assert entity.description == "AI lab"
    assert not _cached(sqlite_unit_of_work, 1)
    assert not _cached(sqlite_unit_of_work, 2)
    assert propagation.is_propagating(entity_id)
    assert _pending_entities(sqlite_unit_of_work) == [entity_id]

    propagation.execute(entity_id)
    propagation.execute(entity_id)

    assert _cached(sqlite_unit_of_work, 1)
    assert _cached(sqlite_unit_of_work, 2)
    assert not propagation.is_propagating(entity_id)


def test_update_entity_rolls_back_invalid_changes(
    sqlite_unit_of_work: Callable[[], SqlAlchemyUnitOfWork],
    curation: EntityCuration,
) -> None:
    add_documents(sqlite_unit_of_work, make_document(1))
    entity_id = create_entity(sqlite_unit_of_work, "OpenAI")
    link_documents(sqlite_unit_of_work, entity_id, [1])
    _render(sqlite_unit_of_work, 1)

    with pytest.raises(InvalidEntityUpdateError):
        curation.update_entity(entity_id, {"slug": "hijacked"})

    assert _cached(sqlite_unit_of_work, 1)
    assert _pending_entities(sqlite_unit_of_work) == []


def test_update_entity_without_documents_publishes_completion(
    sqlite_unit_of_work: Callable[[], SqlAlchemyUnitOfWork],
    curation: EntityCuration,
    events: EventBus,
) -> None:
    entity_id = create_entity(sqlite_unit_of_work, "Unlinked")
    completed = collect(events, EntityPropagationComplete)

    curation.update_entity(entity_id, {"type": "person"})

    assert completed == [EntityPropagationComplete(entity_id=entity_id, rounds=0, failures=0)]
    with sqlite_unit_of_work() as uow:
        entity = uow.repositories.entities.get_entity(entity_id)
        assert entity is not None
        assert entity.type is EntityType.PERSON


def test_merge_entities_cancels_sources_and_propagates_survivor(
    sqlite_unit_of_work: Callable[[], SqlAlchemyUnitOfWork],
    curation: EntityCuration,
    propagation: PropagationEngine,
) -> None:
    add_documents(sqlite_unit_of_work, make_document(1), make_document(2), make_document(3))
    target = create_entity(sqlite_unit_of_work, "OpenAI")
    source = create_entity(sqlite_unit_of_work, "Open AI Labs")
    link_documents(sqlite_unit_of_work, target, [1, 2])
    link_documents(sqlite_unit_of_work, source, [2, 3])
    propagation.schedule(source)
    _render(sqlite_unit_of_work, 1, 2, 3)

    affected = curation.merge_entities(target, [source])

    assert affected == [1, 2, 3]
    assert not propagation.is_propagating(source)
    assert propagation.is_propagating(target)
    assert _pending_entities(sqlite_unit_of_work) == [target]
    assert not any(_cached(sqlite_unit_of_work, document_id) for document_id in affected)


def test_merge_entities_requires_existing_target(
    sqlite_unit_of_work: Callable[[], SqlAlchemyUnitOfWork],
    curation: EntityCuration,
) -> None:
    source = create_entity(sqlite_unit_of_work, "Orphan", EntityType.CONCEPT)

    with pytest.raises(EntityNotFoundError):
        curation.merge_entities(404, [source])


def test_delete_entity_regenerates_affected_documents(
    sqlite_unit_of_work: Callable[[], SqlAlchemyUnitOfWork],
    curation: EntityCuration,
) -> None:
    add_documents(sqlite_unit_of_work, make_document(1), make_document(2))
    doomed = create_entity(sqlite_unit_of_work, "Doomed")
    keeper = create_entity(sqlite_unit_of_work, "Keeper")
    link_documents(sqlite_unit_of_work, doomed, [1, 2])
    link_documents(sqlite_unit_of_work, keeper, [1])
    _render(sqlite_unit_of_work, 1, 2)

    assert curation.delete_entity(doomed) == [1, 2]

    assert _cached(sqlite_unit_of_work, 1)
    assert not _cached(sqlite_unit_of_work, 2)
    with sqlite_unit_of_work() as uow:
        cached = uow.repositories.rendered.get(1)
        assert cached is not None
        names = [node.get("name") for node in cached.payload["@graph"][1:]]
        assert names == ["Keeper"]


def _mention_id(uow_factory: Callable[[], SqlAlchemyUnitOfWork], document_id: int) -> int:
    with uow_factory() as uow:
        (mention,) = uow.repositories.mentions.get_mentions_for_document(document_id)
    assert mention.id is not None
    return mention.id


def test_update_mention_rerenders_its_document(
    sqlite_unit_of_work: Callable[[], SqlAlchemyUnitOfWork],
    curation: EntityCuration,
) -> None:
    add_documents(sqlite_unit_of_work, make_document(1))
    entity_id = create_entity(sqlite_unit_of_work, "OpenAI")
    link_documents(sqlite_unit_of_work, entity_id, [1], confidence=0.3)
    mention_id = _mention_id(sqlite_unit_of_work, 1)
    assert not _cached(sqlite_unit_of_work, 1)

    mention = curation.update_mention(mention_id, confidence=0.95, is_primary=True)

    assert (mention.confidence, mention.is_primary) == (0.95, True)
    with sqlite_unit_of_work() as uow:
        cached = uow.repositories.rendered.get(1)
        assert cached is not None
        names = [node.get("name") for node in cached.payload["@graph"][1:]]
        assert names == ["OpenAI"]


def test_update_mention_requires_existing_mention(curation: EntityCuration) -> None:
    with pytest.raises(MentionNotFoundError):
        curation.update_mention(404, confidence=0.5)


def test_delete_mention_recounts_and_rerenders(
    sqlite_unit_of_work: Callable[[], SqlAlchemyUnitOfWork],
    curation: EntityCuration,
) -> None:
    add_documents(sqlite_unit_of_work, make_document(1), make_document(2))
    entity_id = create_entity(sqlite_unit_of_work, "OpenAI")
    keeper = create_entity(sqlite_unit_of_work, "Keeper")
    link_documents(sqlite_unit_of_work, entity_id, [1, 2])
    link_documents(sqlite_unit_of_work, keeper, [2])
    _render(sqlite_unit_of_work, 1, 2)
    with sqlite_unit_of_work() as uow:
        mention = next(
            edge
            for edge in uow.repositories.mentions.get_mentions_for_document(2)
            if edge.entity_id == entity_id
        )
    assert mention.id is not None

    assert curation.delete_mention(mention.id)
    assert not curation.delete_mention(mention.id)

    with sqlite_unit_of_work() as uow:
        entity = uow.repositories.entities.get_entity(entity_id)
        assert entity is not None
        assert entity.mention_count == 1
        cached = uow.repositories.rendered.get(2)
        assert cached is not None
        assert [node.get("name") for node in cached.payload["@graph"][1:]] == ["Keeper"]


def test_delete_alias_reports_missing_alias(
    sqlite_unit_of_work: Callable[[], SqlAlchemyUnitOfWork],
    curation: EntityCuration,
) -> None:
    entity_id = create_entity(sqlite_unit_of_work, "Alphabet Inc", aliases=("Google",))
    with sqlite_unit_of_work() as uow:
        (alias,) = uow.repositories.entities.get_aliases(entity_id)
    assert alias.id is not None

    assert curation.delete_alias(alias.id)
    assert not curation.delete_alias(alias.id)
