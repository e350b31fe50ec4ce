from __future__ import annotations

from typing import TYPE_CHECKING

from entigraph.adapters.sqlalchemy import SqlAlchemyCanonicalStore
from entigraph.domain.canonicalization import (
    collect_aliases,
    collect_document_ids,
    group_candidates,
    resolve_group,
    select_canonical,
)
from entigraph.domain.model import EntityType
from tests.helpers.pipeline import candidate

if TYPE_CHECKING:
    from sqlalchemy.orm import Session


def test_group_candidates_uses_grouping_key_in_first_seen_order() -> None:
    candidates = [
        candidate("Open AI").for_document(2),
        candidate("Apple Inc.", EntityType.COMPANY).for_document(1),
        candidate("OpenAI").for_document(1),
        candidate("Apple", EntityType.COMPANY).for_document(3),
        candidate("???"),
    ]

    groups = group_candidates(candidates)

    assert list(groups) == ["openai", "apple"]
    assert [item.name for item in groups["openai"]] == ["Open AI", "OpenAI"]
    assert [item.name for item in groups["apple"]] == ["Apple Inc.", "Apple"]


def test_select_canonical_prefers_length_and_confidence() -> None:
    group = [
        candidate("Open AI", confidence=0.8),
        candidate("OpenAI", confidence=0.95),
    ]

    choice = select_canonical(group)

    assert choice is not None
    assert choice.name == "OpenAI"


def test_select_canonical_rewards_repeated_spellings() -> None:
    group = [
        candidate("Apple Incorporated", confidence=0.7),
        candidate("Apple", confidence=0.7),
        candidate("apple", confidence=0.75),
    ]

    choice = select_canonical(group)

    assert choice is not None
    assert choice.frequency == 2
    assert choice.name == "apple"


def test_select_canonical_is_deterministic_for_ties() -> None:
    group = [candidate("ACME", confidence=0.9), candidate("Acmé", confidence=0.9)]

    first = select_canonical(group)
    second = select_canonical(list(group))

    assert first is not None
    assert second is not None
    assert first.name == second.name == "ACME"


def test_select_canonical_handles_empty_group() -> None:
    assert select_canonical([]) is None


def test_collect_aliases_excludes_only_exact_canonical_spelling() -> None:
    group = [
        candidate("OpenAI", aliases=("OpenAI LP", " openai ")),
        candidate("Open AI"),
        candidate("OpenAI"),
    ]

    assert collect_aliases(group, "OpenAI") == ["OpenAI LP", "openai", "Open AI"]


def test_collect_document_ids_is_distinct_and_ordered() -> None:
    group = [
        candidate("OpenAI").for_document(3),
        candidate("Open AI").for_document(1),
        candidate("OpenAI").for_document(3),
        candidate("OpenAI"),
    ]

    assert collect_document_ids(group) == [3, 1]


def test_resolve_group_creates_entity_with_aliases(sqlite_session: Session) -> None:
    store = SqlAlchemyCanonicalStore(sqlite_session)
    group = [
        candidate("OpenAI", confidence=0.95).for_document(1),
        candidate("Open AI", confidence=0.8).for_document(2),
    ]

    record = resolve_group(group, store)

    assert record is not None
    assert record.is_new
    assert record.name == "OpenAI"
    assert record.document_ids == [1, 2]
    assert record.aliases == ["Open AI"]
    assert store.resolve_alias("open-ai") == record.entity_id
    assert store.find_entity_id_by_slug("openai") == record.entity_id


def test_resolve_group_reuses_entity_found_through_alias(sqlite_session: Session) -> None:
    store = SqlAlchemyCanonicalStore(sqlite_session)
    entity_id = store.upsert_entity("International Business Machines", EntityType.COMPANY, ["IBM"])

    record = resolve_group([candidate("IBM", EntityType.COMPANY).for_document(7)], store)

    assert record is not None
    assert not record.is_new
    assert record.entity_id == entity_id
    assert record.name == "International Business Machines"
    assert record.document_ids == [7]


def test_resolve_group_is_idempotent(sqlite_session: Session) -> None:
    store = SqlAlchemyCanonicalStore(sqlite_session)
    group = [candidate("Anthropic", aliases=("Anthropic PBC",)).for_document(4)]

    first = resolve_group(group, store)
    second = resolve_group(group, store)

    assert first is not None
    assert second is not None
    assert first.entity_id == second.entity_id
    assert [alias.alias for alias in store.get_aliases(first.entity_id)] == ["Anthropic PBC"]


def test_legal_form_and_case_variants_resolve_to_one_stored_entity(
    sqlite_session: Session,
) -> None:
    store = SqlAlchemyCanonicalStore(sqlite_session)
    candidates = [
        candidate("Apple", EntityType.COMPANY).for_document(1),
        candidate("apple inc", EntityType.COMPANY).for_document(2),
        candidate("APPLE", EntityType.COMPANY).for_document(3),
    ]

    groups = group_candidates(candidates)
    assert list(groups) == ["apple"]
    record = resolve_group(groups["apple"], store)

    assert record is not None
    assert record.name == "Apple"
    assert record.document_ids == [1, 2, 3]
    assert store.count_entities() == 1
    assert store.find_entity_id_by_slug("apple") == record.entity_id
    assert store.resolve_alias("apple-inc") == record.entity_id
    assert sorted(alias.alias for alias in store.get_aliases(record.entity_id)) == [
        "APPLE",
        "apple inc",
    ]

    later = resolve_group([candidate("Apple Inc.", EntityType.COMPANY).for_document(4)], store)

    assert later is not None
    assert not later.is_new
    assert later.entity_id == record.entity_id
    assert store.count_entities() == 1
