"""Grouping, canonical-name selection and resolution of extraction candidates."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from entigraph.domain.model import CanonicalRecord, EntityType
from entigraph.domain.text import grouping_key, slugify

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from entigraph.domain.model import ExtractedCandidate
    from entigraph.domain.ports import CanonicalStore

log = logging.getLogger(__name__)

LENGTH_WEIGHT = 0.1
CONFIDENCE_WEIGHT = 10.0
REPEAT_BONUS = 5.0


@dataclass(slots=True)
class ScoredVariant:
    """Aggregate score for one case-insensitive spelling within a group."""

    name: str
    type: EntityType
    confidence: float
    score: float
    frequency: int = 1


def group_candidates(
    candidates: Iterable[ExtractedCandidate],
) -> dict[str, list[ExtractedCandidate]]:
    """Cluster candidates by grouping key, preserving first-seen key order."""

    groups: dict[str, list[ExtractedCandidate]] = {}
    for candidate in candidates:
        key = grouping_key(candidate.name)
        if not key:
            log.debug("Dropping candidate without a usable key: %r", candidate.name)
            continue
        groups.setdefault(key, []).append(candidate)
    return groups


def score_variants(group: Sequence[ExtractedCandidate]) -> list[ScoredVariant]:
    variants: dict[str, ScoredVariant] = {}
    for candidate in group:
        variant_key = candidate.name.strip().lower()
        existing = variants.get(variant_key)
        if existing is None:
            variants[variant_key] = ScoredVariant(
                name=candidate.name,
                type=candidate.type,
                confidence=candidate.confidence,
                score=(
                    len(candidate.name) * LENGTH_WEIGHT
                    + candidate.confidence * CONFIDENCE_WEIGHT
                ),
            )
            continue
        existing.frequency += 1
        existing.score += REPEAT_BONUS
        if candidate.confidence > existing.confidence:
            existing.confidence = candidate.confidence
            existing.name = candidate.name
    return list(variants.values())


def select_canonical(group: Sequence[ExtractedCandidate]) -> ScoredVariant | None:
    """Return the highest-scoring variant; the earliest scored one wins ties."""

    best: ScoredVariant | None = None
    for variant in score_variants(group):
        if best is None or variant.score > best.score:
            best = variant
    return best


def collect_aliases(group: Sequence[ExtractedCandidate], canonical_name: str) -> list[str]:
    """Every distinct spelling in the group other than the canonical one."""

    canonical = canonical_name.strip()
    aliases: list[str] = []
    for candidate in group:
        for spelling in (candidate.name, *candidate.aliases):
            cleaned = spelling.strip()
            if not cleaned or cleaned == canonical or cleaned in aliases:
                continue
            aliases.append(cleaned)
    return aliases


def collect_document_ids(group: Sequence[ExtractedCandidate]) -> list[int]:
    document_ids: list[int] = []
    for candidate in group:
        if candidate.document_id is not None and candidate.document_id not in document_ids:
            document_ids.append(candidate.document_id)
    return document_ids


def resolve_group(
    group: Sequence[ExtractedCandidate],
    store: CanonicalStore,
) -> CanonicalRecord | None:
    """Merge ``group`` into an existing entity or create a new one.

    Lookup order is the alias index first, then the entity slug. Alias
    registration is idempotent so replaying a group is harmless.
    """

    choice = select_canonical(group)
    if choice is None:
        return None
    slug = slugify(choice.name)
    if not slug:
        return None

    aliases = collect_aliases(group, choice.name)
    document_ids = collect_document_ids(group)

    existing_id = store.resolve_alias(slug) or store.find_entity_id_by_slug(slug)
    if existing_id is not None:
        for alias in aliases:
            store.register_alias(existing_id, alias)
        entity = store.get_entity(existing_id)
        return CanonicalRecord(
            entity_id=existing_id,
            name=entity.name if entity is not None else choice.name,
            type=entity.type if entity is not None else choice.type,
            document_ids=document_ids,
            aliases=aliases,
            is_new=False,
        )

    entity_id = store.upsert_entity(choice.name, choice.type, aliases)
    return CanonicalRecord(
        entity_id=entity_id,
        name=choice.name,
        type=choice.type,
        document_ids=document_ids,
        aliases=aliases,
        is_new=True,
    )
