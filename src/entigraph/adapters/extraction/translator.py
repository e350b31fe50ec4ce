"""Translate extraction payloads into domain candidates."""

from __future__ import annotations

from logging import getLogger
from typing import TYPE_CHECKING

from pydantic import ValidationError

from entigraph.config.extraction import (
    MAX_ALIASES_PER_CANDIDATE,
    MAX_ENTITIES_PER_DOCUMENT,
    MIN_CANDIDATE_CONFIDENCE,
)
from entigraph.config.pipeline import MAX_CONTEXT_LENGTH
from entigraph.domain.model import EntityType, ExtractedCandidate, clamp_confidence
from entigraph.domain.text import truncate

from .schema import EntityPayload, ExtractionResult

if TYPE_CHECKING:
    from collections.abc import Iterable

log = getLogger(__name__)


def parse_candidate(
    raw: object,
    *,
    min_confidence: float = MIN_CANDIDATE_CONFIDENCE,
    max_aliases: int = MAX_ALIASES_PER_CANDIDATE,
) -> ExtractedCandidate | None:
    """Validate one entity object; ``None`` when invalid or below ``min_confidence``."""

    try:
        payload = EntityPayload.model_validate(raw)
    except ValidationError as exc:
        log.debug("Dropping malformed entity %r: %s", raw, exc.error_count())
        return None
    if payload.confidence < min_confidence:
        return None
    return ExtractedCandidate(
        name=payload.name,
        type=EntityType.coerce(payload.type),
        confidence=clamp_confidence(payload.confidence),
        context=truncate(payload.context.strip(), MAX_CONTEXT_LENGTH),
        aliases=_normalise_aliases(payload.aliases, max_aliases),
    )


def parse_candidates(
    result: ExtractionResult,
    *,
    min_confidence: float = MIN_CANDIDATE_CONFIDENCE,
    max_entities: int = MAX_ENTITIES_PER_DOCUMENT,
    max_aliases: int = MAX_ALIASES_PER_CANDIDATE,
) -> list[ExtractedCandidate]:
    candidates: list[ExtractedCandidate] = []
    for raw in result.entities:
        candidate = parse_candidate(raw, min_confidence=min_confidence, max_aliases=max_aliases)
        if candidate is None:
            continue
        candidates.append(candidate)
        if len(candidates) >= max_entities:
            break
    return candidates


def _normalise_aliases(aliases: Iterable[str], limit: int) -> tuple[str, ...]:
    seen: list[str] = []
    for alias in aliases:
        cleaned = " ".join(alias.split())
        if cleaned and cleaned not in seen:
            seen.append(cleaned)
    return tuple(seen[:limit])
