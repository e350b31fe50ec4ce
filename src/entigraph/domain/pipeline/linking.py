"""Phase 4: write entity-document mentions from the canonical mapping."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from entigraph.domain.model import Phase

from .base import BatchContext, BatchResult, PhaseJob, read_offset, write_offset

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping, Sequence

    from entigraph.domain.model import CanonicalRecord, ExtractedCandidate

log = logging.getLogger(__name__)

DEFAULT_LINK_CONFIDENCE = 0.5


class LinkingJob(PhaseJob):
    phase = Phase.LINKING

    def process_batch(self, context: BatchContext) -> BatchResult:
        records = list(context.states.canonical_records().values())
        pairs = [
            (record, document_id) for record in records for document_id in record.document_ids
        ]

        offset, first = read_offset(context, self.phase)
        if first:
            context.start_phase(self.phase, len(pairs))

        batch = pairs[offset : offset + self.settings.linking_batch_size]
        by_document = candidates_by_document(context.states.candidates())
        primary = primary_entities(records)
        progress = context.state.progress
        for record, document_id in batch:
            confidence, snippet = best_context(record, by_document.get(document_id, ()))
            try:
                with context.repositories.savepoint():
                    context.repositories.entities.link_mention(
                        record.entity_id,
                        document_id,
                        confidence,
                        snippet,
                        is_primary=primary.get(document_id) == record.entity_id,
                    )
            except Exception as exc:
                context.logger.error(
                    "Linking failed",
                    entity_id=record.entity_id,
                    document_id=document_id,
                    error=str(exc),
                )
                progress.record_phase(failed=1)
                continue
            progress.record_phase(completed=1)

        offset += len(batch)
        write_offset(context, self.phase, offset)
        done = offset >= len(pairs)
        if done:
            context.states.clear_candidates()
        context.logger.debug("Linked mentions", linked=len(batch), offset=offset)
        return BatchResult(done=done, processed=len(batch))


def candidates_by_document(
    candidates: Iterable[ExtractedCandidate],
) -> dict[int, list[ExtractedCandidate]]:
    grouped: dict[int, list[ExtractedCandidate]] = {}
    for candidate in candidates:
        if candidate.document_id is not None:
            grouped.setdefault(candidate.document_id, []).append(candidate)
    return grouped


def best_context(
    record: CanonicalRecord,
    candidates: Sequence[ExtractedCandidate],
) -> tuple[float, str]:
    """Pick the highest-confidence candidate in the document that names ``record``.

    A candidate matches when its lower-cased name equals, contains, or is
    contained in the entity name or one of its aliases.
    """

    names = {name.lower() for name in (record.name, *record.aliases) if name}
    confidence = DEFAULT_LINK_CONFIDENCE
    snippet = ""
    for candidate in candidates:
        spelling = candidate.name.lower()
        if not spelling or not any(
            spelling == name or spelling in name or name in spelling for name in names
        ):
            continue
        if candidate.confidence > confidence:
            confidence = candidate.confidence
            snippet = candidate.context
    return confidence, snippet


def primary_entities(records: Sequence[CanonicalRecord]) -> Mapping[int, int]:
    """Map each document to the entity with the widest document breadth overall.

    Breadth is counted across the whole run rather than within the document,
    so the same broad entity is primary everywhere it appears.
    """

    primary: dict[int, int] = {}
    breadth: dict[int, int] = {}
    for record in records:
        width = len(record.document_ids)
        for document_id in record.document_ids:
            if document_id not in primary or width > breadth[document_id]:
                primary[document_id] = record.entity_id
                breadth[document_id] = width
    return primary
