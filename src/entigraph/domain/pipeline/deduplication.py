"""Phase 3: resolve grouped candidates into canonical entities."""

from __future__ import annotations

import logging

from entigraph.domain.canonicalization import group_candidates, resolve_group
from entigraph.domain.model import Phase

from .base import BatchContext, BatchResult, PhaseJob, read_offset, write_offset

log = logging.getLogger(__name__)


class DeduplicationJob(PhaseJob):
    """Batches over candidate groups in first-seen key order.

    The canonical mapping is keyed by entity id so groups that resolve to
    the same entity pool their documents and aliases.
    """

    phase = Phase.DEDUPLICATION

    def process_batch(self, context: BatchContext) -> BatchResult:
        groups = group_candidates(context.states.candidates())
        keys = list(groups)

        offset, first = read_offset(context, self.phase)
        if first:
            context.start_phase(self.phase, len(keys))

        batch = keys[offset : offset + self.settings.deduplication_batch_size]
        records = context.states.canonical_records()
        progress = context.state.progress
        created = 0
        for key in batch:
            record = resolve_group(groups[key], context.repositories.entities)
            if record is None:
                context.logger.debug("Group has no usable canonical name", key=key)
                progress.record_phase(skipped=1)
                continue
            existing = records.get(str(record.entity_id))
            if existing is None:
                records[str(record.entity_id)] = record
            else:
                existing.absorb(record.document_ids, record.aliases)
            created += int(record.is_new)
            progress.record_phase(completed=1)

        context.states.save_canonical_records(records)
        offset += len(batch)
        write_offset(context, self.phase, offset)
        context.logger.info("Resolved groups", groups=len(batch), created=created)
        return BatchResult(done=offset >= len(keys), processed=len(batch))
