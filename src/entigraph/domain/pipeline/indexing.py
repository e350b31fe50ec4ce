"""Phase 5: refresh mention counts and store aggregate statistics."""

from __future__ import annotations

import logging

from entigraph.domain.model import Phase

from .base import BatchContext, BatchResult, PhaseJob

log = logging.getLogger(__name__)


class IndexingJob(PhaseJob):
    phase = Phase.INDEXING

    def process_batch(self, context: BatchContext) -> BatchResult:
        entities = context.repositories.entities
        mentions = context.repositories.mentions
        cursor = context.states.cursor(self.phase)
        if cursor is None:
            context.start_phase(self.phase, entities.count_entities())
            last_id = 0
        else:
            raw = cursor.get("last_id", 0)
            last_id = raw if isinstance(raw, int) else 0

        size = self.settings.indexing_batch_size
        entity_ids = entities.entity_ids_after(last_id, size)
        for entity_id in entity_ids:
            mentions.recount_mentions(entity_id)
            context.state.progress.record_phase(completed=1)
        if entity_ids:
            last_id = entity_ids[-1]
        context.states.save_cursor(self.phase, {"last_id": last_id})

        if len(entity_ids) == size:
            return BatchResult(done=False, processed=len(entity_ids))

        actions = mentions.maintain_indexes()
        statistics = mentions.statistics()
        context.states.save_index_statistics(statistics)
        context.states.clear_canonical_records()
        context.logger.info(
            "Index statistics stored",
            entities=statistics.total_entities,
            mentions=statistics.total_mentions,
            maintenance=actions,
        )
        return BatchResult(done=True, processed=len(entity_ids))
