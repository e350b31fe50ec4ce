"""Phase 6: regenerate the cached representation of every linked document."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from entigraph.domain.model import Phase

from .base import BatchContext, BatchResult, PhaseJob, read_offset, utcnow, write_offset

if TYPE_CHECKING:
    from collections.abc import Callable
    from datetime import datetime

    from entigraph.config.pipeline import PipelineSettings
    from entigraph.domain.events import EventBus
    from entigraph.domain.ports import MaterializerFactory, UnitOfWorkFactory

log = logging.getLogger(__name__)


class MaterializationJob(PhaseJob):
    phase = Phase.MATERIALIZATION

    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        events: EventBus,
        materializer_factory: MaterializerFactory,
        *,
        settings: PipelineSettings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        super().__init__(uow_factory, events, settings=settings, clock=clock)
        self.materializer_factory = materializer_factory

    def process_batch(self, context: BatchContext) -> BatchResult:
        threshold = self.settings.confidence.materialization_minimum
        document_ids = context.repositories.mentions.document_ids_with_mentions(threshold)

        offset, first = read_offset(context, self.phase)
        if first:
            context.start_phase(self.phase, len(document_ids))

        batch = document_ids[offset : offset + self.settings.materialization_batch_size]
        materializer = self.materializer_factory(context.repositories)
        progress = context.state.progress
        for document_id in batch:
            try:
                with context.repositories.savepoint():
                    payload = materializer.regenerate(document_id)
            except Exception as exc:
                context.logger.error(
                    "Materialization failed", document_id=document_id, error=str(exc)
                )
                progress.record_phase(failed=1)
                continue
            if payload is None:
                progress.record_phase(skipped=1)
            else:
                progress.record_phase(completed=1)

        offset += len(batch)
        write_offset(context, self.phase, offset)
        return BatchResult(done=offset >= len(document_ids), processed=len(batch))
