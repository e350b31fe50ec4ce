"""Phase 2: call the extraction service for each prepared document."""

from __future__ import annotations

import logging
import math
import time
from typing import TYPE_CHECKING

from entigraph.domain.batch_size import BatchSizeController
from entigraph.domain.errors import RateLimitError
from entigraph.domain.model import Phase

from .base import BatchContext, BatchResult, PhaseJob, read_offset, utcnow, write_offset

if TYPE_CHECKING:
    from collections.abc import Callable
    from datetime import datetime

    from entigraph.config.pipeline import PipelineSettings
    from entigraph.domain.events import EventBus
    from entigraph.domain.model import ExtractedCandidate
    from entigraph.domain.ports import ExtractionService, UnitOfWorkFactory

log = logging.getLogger(__name__)


class ExtractionJob(PhaseJob):
    """Extracts candidates batch by batch with an adaptive batch size.

    Backpressure aborts the invocation; any other per-document failure is
    counted and the batch moves on.
    """

    phase = Phase.EXTRACTION

    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        events: EventBus,
        extractor: ExtractionService,
        *,
        settings: PipelineSettings | None = None,
        clock: Callable[[], datetime] = utcnow,
        timer: Callable[[], float] = time.perf_counter,
    ) -> None:
        super().__init__(uow_factory, events, settings=settings, clock=clock)
        self.extractor = extractor
        self.timer = timer

    def process_batch(self, context: BatchContext) -> BatchResult:
        prepared = context.states.prepared_documents()
        controller = self._controller(context)
        progress = context.state.progress

        offset, first = read_offset(context, self.phase)
        if first:
            context.start_phase(self.phase, len(prepared))
            progress.total_batches = math.ceil(len(prepared) / controller.current)

        batch = prepared[offset : offset + controller.current]
        if not batch:
            write_offset(context, self.phase, offset)
            return BatchResult(done=True)

        started = self.timer()
        collected: list[ExtractedCandidate] = []
        for document in batch:
            try:
                candidates = self.extractor.extract(document.content)
            except RateLimitError:
                raise
            except Exception as exc:
                context.logger.error(
                    "Extraction failed", document_id=document.document_id, error=str(exc)
                )
                progress.record(failed=1)
                continue
            collected.extend(
                candidate.for_document(document.document_id) for candidate in candidates
            )
            context.repositories.documents.mark_extracted(document.document_id, context.now)
            progress.record(completed=1)
            context.logger.debug(
                "Extracted candidates",
                document_id=document.document_id,
                candidates=len(candidates),
            )
        elapsed = self.timer() - started

        context.states.add_candidates(collected)
        next_size = controller.update_from_result(elapsed, len(batch))
        context.states.save_batch_size_state(controller.to_state())
        progress.observe_timing(elapsed / len(batch))
        progress.current_batch += 1
        offset += len(batch)
        remaining = len(prepared) - offset
        progress.total_batches = progress.current_batch + math.ceil(max(remaining, 0) / next_size)
        write_offset(context, self.phase, offset)
        return BatchResult(done=offset >= len(prepared), processed=len(batch))

    def _controller(self, context: BatchContext) -> BatchSizeController:
        config = context.state.config
        default_size = config.batch_size if config is not None else self.settings.batch_size
        return BatchSizeController.from_state(
            context.states.batch_size_state(),
            policy=self.settings.batch_policy,
            default_size=default_size,
        )
