"""Phase 1: collect eligible documents and normalise their text."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from entigraph.domain.model import Phase, PreparedDocument
from entigraph.domain.text import html_to_text, truncate

from .base import BatchContext, BatchResult, PhaseJob, read_offset, write_offset

if TYPE_CHECKING:
    from entigraph.domain.model import Document, PipelineConfig

log = logging.getLogger(__name__)


class PreparationJob(PhaseJob):
    phase = Phase.PREPARATION

    def process_batch(self, context: BatchContext) -> BatchResult:
        config = context.state.config
        documents = context.repositories.documents
        eligible = documents.list_eligible_documents(
            _content_types(config),
            force_reprocess=bool(config and config.force_reprocess),
        )

        offset, first = read_offset(context, self.phase)
        if first:
            context.state.progress.total = len(eligible)
            context.start_phase(self.phase, len(eligible))

        batch = eligible[offset : offset + self.settings.preparation_batch_size]
        prepared: list[PreparedDocument] = []
        progress = context.state.progress
        for document_id in batch:
            document = documents.get_document(document_id)
            if document is None or not document.is_published:
                context.logger.warning("Document unavailable", document_id=document_id)
                progress.record(skipped=1)
                continue
            item = self.prepare(document, context)
            if item is None:
                progress.record(skipped=1)
                continue
            prepared.append(item)
            progress.record_phase(completed=1)

        context.states.add_prepared_documents(prepared)
        offset += len(batch)
        write_offset(context, self.phase, offset)
        context.logger.debug("Prepared batch", prepared=len(prepared), offset=offset)
        return BatchResult(done=offset >= len(eligible), processed=len(batch))

    def prepare(self, document: Document, context: BatchContext) -> PreparedDocument | None:
        content = html_to_text(document.body)
        if len(content) < self.settings.min_content_length:
            context.logger.debug(
                "Skipping short document", document_id=document.id, length=len(content)
            )
            return None
        title = html_to_text(document.title)
        text = f"{title}\n\n{content}" if title else content
        text = truncate(text, self.settings.max_content_length)
        return PreparedDocument(
            document_id=document.id,
            title=title,
            content=text,
            char_count=len(text),
            prepared_at=context.now,
        )


def _content_types(config: PipelineConfig | None) -> tuple[str, ...]:
    if config is None or not config.content_types:
        return ("post", "page")
    return config.content_types
