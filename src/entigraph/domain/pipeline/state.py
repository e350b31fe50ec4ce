"""Typed access to pipeline, job and accumulator state in the key-value store."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from pydantic import TypeAdapter

from entigraph.domain.model import (
    PHASE_ORDER,
    CanonicalRecord,
    ExtractedCandidate,
    PipelineState,
    PreparedDocument,
)
from entigraph.domain.ports import IndexStatistics

if TYPE_CHECKING:
    from collections.abc import Callable

    from entigraph.domain.model import Phase
    from entigraph.domain.ports import JsonValue, KeyValueStore

log = logging.getLogger(__name__)

PIPELINE_STATE_KEY = "pipeline_state"
BATCH_SIZE_KEY = "batch_size_controller"
PREPARED_DOCUMENTS_KEY = "prepared_documents"
EXTRACTED_CANDIDATES_KEY = "extracted_candidates"
CANONICAL_RECORDS_KEY = "canonical_records"
INDEX_STATS_KEY = "index_stats"

ACCUMULATOR_KEYS: tuple[str, ...] = (
    BATCH_SIZE_KEY,
    PREPARED_DOCUMENTS_KEY,
    EXTRACTED_CANDIDATES_KEY,
    CANONICAL_RECORDS_KEY,
)

_STATE_ADAPTER = TypeAdapter(PipelineState)
_PREPARED_ADAPTER = TypeAdapter(list[PreparedDocument])
_CANDIDATES_ADAPTER = TypeAdapter(list[ExtractedCandidate])
_RECORDS_ADAPTER = TypeAdapter(dict[str, CanonicalRecord])
_STATS_ADAPTER = TypeAdapter(IndexStatistics)


def job_state_key(phase: Phase) -> str:
    return f"job_{phase.value}"


class PipelineStateRepository:
    """Reads and writes every piece of run state through one ``KeyValueStore``.

    The pipeline document itself is updated with ``update`` so a writer that
    raced with ``stop()`` or ``fail()`` sees the newer status instead of
    overwriting it.
    """

    def __init__(self, store: KeyValueStore) -> None:
        self.store = store

    # Pipeline state -----------------------------------------------------------

    def load(self) -> PipelineState:
        raw = self.store.get(PIPELINE_STATE_KEY)
        if raw is None:
            return PipelineState()
        return _STATE_ADAPTER.validate_python(raw)

    def save(self, state: PipelineState) -> None:
        self.store.set(PIPELINE_STATE_KEY, _dump(_STATE_ADAPTER, state))

    def update(self, mutate: Callable[[PipelineState], PipelineState]) -> PipelineState:
        result: list[PipelineState] = []

        def apply(raw: JsonValue) -> JsonValue:
            current = PipelineState() if raw is None else _STATE_ADAPTER.validate_python(raw)
            updated = mutate(current)
            result[:] = [updated]
            return _dump(_STATE_ADAPTER, updated)

        self.store.update(PIPELINE_STATE_KEY, apply)
        return result[0]

    # Job cursors --------------------------------------------------------------

    def cursor(self, phase: Phase) -> dict[str, JsonValue] | None:
        raw = self.store.get(job_state_key(phase))
        return raw if isinstance(raw, dict) else None

    def save_cursor(self, phase: Phase, cursor: dict[str, JsonValue]) -> None:
        self.store.set(job_state_key(phase), cursor)

    def clear_run(self) -> None:
        """Forget cursors and accumulators left over from a previous run."""

        for phase in PHASE_ORDER:
            self.store.delete(job_state_key(phase))
        for key in ACCUMULATOR_KEYS:
            self.store.delete(key)
        log.debug("Cleared phase cursors and accumulators")

    # Accumulators -------------------------------------------------------------

    def prepared_documents(self) -> list[PreparedDocument]:
        return _PREPARED_ADAPTER.validate_python(self.store.get(PREPARED_DOCUMENTS_KEY, []))

    def add_prepared_documents(self, documents: list[PreparedDocument]) -> None:
        if not documents:
            return
        stored = self.prepared_documents()
        known = {document.document_id for document in stored}
        stored.extend(document for document in documents if document.document_id not in known)
        self.store.set(PREPARED_DOCUMENTS_KEY, _dump(_PREPARED_ADAPTER, stored))

    def candidates(self) -> list[ExtractedCandidate]:
        return _CANDIDATES_ADAPTER.validate_python(self.store.get(EXTRACTED_CANDIDATES_KEY, []))

    def add_candidates(self, candidates: list[ExtractedCandidate]) -> None:
        if not candidates:
            return
        stored = self.candidates()
        stored.extend(candidates)
        self.store.set(EXTRACTED_CANDIDATES_KEY, _dump(_CANDIDATES_ADAPTER, stored))

    def clear_candidates(self) -> None:
        self.store.delete(EXTRACTED_CANDIDATES_KEY)

    def canonical_records(self) -> dict[str, CanonicalRecord]:
        return _RECORDS_ADAPTER.validate_python(self.store.get(CANONICAL_RECORDS_KEY, {}))

    def save_canonical_records(self, records: dict[str, CanonicalRecord]) -> None:
        self.store.set(CANONICAL_RECORDS_KEY, _dump(_RECORDS_ADAPTER, records))

    def clear_canonical_records(self) -> None:
        self.store.delete(CANONICAL_RECORDS_KEY)

    def batch_size_state(self) -> JsonValue:
        return self.store.get(BATCH_SIZE_KEY)

    def save_batch_size_state(self, state: dict[str, JsonValue]) -> None:
        self.store.set(BATCH_SIZE_KEY, state)

    def index_statistics(self) -> IndexStatistics | None:
        raw = self.store.get(INDEX_STATS_KEY)
        return None if raw is None else _STATS_ADAPTER.validate_python(raw)

    def save_index_statistics(self, statistics: IndexStatistics) -> None:
        self.store.set(INDEX_STATS_KEY, _dump(_STATS_ADAPTER, statistics))


def _dump(adapter: TypeAdapter[Any], value: object) -> JsonValue:
    return adapter.dump_python(value, mode="json")
