"""Ports for the external extraction and materialization services."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import Callable

    from entigraph.domain.model import ExtractedCandidate

    from .unit_of_work import PipelineRepositories


@runtime_checkable
class ExtractionService(Protocol):
    """Turns document text into raw entity candidates.

    Implementations raise ``RateLimitError`` for backpressure so callers can
    tell it apart from per-document failures.
    """

    def extract(
        self,
        text: str,
        *,
        prompt: str | None = None,
        model: str | None = None,
    ) -> list[ExtractedCandidate]: ...


@runtime_checkable
class MaterializationService(Protocol):
    """Regenerates and caches the external representation of a document."""

    def regenerate(self, document_id: int) -> dict[str, Any] | None: ...

    def invalidate(self, document_id: int) -> None: ...

    def get_cached(self, document_id: int) -> dict[str, Any] | None: ...


type MaterializerFactory = Callable[[PipelineRepositories], MaterializationService]
