"""Intermediate records passed between pipeline phases."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime

from .enums import EntityType


@dataclass(frozen=True, slots=True)
class PreparedDocument:
    """Normalised text queued for extraction."""

    document_id: int
    title: str
    content: str
    char_count: int
    prepared_at: datetime


@dataclass(frozen=True, slots=True)
class ExtractedCandidate:
    """One raw named-entity candidate returned by the extraction service."""

    name: str
    type: EntityType = EntityType.CONCEPT
    confidence: float = 0.5
    context: str = ""
    aliases: tuple[str, ...] = ()
    document_id: int | None = None

    def for_document(self, document_id: int) -> ExtractedCandidate:
        return replace(self, document_id=document_id)


@dataclass(slots=True)
class CanonicalRecord:
    """Deduplication output for one resolved or created entity."""

    entity_id: int
    name: str
    type: EntityType
    document_ids: list[int] = field(default_factory=list)
    aliases: list[str] = field(default_factory=list)
    is_new: bool = False

    def absorb(self, document_ids: list[int], aliases: list[str]) -> None:
        for document_id in document_ids:
            if document_id not in self.document_ids:
                self.document_ids.append(document_id)
        for alias in aliases:
            if alias not in self.aliases:
                self.aliases.append(alias)
