"""Ports for persisting canonical entities, aliases, mentions and documents."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence
    from datetime import datetime

    from entigraph.domain.model import (
        Alias,
        AliasSource,
        Document,
        Entity,
        EntityMention,
        EntityStatus,
        EntityType,
        Mention,
        MergeReason,
        RenderedDocument,
    )


@dataclass(frozen=True, slots=True)
class EntityPage:
    items: list[Entity]
    total: int
    page: int
    per_page: int

    @property
    def pages(self) -> int:
        return max((self.total + self.per_page - 1) // self.per_page, 1)


@dataclass(frozen=True, slots=True)
class ConfidenceStats:
    average: float = 0.0
    minimum: float = 0.0
    maximum: float = 0.0
    total: int = 0


@dataclass(frozen=True, slots=True)
class IndexStatistics:
    """Aggregate snapshot computed at the end of indexing."""

    total_entities: int = 0
    total_mentions: int = 0
    type_distribution: dict[str, int] = field(default_factory=dict)
    confidence: ConfidenceStats = field(default_factory=ConfidenceStats)
    top_entities: list[tuple[int, str, int]] = field(default_factory=list)
    top_documents: list[tuple[int, int]] = field(default_factory=list)


@runtime_checkable
class CanonicalStore(Protocol):
    """Persistence contract for entities, aliases and entity-document edges."""

    def upsert_entity(
        self,
        name: str,
        entity_type: EntityType,
        aliases: Sequence[str] = (),
    ) -> int: ...

    def resolve_alias(self, slug: str) -> int | None: ...

    def find_entity_id_by_slug(self, slug: str) -> int | None: ...

    def register_alias(
        self,
        entity_id: int,
        alias: str,
        *,
        source: AliasSource | None = None,
    ) -> bool: ...

    def link_mention(
        self,
        entity_id: int,
        document_id: int,
        confidence: float,
        context: str = "",
        *,
        is_primary: bool = False,
    ) -> Mention: ...

    def get_entities_for_post(
        self,
        document_id: int,
        min_confidence: float = 0.6,
    ) -> list[EntityMention]: ...

    def merge_entities(
        self,
        target_id: int,
        source_ids: Sequence[int],
        *,
        reason: MergeReason | None = None,
    ) -> list[int]: ...

    def canonical_id(self, entity_id: int) -> int: ...

    def get_entity(self, entity_id: int) -> Entity | None: ...

    def list_entities(
        self,
        *,
        page: int = 1,
        per_page: int = 20,
        entity_type: EntityType | None = None,
        status: EntityStatus | None = None,
        search: str | None = None,
        order_by: str = "mention_count",
        descending: bool = True,
    ) -> EntityPage: ...

    def update_entity(self, entity_id: int, changes: Mapping[str, object]) -> Entity: ...

    def delete_entity(self, entity_id: int) -> list[int]: ...

    def get_aliases(self, entity_id: int) -> list[Alias]: ...

    def delete_alias(self, alias_id: int) -> bool: ...

    def entity_ids_after(self, last_id: int, limit: int) -> list[int]: ...

    def count_entities(self) -> int: ...


@runtime_checkable
class MentionRepository(Protocol):
    """Edge-level queries and maintenance."""

    def get_mention(self, mention_id: int) -> Mention | None: ...

    def get_mentions_for_document(self, document_id: int) -> list[Mention]: ...

    def get_mentions_for_entity(self, entity_id: int, *, limit: int = 100) -> list[Mention]: ...

    def delete_mentions_for_document(self, document_id: int) -> list[int]: ...

    def update_confidence(self, mention_id: int, confidence: float) -> bool: ...

    def update_primary_status(self, mention_id: int, *, is_primary: bool) -> bool: ...

    def delete_mention(self, mention_id: int) -> bool: ...

    def get_low_confidence_mentions(
        self,
        threshold: float = 0.6,
        *,
        limit: int = 100,
    ) -> list[Mention]: ...

    def mention_counts_by_type(self) -> dict[str, int]: ...

    def recount_mentions(self, entity_id: int) -> int: ...

    def recalculate_all_mention_counts(self) -> int: ...

    def document_ids_for_entity(self, entity_id: int, *, after: int, limit: int) -> list[int]: ...

    def count_documents_for_entity(self, entity_id: int, *, after: int = 0) -> int: ...

    def document_ids_with_mentions(self, min_confidence: float) -> list[int]: ...

    def statistics(self, *, top: int = 10) -> IndexStatistics: ...

    def maintain_indexes(self) -> list[str]: ...


@runtime_checkable
class ContentSource(Protocol):
    """Source documents fed into the pipeline."""

    def list_eligible_documents(
        self,
        type_filter: Sequence[str],
        *,
        force_reprocess: bool = False,
    ) -> list[int]: ...

    def get_document(self, document_id: int) -> Document | None: ...

    def mark_extracted(self, document_id: int, at: datetime) -> None: ...

    def add(self, document: Document) -> None: ...


@runtime_checkable
class RenderedDocumentRepository(Protocol):
    def get(self, document_id: int) -> RenderedDocument | None: ...

    def save(self, rendered: RenderedDocument) -> None: ...

    def delete(self, document_id: int) -> bool: ...
