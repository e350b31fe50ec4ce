"""Canonical entities, their aliases, and document mentions."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime

from .enums import AliasSource, EntityStatus, EntityType


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


def clamp_confidence(value: float) -> float:
    """Clamp a confidence score into ``[0, 1]``."""

    return max(0.0, min(1.0, float(value)))


@dataclass(eq=False)
class Entity:
    """A single deduplicated record for a real-world named thing."""

    name: str
    slug: str
    type: EntityType = EntityType.CONCEPT
    schema_type: str | None = None
    description: str | None = None
    same_as: str | None = None
    wikidata_id: str | None = None
    status: EntityStatus = EntityStatus.RAW
    mention_count: int = 0
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)
    id: int | None = None

    def require_id(self) -> int:
        if self.id is None:
            raise ValueError(f"Entity {self.slug!r} has not been persisted")
        return self.id

    def touch(self) -> None:
        self.updated_at = _utcnow()


@dataclass(eq=False)
class Alias:
    """Alternate surface form; the slug resolves to exactly one entity."""

    entity_id: int
    alias: str
    alias_slug: str
    source: AliasSource = AliasSource.MACHINE
    created_at: datetime = field(default_factory=_utcnow)
    id: int | None = None


@dataclass(eq=False)
class Mention:
    """Edge recording that an entity appears in a document."""

    entity_id: int
    document_id: int
    confidence: float = 0.5
    context: str = ""
    is_primary: bool = False
    created_at: datetime = field(default_factory=_utcnow)
    id: int | None = None

    def __post_init__(self) -> None:
        self.confidence = clamp_confidence(self.confidence)


@dataclass(frozen=True, slots=True)
class EntityMention:
    """Read model joining an entity with one of its mentions."""

    entity: Entity
    document_id: int
    confidence: float
    context: str
    is_primary: bool
