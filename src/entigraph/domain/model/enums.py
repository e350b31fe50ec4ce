"""Domain enums (pure, dependency-light)."""

from __future__ import annotations

from enum import StrEnum


class EntityType(StrEnum):
    PERSON = "PERSON"
    ORG = "ORG"
    COMPANY = "COMPANY"
    LOCATION = "LOCATION"
    COUNTRY = "COUNTRY"
    PRODUCT = "PRODUCT"
    SOFTWARE = "SOFTWARE"
    EVENT = "EVENT"
    WORK = "WORK"
    CONCEPT = "CONCEPT"

    @classmethod
    def coerce(cls, value: str | None) -> EntityType:
        """Map free-form type labels onto the closed set, defaulting to CONCEPT."""

        if not value:
            return cls.CONCEPT
        label = value.strip().upper().replace(" ", "_")
        if label in cls.__members__:
            return cls[label]
        return TYPE_SYNONYMS.get(label, cls.CONCEPT)


TYPE_SYNONYMS: dict[str, EntityType] = {
    "PEOPLE": EntityType.PERSON,
    "INDIVIDUAL": EntityType.PERSON,
    "ORGANIZATION": EntityType.ORG,
    "ORGANISATION": EntityType.ORG,
    "INSTITUTION": EntityType.ORG,
    "CORPORATION": EntityType.COMPANY,
    "BUSINESS": EntityType.COMPANY,
    "BRAND": EntityType.COMPANY,
    "PLACE": EntityType.LOCATION,
    "CITY": EntityType.LOCATION,
    "REGION": EntityType.LOCATION,
    "GPE": EntityType.LOCATION,
    "NATION": EntityType.COUNTRY,
    "STATE": EntityType.COUNTRY,
    "APP": EntityType.SOFTWARE,
    "APPLICATION": EntityType.SOFTWARE,
    "TOOL": EntityType.SOFTWARE,
    "LIBRARY": EntityType.SOFTWARE,
    "FRAMEWORK": EntityType.SOFTWARE,
    "BOOK": EntityType.WORK,
    "MOVIE": EntityType.WORK,
    "FILM": EntityType.WORK,
    "SONG": EntityType.WORK,
    "ALBUM": EntityType.WORK,
    "CONFERENCE": EntityType.EVENT,
    "FESTIVAL": EntityType.EVENT,
    "TOPIC": EntityType.CONCEPT,
    "IDEA": EntityType.CONCEPT,
}


class EntityStatus(StrEnum):
    RAW = "raw"
    REVIEWED = "reviewed"
    CANONICAL = "canonical"
    TRASH = "trash"
    REJECTED = "rejected"


HIDDEN_STATUSES: frozenset[EntityStatus] = frozenset({EntityStatus.TRASH, EntityStatus.REJECTED})


class AliasSource(StrEnum):
    MACHINE = "machine"
    MANUAL = "manual"


class MergeReason(StrEnum):
    DEDUPLICATION = "deduplication"
    MANUAL = "manual"


class PipelineStatus(StrEnum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"


class Phase(StrEnum):
    PREPARATION = "preparation"
    EXTRACTION = "extraction"
    DEDUPLICATION = "deduplication"
    LINKING = "linking"
    INDEXING = "indexing"
    MATERIALIZATION = "materialization"

    @property
    def number(self) -> int:
        return PHASE_ORDER.index(self) + 1

    @property
    def job_name(self) -> str:
        return f"entigraph.phase.{self.value}"

    def next(self) -> Phase | None:
        """Return the following phase, or ``None`` after the last one."""

        position = PHASE_ORDER.index(self) + 1
        return PHASE_ORDER[position] if position < len(PHASE_ORDER) else None


PHASE_ORDER: tuple[Phase, ...] = tuple(Phase)
TOTAL_PHASES = len(PHASE_ORDER)
