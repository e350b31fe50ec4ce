"""Domain model for canonical entities and pipeline state."""

from __future__ import annotations

from .audit import EntityMerge
from .candidates import CanonicalRecord, ExtractedCandidate, PreparedDocument
from .document import PUBLISHED, Document, RenderedDocument
from .entity import Alias, Entity, EntityMention, Mention, clamp_confidence
from .enums import (
    HIDDEN_STATUSES,
    PHASE_ORDER,
    TOTAL_PHASES,
    TYPE_SYNONYMS,
    AliasSource,
    EntityStatus,
    EntityType,
    MergeReason,
    Phase,
    PipelineStatus,
)
from .pipeline import (
    PhaseProgress,
    PipelineConfig,
    PipelineProgress,
    PipelineState,
    PropagationMarker,
)

__all__ = [
    "HIDDEN_STATUSES",
    "PHASE_ORDER",
    "PUBLISHED",
    "TOTAL_PHASES",
    "TYPE_SYNONYMS",
    "Alias",
    "AliasSource",
    "CanonicalRecord",
    "Document",
    "Entity",
    "EntityMention",
    "EntityMerge",
    "EntityStatus",
    "EntityType",
    "ExtractedCandidate",
    "Mention",
    "MergeReason",
    "Phase",
    "PhaseProgress",
    "PipelineConfig",
    "PipelineProgress",
    "PipelineState",
    "PipelineStatus",
    "PreparedDocument",
    "PropagationMarker",
    "RenderedDocument",
    "clamp_confidence",
]
