"""Audit records for merge decisions."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime

from .enums import MergeReason


@dataclass(eq=False)
class EntityMerge:
    """Audit record pointing a merged-away entity at the entity that absorbed it.

    The records form a forest: following ``source_id -> target_id`` from any
    merged id ends at the surviving canonical entity.
    """

    source_id: int
    target_id: int
    reason: MergeReason = MergeReason.MANUAL
    source_name: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(tz=UTC))
    created_by: str | None = None
    id: int | None = None
