"""Source documents consumed by the pipeline and their rendered output."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

PUBLISHED = "publish"


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


@dataclass(eq=False)
class Document:
    id: int
    title: str
    body: str
    content_type: str = "post"
    status: str = PUBLISHED
    url: str | None = None
    extracted_at: datetime | None = None
    updated_at: datetime = field(default_factory=_utcnow)

    @property
    def is_published(self) -> bool:
        return self.status == PUBLISHED


@dataclass(eq=False)
class RenderedDocument:
    """Cached external representation of a document."""

    document_id: int
    payload: dict[str, Any]
    rendered_at: datetime = field(default_factory=_utcnow)
