"""Error taxonomy shared by the pipeline, propagation and adapters."""

from __future__ import annotations

import re
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Mapping

DEFAULT_RETRY_AFTER_SECONDS = 60
_RATE_LIMIT_PATTERN = re.compile(r"rate limit|429|too many requests", re.IGNORECASE)


class PipelineError(RuntimeError):
    """Base class for pipeline failures."""


class PipelineAlreadyRunningError(PipelineError):
    """Raised when ``start`` is called while a run is in progress."""


class ConcurrentUpdateError(PipelineError):
    """Raised when an optimistic read-modify-write keeps losing the race."""


class ExtractionError(PipelineError):
    """Raised when the extraction service fails for a single document."""


class RateLimitError(ExtractionError):
    """Backpressure from an upstream service; the whole invocation is retried later."""

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        *,
        retry_after: int = DEFAULT_RETRY_AFTER_SECONDS,
        limit_type: str = "requests",
    ) -> None:
        super().__init__(message)
        self.retry_after = retry_after
        self.limit_type = limit_type

    @classmethod
    def from_headers(cls, headers: Mapping[str, str], message: str | None = None) -> RateLimitError:
        """Build the error from ``Retry-After`` / ``X-RateLimit-*`` response headers."""

        lowered = {key.lower(): value for key, value in headers.items()}
        retry_after = _parse_seconds(lowered.get("retry-after"))
        if retry_after is None:
            retry_after = _parse_seconds(lowered.get("x-ratelimit-reset-requests"))
        limit_type = "tokens" if lowered.get("x-ratelimit-remaining-tokens") == "0" else "requests"
        return cls(
            message or "Rate limit exceeded",
            retry_after=retry_after if retry_after is not None else DEFAULT_RETRY_AFTER_SECONDS,
            limit_type=limit_type,
        )


def is_rate_limit(error: BaseException) -> bool:
    """Classify an error as backpressure, by type or by message."""

    if isinstance(error, RateLimitError):
        return True
    return bool(_RATE_LIMIT_PATTERN.search(str(error)))


def _parse_seconds(raw: str | None) -> int | None:
    if raw is None:
        return None
    match = re.match(r"\s*(\d+(?:\.\d+)?)", raw)
    if match is None:
        return None
    return max(int(float(match.group(1))), 1)


class EntityNotFoundError(LookupError):
    """Raised when an entity id does not resolve to a stored entity."""

    def __init__(self, entity_id: int) -> None:
        super().__init__(f"Entity {entity_id} not found")
        self.entity_id = entity_id


class InvalidEntityUpdateError(ValueError):
    """Raised when an entity update carries unknown fields or invalid values."""


class MentionNotFoundError(LookupError):
    """Raised when a mention id does not resolve to a stored mention."""

    def __init__(self, mention_id: int) -> None:
        super().__init__(f"Mention {mention_id} not found")
        self.mention_id = mention_id
