"""Pipeline, batching, and queue defaults."""

from __future__ import annotations

import os
from dataclasses import dataclass, field

from .env import optional_env_int

QUEUE_GROUP = "entigraph-index"

DEFAULT_CONTENT_TYPES: tuple[str, ...] = ("post", "page")
DEFAULT_BATCH_SIZE = 5

MIN_CONTENT_LENGTH = 50
MAX_CONTENT_LENGTH = 10_000
MAX_CONTEXT_LENGTH = 500

PREPARATION_BATCH_SIZE = 100
DEDUPLICATION_BATCH_SIZE = 100
LINKING_BATCH_SIZE = 100
INDEXING_BATCH_SIZE = 100
MATERIALIZATION_BATCH_SIZE = 50

PROPAGATION_BATCH_SIZE = 50
PROPAGATION_TTL_SECONDS = 3600
PROPAGATION_MARKER_PREFIX = "propagating_"

DEFAULT_SITE_URL = "https://example.org"


@dataclass(frozen=True, slots=True)
class BatchSizePolicy:
    minimum: int = 5
    maximum: int = 50
    target_seconds: float = 5.0
    fast_threshold: float = 2.0
    slow_threshold: float = 10.0
    step: int = 5
    history_size: int = 10

    def clamp(self, size: int) -> int:
        return max(self.minimum, min(self.maximum, size))


@dataclass(frozen=True, slots=True)
class ConfidenceThresholds:
    high: float = 0.85
    medium: float = 0.60
    low: float = 0.40
    materialization_minimum: float = 0.60


@dataclass(frozen=True, slots=True)
class QueueRetryPolicy:
    """Retry budget applied by the worker when a task raises."""

    attempts: int = 3
    backoff_multiplier: float = 2.0
    base_delay_seconds: float = 5.0

    def delay_for(self, attempt: int) -> float:
        return self.base_delay_seconds * self.backoff_multiplier ** max(attempt - 1, 0)


@dataclass(frozen=True, slots=True)
class PipelineSettings:
    content_types: tuple[str, ...] = DEFAULT_CONTENT_TYPES
    batch_size: int = DEFAULT_BATCH_SIZE
    min_content_length: int = MIN_CONTENT_LENGTH
    max_content_length: int = MAX_CONTENT_LENGTH
    max_context_length: int = MAX_CONTEXT_LENGTH
    preparation_batch_size: int = PREPARATION_BATCH_SIZE
    deduplication_batch_size: int = DEDUPLICATION_BATCH_SIZE
    linking_batch_size: int = LINKING_BATCH_SIZE
    indexing_batch_size: int = INDEXING_BATCH_SIZE
    materialization_batch_size: int = MATERIALIZATION_BATCH_SIZE
    propagation_batch_size: int = PROPAGATION_BATCH_SIZE
    propagation_ttl_seconds: int = PROPAGATION_TTL_SECONDS
    queue_group: str = QUEUE_GROUP
    site_url: str = DEFAULT_SITE_URL
    batch_policy: BatchSizePolicy = field(default_factory=BatchSizePolicy)
    confidence: ConfidenceThresholds = field(default_factory=ConfidenceThresholds)
    retry: QueueRetryPolicy = field(default_factory=QueueRetryPolicy)


def get_pipeline_settings() -> PipelineSettings:
    return PipelineSettings(
        site_url=(os.getenv("ENTIGRAPH_SITE_URL") or DEFAULT_SITE_URL).rstrip("/"),
        batch_size=optional_env_int("ENTIGRAPH_BATCH_SIZE", DEFAULT_BATCH_SIZE),
        propagation_batch_size=optional_env_int(
            "ENTIGRAPH_PROPAGATION_BATCH_SIZE", PROPAGATION_BATCH_SIZE
        ),
    )
