"""Extraction service configuration values."""

from __future__ import annotations

import os
from dataclasses import dataclass

from .env import require_env_vars
from .http_resilience import RateLimit, ResilienceConfig

EXTRACTION_BASE_URL = "https://openrouter.ai/api/v1/"
EXTRACTION_DEFAULT_MODEL = "openai/gpt-4o-mini"
EXTRACTION_TIMEOUT_SECONDS = 60.0

MIN_CANDIDATE_CONFIDENCE = 0.4
MAX_ENTITIES_PER_DOCUMENT = 50
MAX_ALIASES_PER_CANDIDATE = 20


@dataclass(frozen=True)
class ExtractionConfig:
    """Holds extraction API configuration values."""

    api_key: str
    model: str
    resilience: ResilienceConfig
    min_confidence: float = MIN_CANDIDATE_CONFIDENCE
    max_entities: int = MAX_ENTITIES_PER_DOCUMENT
    max_aliases: int = MAX_ALIASES_PER_CANDIDATE
    temperature: float = 0.1


def get_extraction_config(*, resilience: ResilienceConfig | None = None) -> ExtractionConfig:
    values = require_env_vars(("EXTRACTION_API_KEY",))
    base_url = os.getenv("EXTRACTION_BASE_URL") or EXTRACTION_BASE_URL
    return ExtractionConfig(
        api_key=values["EXTRACTION_API_KEY"],
        model=os.getenv("EXTRACTION_MODEL") or EXTRACTION_DEFAULT_MODEL,
        resilience=resilience
        or ResilienceConfig(
            name="extraction",
            base_url=base_url,
            timeout_seconds=EXTRACTION_TIMEOUT_SECONDS,
            ratelimit=RateLimit(max_calls=2, per_seconds=1.0),
        ),
    )
