"""Public interface for the entity extraction adapter."""

from __future__ import annotations

from .client import SYSTEM_PROMPT, ExtractionAPIError, HttpEntityExtractor
from .schema import ChatCompletionResponse, EntityPayload, ExtractionResult
from .translator import parse_candidate, parse_candidates

__all__ = [
    "SYSTEM_PROMPT",
    "ChatCompletionResponse",
    "EntityPayload",
    "ExtractionAPIError",
    "ExtractionResult",
    "HttpEntityExtractor",
    "parse_candidate",
    "parse_candidates",
]
