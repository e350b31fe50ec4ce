"""HTTP client for an OpenAI-compatible chat-completions endpoint."""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from logging import getLogger
from typing import TYPE_CHECKING

from pydantic import ValidationError

from entigraph.adapters.http_resilience import ResilientClient
from entigraph.config.extraction import ExtractionConfig, get_extraction_config
from entigraph.domain.errors import ExtractionError, RateLimitError

from .schema import ChatCompletionResponse, ExtractionResult
from .translator import parse_candidates

if TYPE_CHECKING:
    from collections.abc import Callable

    from entigraph.config.http_resilience import ResilienceConfig
    from entigraph.domain.model import ExtractedCandidate
    from entigraph.domain.ports import ExtractionService

log = getLogger(__name__)

CHAT_COMPLETIONS_PATH = "chat/completions"
MAX_COMPLETION_TOKENS = 4096

SYSTEM_PROMPT = """\
You are an expert knowledge graph engineer specialising in named entity recognition \
and normalisation.

RULES:
1. Extract ONLY named entities (proper nouns with a specific identity).
2. Ignore generic nouns, adjectives and common concepts.
3. Normalise names to their most complete canonical form.
4. Resolve ambiguity using the surrounding text.
5. Assign a TYPE from: PERSON, ORG, COMPANY, LOCATION, COUNTRY, PRODUCT, SOFTWARE, \
EVENT, WORK, CONCEPT.
6. Give a CONFIDENCE between 0.0 and 1.0.
7. Include a CONTEXT snippet (exact quote, at most 100 characters) showing the mention.

Respond with strict JSON only, no markdown:
{"entities": [{"name": "Canonical Name", "type": "TYPE", "confidence": 0.95, \
"context": "...snippet...", "aliases": ["alternate name"]}]}"""


def _default_client_factory(config: ResilienceConfig) -> ResilientClient:
    return ResilientClient(config)


class ExtractionAPIError(ExtractionError):
    """Raised when the extraction endpoint fails or returns an unusable payload."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass(slots=True)
class HttpEntityExtractor:
    """Extractor that keeps one client, and so one rate limiter, across calls.

    Calls run on a private event loop so the pooled connections and the
    limiter survive from one document to the next; ``close`` releases both.
    """

    config: ExtractionConfig | None = None
    client_factory: Callable[[ResilienceConfig], ResilientClient] = field(
        default=_default_client_factory
    )
    system_prompt: str = SYSTEM_PROMPT
    _runner: asyncio.Runner | None = field(default=None, init=False, repr=False)
    _client: ResilientClient | None = field(default=None, init=False, repr=False)

    def resolved_config(self) -> ExtractionConfig:
        """Return the explicit config, else read it from the environment on first use."""

        if self.config is None:
            self.config = get_extraction_config()
        return self.config

    def extract(
        self,
        text: str,
        *,
        prompt: str | None = None,
        model: str | None = None,
    ) -> list[ExtractedCandidate]:
        if not text.strip():
            return []
        config = self.resolved_config()
        if self._runner is None:
            self._runner = asyncio.Runner()
        return self._runner.run(
            self._extract_async(
                text,
                config=config,
                prompt=prompt or self.system_prompt,
                model=model or config.model,
            )
        )

    def close(self) -> None:
        if self._runner is None:
            return
        if self._client is not None:
            self._runner.run(self._client.aclose())
            self._client = None
        self._runner.close()
        self._runner = None

    async def _extract_async(
        self,
        text: str,
        *,
        config: ExtractionConfig,
        prompt: str,
        model: str,
    ) -> list[ExtractedCandidate]:
        if self._client is None:
            self._client = self.client_factory(config.resilience)
        completion = await self._perform_request(
            client=self._client, config=config, text=text, prompt=prompt, model=model
        )

        result = _parse_content(completion.content)
        candidates = parse_candidates(
            result,
            min_confidence=config.min_confidence,
            max_entities=config.max_entities,
            max_aliases=config.max_aliases,
        )
        log.debug(
            "Extracted %s candidate(s) from %s raw entities (model=%s)",
            len(candidates),
            len(result.entities),
            model,
        )
        return candidates

    async def _perform_request(
        self,
        *,
        client: ResilientClient,
        config: ExtractionConfig,
        text: str,
        prompt: str,
        model: str,
    ) -> ChatCompletionResponse:
        body = {
            "model": model,
            "messages": [
                {"role": "system", "content": prompt},
                {"role": "user", "content": text},
            ],
            "max_tokens": MAX_COMPLETION_TOKENS,
            "temperature": config.temperature,
            "response_format": {"type": "json_object"},
        }
        headers = {
            "Authorization": f"Bearer {config.api_key}",
            "X-Title": "entigraph",
        }
        response = await client.post(CHAT_COMPLETIONS_PATH, json=body, headers=headers)

        if response.status_code == 429:
            log.warning("Extraction endpoint rate limited the request")
            raise RateLimitError.from_headers(dict(response.headers))
        if response.status_code != 200:
            raise ExtractionAPIError(
                f"Extraction endpoint returned status {response.status_code}: "
                f"{response.text[:200]}",
                status_code=response.status_code,
            )

        try:
            return ChatCompletionResponse.model_validate(response.json())
        except (json.JSONDecodeError, ValidationError) as exc:
            raise ExtractionAPIError("Unexpected chat completion payload") from exc


def _parse_content(content: str | None) -> ExtractionResult:
    if not content:
        raise ExtractionAPIError("Chat completion carried no message content")
    stripped = _strip_code_fence(content)
    try:
        return ExtractionResult.model_validate(json.loads(stripped))
    except (json.JSONDecodeError, ValidationError) as exc:
        raise ExtractionAPIError("Message content is not an entities object") from exc


def _strip_code_fence(content: str) -> str:
    stripped = content.strip()
    if stripped.startswith("```"):
        stripped = stripped.split("\n", 1)[1] if "\n" in stripped else ""
        stripped = stripped.removesuffix("```").strip()
    return stripped


if TYPE_CHECKING:
    _extractor_check: ExtractionService = HttpEntityExtractor()
