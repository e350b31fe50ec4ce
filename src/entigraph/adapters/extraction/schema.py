"""Pydantic models for the chat-completions payload and the extracted entities."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ExtractionBaseModel(BaseModel):
    model_config = ConfigDict(extra="ignore")


class ChatMessage(ExtractionBaseModel):
    role: str = "assistant"
    content: str | None = None


class ChatChoice(ExtractionBaseModel):
    index: int = 0
    message: ChatMessage
    finish_reason: str | None = None


class ChatUsage(ExtractionBaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class ChatCompletionResponse(ExtractionBaseModel):
    id: str | None = None
    model: str | None = None
    choices: list[ChatChoice] = Field(default_factory=list["ChatChoice"])
    usage: ChatUsage | None = None

    @property
    def content(self) -> str | None:
        if not self.choices:
            return None
        return self.choices[0].message.content


class EntityPayload(ExtractionBaseModel):
    name: str
    type: str | None = None
    confidence: float = 0.0
    context: str = ""
    aliases: list[str] = Field(default_factory=list)

    @field_validator("name")
    @classmethod
    def _require_name(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("entity name is blank")
        return stripped

    @field_validator("confidence", mode="before")
    @classmethod
    def _coerce_confidence(cls, value: object) -> object:
        if isinstance(value, bool) or not isinstance(value, int | float | str):
            return 0.0
        try:
            return float(value)
        except ValueError:
            return 0.0

    @field_validator("context", mode="before")
    @classmethod
    def _coerce_context(cls, value: object) -> object:
        return value if isinstance(value, str) else ""

    @field_validator("aliases", mode="before")
    @classmethod
    def _coerce_aliases(cls, value: object) -> object:
        if not isinstance(value, list):
            return []
        return [item for item in value if isinstance(item, str)]


class ExtractionResult(ExtractionBaseModel):
    """Top-level JSON object the model is instructed to return."""

    entities: list[object]
