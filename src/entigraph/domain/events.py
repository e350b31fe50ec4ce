"""Typed domain events and an in-process event bus."""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping

    from entigraph.domain.model import Phase, PipelineConfig, PipelineProgress

log = logging.getLogger(__name__)

SENSITIVE_KEYS: frozenset[str] = frozenset(
    {"api_key", "password", "secret", "token", "key", "authorization"}
)
REDACTED = "***REDACTED***"


@dataclass(frozen=True, slots=True)
class PipelineStarted:
    config: PipelineConfig


@dataclass(frozen=True, slots=True)
class PipelineStopped:
    previous_phase: Phase | None


@dataclass(frozen=True, slots=True)
class PipelinePhaseChanged:
    phase: Phase
    progress: PipelineProgress


@dataclass(frozen=True, slots=True)
class PipelineCompleted:
    progress: PipelineProgress


@dataclass(frozen=True, slots=True)
class PipelineFailed:
    reason: str
    phase: Phase | None = None
    context: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class PhaseStarted:
    phase: Phase
    total: int


@dataclass(frozen=True, slots=True)
class PhaseCompleted:
    phase: Phase
    completed: int
    failed: int


@dataclass(frozen=True, slots=True)
class PhaseFailed:
    phase: Phase
    error: str


@dataclass(frozen=True, slots=True)
class EntityPropagationComplete:
    entity_id: int
    rounds: int
    failures: int


@dataclass(frozen=True, slots=True)
class JobLog:
    phase: str
    level: int
    message: str
    context: Mapping[str, Any] = field(default_factory=dict)


type PipelineEvent = (
    PipelineStarted
    | PipelineStopped
    | PipelinePhaseChanged
    | PipelineCompleted
    | PipelineFailed
    | PhaseStarted
    | PhaseCompleted
    | PhaseFailed
    | EntityPropagationComplete
    | JobLog
)

type Handler = Callable[[Any], None]


class EventBus:
    """Synchronous publish/subscribe keyed by event class."""

    def __init__(self) -> None:
        self._handlers: dict[type[Any], list[Handler]] = defaultdict(list)

    def subscribe[TEvent](
        self,
        event_type: type[TEvent],
        handler: Callable[[TEvent], None],
    ) -> Callable[[], None]:
        """Register ``handler`` and return a callable that removes it again."""

        self._handlers[event_type].append(handler)

        def unsubscribe() -> None:
            handlers = self._handlers.get(event_type, [])
            if handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    def publish(self, event: PipelineEvent) -> None:
        for handler in tuple(self._handlers.get(type(event), ())):
            handler(event)

    def publish_all(self, events: list[PipelineEvent]) -> None:
        for event in events:
            self.publish(event)


def redact(context: Mapping[str, Any]) -> dict[str, Any]:
    """Copy ``context`` with sensitive values masked, recursing into mappings."""

    cleaned: dict[str, Any] = {}
    for name, value in context.items():
        if name.lower() in SENSITIVE_KEYS:
            cleaned[name] = REDACTED
        elif isinstance(value, dict):
            cleaned[name] = redact(value)  # pyright: ignore[reportUnknownArgumentType]
        else:
            cleaned[name] = value
    return cleaned


@dataclass(slots=True)
class JobLogger:
    """Writes to standard logging and records ``JobLog`` events for later publication."""

    phase: str
    logger: logging.Logger = field(default_factory=lambda: log)
    events: list[PipelineEvent] = field(default_factory=list)

    def log(self, level: int, message: str, **context: Any) -> None:
        safe = redact(context)
        if safe:
            self.logger.log(level, "[%s] %s %s", self.phase, message, safe)
        else:
            self.logger.log(level, "[%s] %s", self.phase, message)
        self.events.append(JobLog(phase=self.phase, level=level, message=message, context=safe))

    def debug(self, message: str, **context: Any) -> None:
        self.log(logging.DEBUG, message, **context)

    def info(self, message: str, **context: Any) -> None:
        self.log(logging.INFO, message, **context)

    def warning(self, message: str, **context: Any) -> None:
        self.log(logging.WARNING, message, **context)

    def error(self, message: str, **context: Any) -> None:
        self.log(logging.ERROR, message, **context)

    def drain(self) -> list[PipelineEvent]:
        drained = list(self.events)
        self.events.clear()
        return drained
