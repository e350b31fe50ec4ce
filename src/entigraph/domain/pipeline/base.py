"""Shared resumable-batch contract for the six phase jobs."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from entigraph.config.pipeline import PipelineSettings
from entigraph.domain.errors import RateLimitError
from entigraph.domain.events import JobLogger, PhaseCompleted, PhaseFailed, PhaseStarted

from .state import PipelineStateRepository

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping

    from entigraph.domain.events import EventBus, PipelineEvent
    from entigraph.domain.model import Phase, PipelineState
    from entigraph.domain.ports import JsonValue, PipelineRepositories, UnitOfWorkFactory

log = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(tz=UTC)


@dataclass(slots=True)
class BatchResult:
    """Outcome of one invocation: ``done`` means the phase has no backlog left."""

    done: bool
    processed: int = 0


@dataclass(slots=True)
class BatchContext:
    """Everything a phase needs while processing one batch inside a unit of work."""

    repositories: PipelineRepositories
    states: PipelineStateRepository
    state: PipelineState
    settings: PipelineSettings
    logger: JobLogger
    now: datetime
    events: list[PipelineEvent] = field(default_factory=list)

    def start_phase(self, phase: Phase, total: int) -> None:
        """Record the phase backlog size on the first invocation of a phase."""

        self.state.progress.phase.total = total
        self.state.progress.refresh()
        self.events.append(PhaseStarted(phase=phase, total=total))
        self.logger.info("Phase started", total=total)


class PhaseJob(ABC):
    """One bounded batch per invocation, then self-reschedule or signal completion.

    Every invocation runs inside a single unit of work: cursor, accumulators,
    entity writes and the follow-up task commit together. ``RateLimitError``
    escapes so the whole invocation rolls back and the task queue retries it;
    any other error is logged and surfaces as ``PhaseFailed``.
    """

    phase: Phase

    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        events: EventBus,
        *,
        settings: PipelineSettings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.uow_factory = uow_factory
        self.events = events
        self.settings = settings or PipelineSettings()
        self.clock = clock

    @property
    def name(self) -> str:
        return self.phase.job_name

    @abstractmethod
    def process_batch(self, context: BatchContext) -> BatchResult: ...

    def __call__(self, args: Mapping[str, JsonValue] | None = None) -> None:
        _ = args
        self.run()

    def run(self) -> BatchResult | None:
        logger = JobLogger(phase=self.phase.value, logger=logging.getLogger(type(self).__module__))
        outgoing: list[PipelineEvent] = []
        result: BatchResult | None = None

        with self.uow_factory() as uow:
            repositories = uow.repositories
            states = PipelineStateRepository(repositories.state)
            state = states.load()
            if not state.is_in(self.phase):
                log.info(
                    "Ignoring %s invocation: pipeline is %s in phase %s",
                    self.phase.value,
                    state.status.value,
                    state.phase.value if state.phase else None,
                )
                return None

            context = BatchContext(
                repositories=repositories,
                states=states,
                state=state,
                settings=self.settings,
                logger=logger,
                now=self.clock(),
            )
            try:
                result = self.process_batch(context)
            except RateLimitError as exc:
                log.warning(
                    "%s hit backpressure (%s, retry after %ss)",
                    self.phase.value,
                    exc.limit_type,
                    exc.retry_after,
                )
                raise
            except Exception as exc:
                uow.rollback()
                log.exception("Phase %s failed", self.phase.value)
                logger.error("Phase failed", error=str(exc))
                outgoing.append(PhaseFailed(phase=self.phase, error=str(exc)))
            else:
                outgoing.extend(self._finish(context, result))
                uow.commit()

        outgoing.extend(logger.drain())
        self.events.publish_all(outgoing)
        return result

    def _finish(self, context: BatchContext, result: BatchResult) -> list[PipelineEvent]:
        progress = context.state.progress
        still_active: list[bool] = []

        def merge(current: PipelineState) -> PipelineState:
            if not current.is_in(self.phase):
                still_active.append(False)
                return current
            current.progress = progress
            current.last_activity = context.now
            still_active.append(True)
            return current

        context.states.update(merge)
        if not still_active[-1]:
            log.info("Pipeline left phase %s mid-batch; not rescheduling", self.phase.value)
            return list(context.events)

        events = list(context.events)
        if result.done:
            context.logger.info(
                "Phase completed",
                completed=progress.phase.completed,
                failed=progress.phase.failed,
            )
            events.append(
                PhaseCompleted(
                    phase=self.phase,
                    completed=progress.phase.completed,
                    failed=progress.phase.failed,
                )
            )
        else:
            context.repositories.tasks.schedule(
                self.phase.job_name, group=self.settings.queue_group, when=context.now
            )
        return events


def read_offset(context: BatchContext, phase: Phase) -> tuple[int, bool]:
    """Return ``(offset, first_invocation)`` for offset-cursor phases."""

    cursor = context.states.cursor(phase)
    if cursor is None:
        return 0, True
    offset = cursor.get("offset", 0)
    return (offset if isinstance(offset, int) else 0), False


def write_offset(context: BatchContext, phase: Phase, offset: int, **extra: Any) -> None:
    context.states.save_cursor(phase, {"offset": offset, **extra})
