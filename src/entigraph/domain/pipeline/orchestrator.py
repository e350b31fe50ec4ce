"""Phase state machine driving the six-phase indexing run."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import TYPE_CHECKING, Any

from entigraph.config.pipeline import PipelineSettings
from entigraph.domain.errors import PipelineAlreadyRunningError
from entigraph.domain.events import (
    PhaseCompleted,
    PhaseFailed,
    PipelineCompleted,
    PipelineFailed,
    PipelinePhaseChanged,
    PipelineStarted,
    PipelineStopped,
    redact,
)
from entigraph.domain.model import (
    PHASE_ORDER,
    TOTAL_PHASES,
    Phase,
    PipelineConfig,
    PipelineProgress,
    PipelineState,
    PipelineStatus,
)
from entigraph.domain.ports import IndexStatistics  # noqa: TC001

from .base import utcnow
from .state import PipelineStateRepository

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping

    from entigraph.domain.events import EventBus, PipelineEvent
    from entigraph.domain.ports import PipelineRepositories, UnitOfWorkFactory

log = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class PipelineStatusReport:
    status: PipelineStatus
    phase: Phase | None
    phase_number: int
    total_phases: int
    progress: PipelineProgress
    config: PipelineConfig | None
    last_activity: datetime | None
    last_error: str | None
    total_entities: int = 0
    statistics: IndexStatistics | None = None
    propagating: list[int] = field(default_factory=list)


class PipelineOrchestrator:
    """Owns pipeline status transitions; phase jobs only report progress.

    Completion is a soft barrier: ``handle_phase_complete`` advances only when
    the counters maintained by the phase job account for every item.
    """

    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        events: EventBus,
        *,
        settings: PipelineSettings | None = None,
        clock: Callable[[], datetime] = utcnow,
        propagating: Callable[[PipelineRepositories], list[int]] | None = None,
    ) -> None:
        self.uow_factory = uow_factory
        self.events = events
        self.settings = settings or PipelineSettings()
        self.clock = clock
        self._propagating = propagating
        events.subscribe(PhaseCompleted, self.handle_phase_complete)
        events.subscribe(PhaseFailed, self._on_phase_failed)

    def start(self, config: PipelineConfig | None = None) -> PipelineState:
        now = self.clock()
        requested = config or PipelineConfig()
        snapshot = replace(
            requested,
            started_at=requested.started_at or now,
            batch_size=self.settings.batch_policy.clamp(requested.batch_size),
        )

        with self.uow_factory() as uow:
            repositories = uow.repositories
            states = PipelineStateRepository(repositories.state)
            if states.load().is_running:
                raise PipelineAlreadyRunningError("Pipeline is already running")
            self._unschedule_phases(repositories)
            states.clear_run()
            state = PipelineState(
                status=PipelineStatus.RUNNING,
                phase=Phase.PREPARATION,
                progress=PipelineProgress(),
                config=snapshot,
                last_activity=now,
            )
            states.save(state)
            repositories.tasks.schedule(
                Phase.PREPARATION.job_name, group=self.settings.queue_group, when=now
            )
            uow.commit()

        log.info(
            "Pipeline started (types=%s, batch=%s, force=%s)",
            ",".join(snapshot.content_types),
            snapshot.batch_size,
            snapshot.force_reprocess,
        )
        self.events.publish_all(
            [
                PipelineStarted(config=snapshot),
                PipelinePhaseChanged(phase=Phase.PREPARATION, progress=state.progress),
            ]
        )
        return state

    def stop(self) -> PipelineState:
        """Cancel pending phase tasks; an invocation already running finishes on its own."""

        previous: list[Phase | None] = []

        def halt(current: PipelineState) -> PipelineState:
            previous.append(current.phase)
            current.status = PipelineStatus.IDLE
            current.phase = None
            current.last_activity = self.clock()
            return current

        with self.uow_factory() as uow:
            repositories = uow.repositories
            removed = self._unschedule_phases(repositories)
            state = PipelineStateRepository(repositories.state).update(halt)
            uow.commit()

        log.info("Pipeline stopped; removed %s pending task(s)", removed)
        self.events.publish(PipelineStopped(previous_phase=previous[-1]))
        return state

    def advance_phase(self) -> PipelineState:
        events: list[PipelineEvent] = []

        def step(current: PipelineState) -> PipelineState:
            events.clear()
            if not current.is_running or current.phase is None:
                return current
            following = current.phase.next()
            current.last_activity = self.clock()
            if following is None:
                current.status = PipelineStatus.COMPLETED
                current.phase = None
                current.progress.eta_seconds = 0.0
                current.progress.refresh()
                events.append(PipelineCompleted(progress=current.progress))
                return current
            current.phase = following
            current.progress.reset_phase()
            current.progress.eta_seconds = None
            events.append(PipelinePhaseChanged(phase=following, progress=current.progress))
            return current

        with self.uow_factory() as uow:
            repositories = uow.repositories
            state = PipelineStateRepository(repositories.state).update(step)
            if state.is_running and state.phase is not None and events:
                repositories.tasks.schedule(
                    state.phase.job_name, group=self.settings.queue_group, when=self.clock()
                )
            uow.commit()

        if not events:
            log.warning("advance_phase ignored: pipeline is %s", state.status.value)
        elif state.status is PipelineStatus.COMPLETED:
            log.info("Pipeline completed")
        else:
            log.info(
                "Advanced to phase %s (%s/%s)",
                state.phase.value if state.phase else None,
                state.phase.number if state.phase else TOTAL_PHASES,
                TOTAL_PHASES,
            )
        self.events.publish_all(events)
        return state

    def handle_phase_complete(self, event: PhaseCompleted | None = None) -> bool:
        """Advance when the current phase has accounted for all of its items."""

        with self.uow_factory() as uow:
            state = PipelineStateRepository(uow.repositories.state).load()

        if not state.is_running or state.phase is None:
            return False
        if event is not None and event.phase is not state.phase:
            log.debug("Ignoring completion of %s while in %s", event.phase, state.phase)
            return False
        phase_progress = state.progress.phase
        if not phase_progress.is_finished:
            log.warning(
                "Phase %s signalled completion with %s/%s items accounted; not advancing",
                state.phase.value,
                phase_progress.accounted,
                phase_progress.total,
            )
            return False
        self.advance_phase()
        return True

    def fail(
        self,
        reason: str,
        *,
        phase: Phase | None = None,
        context: Mapping[str, Any] | None = None,
    ) -> PipelineState:
        failed_phase: list[Phase | None] = []

        def mark_failed(current: PipelineState) -> PipelineState:
            failed_phase.append(phase or current.phase)
            current.status = PipelineStatus.FAILED
            current.last_error = reason
            current.last_activity = self.clock()
            return current

        with self.uow_factory() as uow:
            repositories = uow.repositories
            self._unschedule_phases(repositories)
            state = PipelineStateRepository(repositories.state).update(mark_failed)
            uow.commit()

        safe_context = redact(context or {})
        log.error("Pipeline failed in phase %s: %s %s", failed_phase[-1], reason, safe_context)
        self.events.publish(
            PipelineFailed(reason=reason, phase=failed_phase[-1], context=safe_context)
        )
        return state

    def status(self) -> PipelineStatusReport:
        with self.uow_factory() as uow:
            repositories = uow.repositories
            states = PipelineStateRepository(repositories.state)
            state = states.load()
            statistics = states.index_statistics()
            total_entities = repositories.entities.count_entities()
            propagating = self._propagating(repositories) if self._propagating else []

        return PipelineStatusReport(
            status=state.status,
            phase=state.phase,
            phase_number=state.phase.number if state.phase else 0,
            total_phases=TOTAL_PHASES,
            progress=state.progress,
            config=state.config,
            last_activity=state.last_activity,
            last_error=state.last_error,
            total_entities=total_entities,
            statistics=statistics,
            propagating=propagating,
        )

    def _on_phase_failed(self, event: PhaseFailed) -> None:
        self.fail(event.error, phase=event.phase)

    def _unschedule_phases(self, repositories: PipelineRepositories) -> int:
        return sum(repositories.tasks.unschedule_all(phase.job_name) for phase in PHASE_ORDER)
