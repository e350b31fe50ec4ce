"""Pipeline state, progress counters and propagation markers."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from .enums import Phase, PipelineStatus

EMA_ALPHA = 0.3


def _percentage(done: int, total: int) -> float:
    if total <= 0:
        return 0.0
    return round(min(done / total, 1.0) * 100, 2)


@dataclass(slots=True)
class PhaseProgress:
    """Counters scoped to the current phase.

    ``completed`` counts every handled item, including skipped ones, so that
    ``completed + failed`` reaches ``total`` once the phase has seen each item.
    """

    total: int = 0
    completed: int = 0
    failed: int = 0
    skipped: int = 0
    percentage: float = 0.0

    @property
    def accounted(self) -> int:
        return self.completed + self.failed

    @property
    def is_finished(self) -> bool:
        return self.accounted >= self.total

    def refresh(self) -> None:
        self.percentage = _percentage(self.accounted, self.total)


@dataclass(slots=True)
class PipelineProgress:
    total: int = 0
    completed: int = 0
    failed: int = 0
    skipped: int = 0
    percentage: float = 0.0
    phase: PhaseProgress = field(default_factory=PhaseProgress)
    eta_seconds: float | None = None
    avg_process_time: float = 0.0
    current_batch: int = 0
    total_batches: int = 0

    def reset_phase(self) -> None:
        self.phase = PhaseProgress()
        self.current_batch = 0
        self.total_batches = 0

    @property
    def accounted(self) -> int:
        return self.completed + self.failed + self.skipped

    def record(self, *, completed: int = 0, failed: int = 0, skipped: int = 0) -> None:
        """Add item outcomes at both pipeline and phase granularity."""

        self.completed += completed
        self.failed += failed
        self.skipped += skipped
        self.phase.completed += completed + skipped
        self.phase.failed += failed
        self.phase.skipped += skipped
        self.refresh()

    def record_phase(self, *, completed: int = 0, failed: int = 0, skipped: int = 0) -> None:
        """Add outcomes for items that are not pipeline-level documents."""

        self.phase.completed += completed + skipped
        self.phase.failed += failed
        self.phase.skipped += skipped
        self.refresh()

    def observe_timing(self, seconds_per_item: float) -> None:
        if self.avg_process_time <= 0:
            self.avg_process_time = seconds_per_item
        else:
            self.avg_process_time = (
                EMA_ALPHA * seconds_per_item + (1 - EMA_ALPHA) * self.avg_process_time
            )
        remaining = max(self.phase.total - self.phase.accounted, 0)
        self.eta_seconds = round(self.avg_process_time * remaining, 2)

    def refresh(self) -> None:
        self.percentage = _percentage(self.accounted, self.total)
        self.phase.refresh()


@dataclass(frozen=True, slots=True)
class PipelineConfig:
    """Configuration snapshot captured when a run starts."""

    content_types: tuple[str, ...] = ("post", "page")
    batch_size: int = 5
    force_reprocess: bool = False
    started_at: datetime | None = None
    started_by: str | None = None


@dataclass(slots=True)
class PipelineState:
    status: PipelineStatus = PipelineStatus.IDLE
    phase: Phase | None = None
    progress: PipelineProgress = field(default_factory=PipelineProgress)
    config: PipelineConfig | None = None
    last_activity: datetime | None = None
    last_error: str | None = None

    @property
    def is_running(self) -> bool:
        return self.status is PipelineStatus.RUNNING

    def is_in(self, phase: Phase) -> bool:
        return self.is_running and self.phase is phase


@dataclass(slots=True)
class PropagationMarker:
    """Per-entity propagation status stored with a time-to-live."""

    entity_id: int
    started_at: datetime
    last_document_id: int = 0
    updated_at: datetime | None = None
    rounds: int = 0
    failures: int = 0
