from __future__ import annotations

from entigraph.domain.model import PhaseProgress, PipelineProgress


def test_percentage_counts_failed_documents_as_handled() -> None:
    progress = PipelineProgress(total=4)

    progress.record(completed=2, failed=2)

    assert progress.percentage == 100.0


def test_percentage_includes_skipped_documents() -> None:
    progress = PipelineProgress(total=8)

    progress.record(completed=1, failed=1, skipped=2)

    assert progress.accounted == 4
    assert progress.percentage == 50.0


def test_phase_outcomes_leave_pipeline_percentage_alone() -> None:
    progress = PipelineProgress(total=10, phase=PhaseProgress(total=4))

    progress.record_phase(completed=1, failed=1)

    assert progress.percentage == 0.0
    assert progress.phase.percentage == 50.0


def test_percentage_is_capped_and_zero_without_total() -> None:
    empty = PipelineProgress()
    empty.record(completed=3)
    assert empty.percentage == 0.0

    overflow = PipelineProgress(total=2)
    overflow.record(completed=2, failed=1)
    assert overflow.percentage == 100.0
