from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

import pytest

from entigraph.domain.errors import RateLimitError
from entigraph.domain.pipeline import Worker

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping

    from entigraph.adapters.sqlalchemy.unit_of_work import SqlAlchemyUnitOfWork
    from entigraph.domain.ports import JsonValue

START = datetime(2026, 5, 1, 12, 0, tzinfo=UTC)


class MutableClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock() -> MutableClock:
    return MutableClock(START)


def _schedule(
    uow_factory: Callable[[], SqlAlchemyUnitOfWork],
    job_name: str,
    args: Mapping[str, JsonValue] | None = None,
) -> int:
    with uow_factory() as uow:
        task_id = uow.repositories.tasks.schedule(job_name, args, when=START)
        uow.commit()
    return task_id


def _pending_run_at(uow_factory: Callable[[], SqlAlchemyUnitOfWork]) -> list[datetime]:
    with uow_factory() as uow:
        return [task.run_at for task in uow.repositories.tasks.pending()]


def test_run_pending_dispatches_by_job_name(
    sqlite_unit_of_work: Callable[[], SqlAlchemyUnitOfWork],
    clock: MutableClock,
) -> None:
    seen: list[tuple[str, dict[str, JsonValue]]] = []
    _schedule(sqlite_unit_of_work, "job.a", {"n": 1})
    _schedule(sqlite_unit_of_work, "job.b", {"n": 2})
    worker = Worker(
        sqlite_unit_of_work,
        {
            "job.a": lambda args: seen.append(("a", dict(args))),
            "job.b": lambda args: seen.append(("b", dict(args))),
        },
        clock=clock,
    )

    assert worker.run_pending() == 2

    assert seen == [("a", {"n": 1}), ("b", {"n": 2})]
    assert _pending_run_at(sqlite_unit_of_work) == []


def test_run_pending_respects_limit(
    sqlite_unit_of_work: Callable[[], SqlAlchemyUnitOfWork],
    clock: MutableClock,
) -> None:
    for _ in range(3):
        _schedule(sqlite_unit_of_work, "job.a")
    worker = Worker(sqlite_unit_of_work, {"job.a": lambda _: None}, clock=clock)

    assert worker.run_pending(limit=2) == 2
    assert len(_pending_run_at(sqlite_unit_of_work)) == 1


def test_failing_task_backs_off_then_fails(
    sqlite_unit_of_work: Callable[[], SqlAlchemyUnitOfWork],
    clock: MutableClock,
) -> None:
    calls: list[int] = []

    def explode(_: Mapping[str, JsonValue]) -> None:
        calls.append(1)
        raise RuntimeError("boom")

    _schedule(sqlite_unit_of_work, "job.a")
    worker = Worker(sqlite_unit_of_work, {"job.a": explode}, clock=clock)

    assert worker.run_pending() == 1
    assert _pending_run_at(sqlite_unit_of_work) == [START + timedelta(seconds=5)]
    assert worker.run_pending() == 0

    clock.advance(5)
    worker.run_pending()
    assert _pending_run_at(sqlite_unit_of_work) == [clock.now + timedelta(seconds=10)]

    clock.advance(10)
    worker.run_pending()

    assert len(calls) == 3
    assert _pending_run_at(sqlite_unit_of_work) == []
    clock.advance(3600)
    assert worker.run_pending() == 0


def test_rate_limit_waits_at_least_retry_after(
    sqlite_unit_of_work: Callable[[], SqlAlchemyUnitOfWork],
    clock: MutableClock,
) -> None:
    def throttled(_: Mapping[str, JsonValue]) -> None:
        raise RateLimitError(retry_after=45)

    _schedule(sqlite_unit_of_work, "job.a")
    worker = Worker(sqlite_unit_of_work, {"job.a": throttled}, clock=clock)

    worker.run_pending()

    assert _pending_run_at(sqlite_unit_of_work) == [START + timedelta(seconds=45)]


def test_unknown_job_fails_without_retry(
    sqlite_unit_of_work: Callable[[], SqlAlchemyUnitOfWork],
    clock: MutableClock,
) -> None:
    _schedule(sqlite_unit_of_work, "job.unknown")
    worker = Worker(sqlite_unit_of_work, {}, clock=clock)

    assert worker.run_pending() == 1
    assert _pending_run_at(sqlite_unit_of_work) == []


def test_run_forever_sleeps_until_stopped(
    sqlite_unit_of_work: Callable[[], SqlAlchemyUnitOfWork],
    clock: MutableClock,
) -> None:
    sleeps: list[float] = []
    _schedule(sqlite_unit_of_work, "job.a")
    worker = Worker(
        sqlite_unit_of_work,
        {"job.a": lambda _: None},
        clock=clock,
        sleep=sleeps.append,
    )

    total = worker.run_forever(poll_interval=0.5, should_stop=lambda: len(sleeps) >= 2)

    assert total == 1
    assert sleeps == [0.5, 0.5]


def test_run_forever_stops_when_idle(
    sqlite_unit_of_work: Callable[[], SqlAlchemyUnitOfWork],
    clock: MutableClock,
) -> None:
    ran: list[int] = []

    def chain(args: Mapping[str, JsonValue]) -> None:
        step = int(str(args["step"]))
        ran.append(step)
        if step < 3:
            _schedule(sqlite_unit_of_work, "job.chain", {"step": step + 1})

    _schedule(sqlite_unit_of_work, "job.chain", {"step": 1})
    worker = Worker(sqlite_unit_of_work, {"job.chain": chain}, clock=clock)

    assert worker.run_forever(stop_when_idle=True) == 3
    assert ran == [1, 2, 3]
