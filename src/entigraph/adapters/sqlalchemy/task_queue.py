"""Durable task queue stored in the ``scheduled_task`` table."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from sqlalchemy import delete, insert, select, update

from entigraph.adapters.sqlalchemy.mappings import scheduled_task_table
from entigraph.config.pipeline import QUEUE_GROUP
from entigraph.domain.ports import ScheduledTask

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping

    from sqlalchemy import Row
    from sqlalchemy.orm import Session

    from entigraph.domain.ports import JsonValue

log = logging.getLogger(__name__)

PENDING = "pending"
RUNNING = "running"
FAILED = "failed"


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


class SqlAlchemyTaskQueue:
    def __init__(self, session: Session, *, clock: Callable[[], datetime] = _utcnow) -> None:
        self.session = session
        self._clock = clock

    def schedule(
        self,
        job_name: str,
        args: Mapping[str, JsonValue] | None = None,
        *,
        when: datetime | None = None,
        group: str | None = None,
    ) -> int:
        now = self._clock()
        result = self.session.execute(
            insert(scheduled_task_table).values(
                job_name=job_name,
                args=dict(args or {}),
                group_name=group or QUEUE_GROUP,
                run_at=when or now,
                attempts=0,
                status=PENDING,
                created_at=now,
            )
        )
        task_id = result.inserted_primary_key[0]  # pyright: ignore[reportOptionalSubscript]
        log.debug("Scheduled %s #%s args=%s", job_name, task_id, dict(args or {}))
        return int(task_id)

    def unschedule_all(
        self,
        job_name: str,
        args_filter: Mapping[str, JsonValue] | None = None,
    ) -> int:
        stmt = (
            select(scheduled_task_table.c.id, scheduled_task_table.c.args)
            .where(scheduled_task_table.c.job_name == job_name)
            .where(scheduled_task_table.c.status == PENDING)
        )
        doomed = [
            task_id
            for task_id, args in self.session.execute(stmt)
            if _matches(args, args_filter)
        ]
        if doomed:
            self.session.execute(
                delete(scheduled_task_table).where(scheduled_task_table.c.id.in_(doomed))
            )
        return len(doomed)

    def pending(self, job_name: str | None = None) -> list[ScheduledTask]:
        stmt = (
            select(scheduled_task_table)
            .where(scheduled_task_table.c.status == PENDING)
            .order_by(scheduled_task_table.c.run_at.asc(), scheduled_task_table.c.id.asc())
        )
        if job_name is not None:
            stmt = stmt.where(scheduled_task_table.c.job_name == job_name)
        return [_to_task(row) for row in self.session.execute(stmt)]

    def claim_next(self, now: datetime) -> ScheduledTask | None:
        """Mark the oldest due task as running and return it."""

        stmt = (
            select(scheduled_task_table)
            .where(scheduled_task_table.c.status == PENDING)
            .where(scheduled_task_table.c.run_at <= now)
            .order_by(scheduled_task_table.c.run_at.asc(), scheduled_task_table.c.id.asc())
            .limit(1)
        )
        row = self.session.execute(stmt).first()
        if row is None:
            return None
        claimed = self.session.execute(
            update(scheduled_task_table)
            .where(scheduled_task_table.c.id == row.id)
            .where(scheduled_task_table.c.status == PENDING)
            .values(status=RUNNING, attempts=scheduled_task_table.c.attempts + 1)
        )
        if not claimed.rowcount:  # pyright: ignore[reportAttributeAccessIssue]
            return None
        task = _to_task(row)
        return ScheduledTask(
            id=task.id,
            job_name=task.job_name,
            run_at=task.run_at,
            args=task.args,
            group=task.group,
            attempts=task.attempts + 1,
        )

    def complete(self, task_id: int) -> None:
        self.session.execute(
            delete(scheduled_task_table).where(scheduled_task_table.c.id == task_id)
        )

    def retry(self, task_id: int, *, when: datetime, error: str) -> None:
        self.session.execute(
            update(scheduled_task_table)
            .where(scheduled_task_table.c.id == task_id)
            .values(status=PENDING, run_at=when, last_error=error)
        )

    def fail(self, task_id: int, *, error: str) -> None:
        self.session.execute(
            update(scheduled_task_table)
            .where(scheduled_task_table.c.id == task_id)
            .values(status=FAILED, last_error=error)
        )


def _matches(
    args: Mapping[str, JsonValue] | None,
    args_filter: Mapping[str, JsonValue] | None,
) -> bool:
    if not args_filter:
        return True
    current = args or {}
    return all(current.get(name) == value for name, value in args_filter.items())


def _to_task(row: Row[tuple[object, ...]]) -> ScheduledTask:
    mapping = row._mapping  # pyright: ignore[reportPrivateUsage]
    return ScheduledTask(
        id=mapping["id"],
        job_name=mapping["job_name"],
        run_at=mapping["run_at"],
        args=dict(mapping["args"] or {}),
        group=mapping["group_name"],
        attempts=mapping["attempts"],
    )
