"""Port for the durable task queue that drives batch jobs."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import Mapping
    from datetime import datetime

    from .state import JsonValue


@dataclass(frozen=True, slots=True)
class ScheduledTask:
    id: int
    job_name: str
    run_at: datetime
    args: dict[str, JsonValue] = field(default_factory=dict)
    group: str = ""
    attempts: int = 0


@runtime_checkable
class TaskQueue(Protocol):
    """At-least-once queue: a task stays owned by the worker until completed or failed."""

    def schedule(
        self,
        job_name: str,
        args: Mapping[str, JsonValue] | None = None,
        *,
        when: datetime | None = None,
        group: str | None = None,
    ) -> int: ...

    def unschedule_all(
        self,
        job_name: str,
        args_filter: Mapping[str, JsonValue] | None = None,
    ) -> int: ...

    def pending(self, job_name: str | None = None) -> list[ScheduledTask]: ...

    def claim_next(self, now: datetime) -> ScheduledTask | None: ...

    def complete(self, task_id: int) -> None: ...

    def retry(self, task_id: int, *, when: datetime, error: str) -> None: ...

    def fail(self, task_id: int, *, error: str) -> None: ...
