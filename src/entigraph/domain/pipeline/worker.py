"""Long-running loop that executes due tasks from the durable queue."""

from __future__ import annotations

import logging
import time
from datetime import timedelta
from typing import TYPE_CHECKING

from entigraph.config.pipeline import QueueRetryPolicy
from entigraph.domain.errors import RateLimitError

from .base import utcnow

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping
    from datetime import datetime

    from entigraph.domain.ports import JsonValue, ScheduledTask, UnitOfWorkFactory

log = logging.getLogger(__name__)

type JobHandler = Callable[[Mapping[str, JsonValue]], None]


class Worker:
    """Claims due tasks in ``(run_at, id)`` order and dispatches them by job name.

    A handler that raises gets its task re-queued with exponential backoff
    until the retry budget is spent; rate-limit errors wait at least their
    ``retry_after``.
    """

    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        handlers: Mapping[str, JobHandler],
        *,
        retry: QueueRetryPolicy | None = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.uow_factory = uow_factory
        self.handlers = dict(handlers)
        self.retry = retry or QueueRetryPolicy()
        self.clock = clock
        self.sleep = sleep

    def run_pending(self, *, limit: int | None = None) -> int:
        """Execute every task that is due now; return how many ran."""

        executed = 0
        while limit is None or executed < limit:
            task = self._claim()
            if task is None:
                break
            self._execute(task)
            executed += 1
        return executed

    def run_forever(
        self,
        *,
        poll_interval: float = 1.0,
        stop_when_idle: bool = False,
        should_stop: Callable[[], bool] | None = None,
    ) -> int:
        total = 0
        while should_stop is None or not should_stop():
            executed = self.run_pending()
            total += executed
            if executed:
                continue
            if stop_when_idle:
                break
            self.sleep(poll_interval)
        log.info("Worker stopped after %s task(s)", total)
        return total

    def _claim(self) -> ScheduledTask | None:
        with self.uow_factory() as uow:
            task = uow.repositories.tasks.claim_next(self.clock())
            uow.commit()
        return task

    def _execute(self, task: ScheduledTask) -> None:
        handler = self.handlers.get(task.job_name)
        if handler is None:
            log.error("No handler registered for %s (task %s)", task.job_name, task.id)
            with self.uow_factory() as uow:
                uow.repositories.tasks.fail(task.id, error=f"unknown job {task.job_name}")
                uow.commit()
            return

        log.debug("Running %s (task %s, attempt %s)", task.job_name, task.id, task.attempts)
        try:
            handler(task.args)
        except Exception as exc:
            self._reschedule(task, exc)
            return

        with self.uow_factory() as uow:
            uow.repositories.tasks.complete(task.id)
            uow.commit()

    def _reschedule(self, task: ScheduledTask, error: Exception) -> None:
        message = f"{type(error).__name__}: {error}"
        with self.uow_factory() as uow:
            tasks = uow.repositories.tasks
            if task.attempts >= self.retry.attempts:
                log.error(
                    "Task %s (%s) failed after %s attempt(s): %s",
                    task.id,
                    task.job_name,
                    task.attempts,
                    message,
                )
                tasks.fail(task.id, error=message)
            else:
                delay = self.retry.delay_for(task.attempts)
                if isinstance(error, RateLimitError):
                    delay = max(delay, float(error.retry_after))
                log.warning(
                    "Task %s (%s) attempt %s failed, retrying in %.0fs: %s",
                    task.id,
                    task.job_name,
                    task.attempts,
                    delay,
                    message,
                )
                tasks.retry(task.id, when=self.clock() + timedelta(seconds=delay), error=message)
            uow.commit()
