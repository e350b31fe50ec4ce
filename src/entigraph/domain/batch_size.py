"""Adaptive batch sizing from observed throughput."""

from __future__ import annotations

import logging
import math
from collections import deque
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from entigraph.config.pipeline import BatchSizePolicy

if TYPE_CHECKING:
    from entigraph.domain.ports import JsonValue

log = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class BatchSizeStatistics:
    current_size: int
    samples: int
    average_seconds_per_item: float
    recommended_size: int


@dataclass(slots=True)
class BatchSizeController:
    """Keeps the batch size inside ``[policy.minimum, policy.maximum]``.

    Seconds-per-item samples are smoothed over a rolling window. When the
    smoothed figure is below ``fast_threshold`` the size grows by ``step``;
    above ``slow_threshold`` it shrinks by ``step``; otherwise it is kept.
    """

    policy: BatchSizePolicy = field(default_factory=BatchSizePolicy)
    current: int = 0
    history: deque[float] = field(default_factory=deque)

    def __post_init__(self) -> None:
        self.current = self.policy.clamp(self.current or self.policy.minimum)
        self.history = deque(self.history, maxlen=self.policy.history_size)

    def next_size(self, seconds_per_item: float, current: int | None = None) -> int:
        """Pure policy step for one seconds-per-item estimate."""

        size = self.policy.clamp(current if current is not None else self.current)
        if seconds_per_item < self.policy.fast_threshold:
            return min(size + self.policy.step, self.policy.maximum)
        if seconds_per_item > self.policy.slow_threshold:
            return max(size - self.policy.step, self.policy.minimum)
        return size

    def update_from_result(self, elapsed_seconds: float, item_count: int) -> int:
        """Record a finished batch and return the size to use next."""

        if item_count <= 0:
            return self.current
        self.history.append(max(elapsed_seconds, 0.0) / item_count)
        previous = self.current
        self.current = self.next_size(self.rolling_average())
        if self.current != previous:
            log.debug(
                "Batch size adjusted %s -> %s (avg %.3fs/item)",
                previous,
                self.current,
                self.rolling_average(),
            )
        return self.current

    def rolling_average(self) -> float:
        if not self.history:
            return self.policy.target_seconds / self.policy.minimum
        return sum(self.history) / len(self.history)

    def optimal_size(self, seconds_per_item: float) -> int:
        """Size that would make one batch take roughly ``target_seconds``."""

        if seconds_per_item <= 0:
            return self.policy.maximum
        return self.policy.clamp(math.floor(self.policy.target_seconds / seconds_per_item))

    def reset(self) -> int:
        """Drop history and fall back to the minimum size after repeated failures."""

        self.history.clear()
        self.current = self.policy.minimum
        return self.current

    def statistics(self) -> BatchSizeStatistics:
        average = self.rolling_average()
        return BatchSizeStatistics(
            current_size=self.current,
            samples=len(self.history),
            average_seconds_per_item=round(average, 4),
            recommended_size=self.optimal_size(average),
        )

    def to_state(self) -> dict[str, JsonValue]:
        return {"current": self.current, "history": list(self.history)}

    @classmethod
    def from_state(
        cls,
        state: JsonValue,
        *,
        policy: BatchSizePolicy | None = None,
        default_size: int | None = None,
    ) -> BatchSizeController:
        effective_policy = policy or BatchSizePolicy()
        if not isinstance(state, dict):
            return cls(policy=effective_policy, current=default_size or 0)
        current = state.get("current")
        raw_history = state.get("history")
        samples: list[float] = []
        if isinstance(raw_history, list):
            samples = [float(value) for value in raw_history if isinstance(value, int | float)]
        return cls(
            policy=effective_policy,
            current=current if isinstance(current, int) else (default_size or 0),
            history=deque(samples),
        )
