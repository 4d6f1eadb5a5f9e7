"""Adaptive polling interval policy."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

from tablewatch.config.models import PollingConfig, TableConfig


@dataclass(slots=True)
class AdaptiveInterval:
    """Inter-poll delay that shrinks on activity and backs off when idle.

    ``min_ms <= current_ms <= max_ms`` holds after every mutation.
    """

    min_ms: float
    base_ms: float
    max_ms: float
    current_ms: float = 0.0
    shrink_factor: float = 0.5
    growth_factor: float = 1.5
    empty_polls_before_backoff: int = 3
    consecutive_empty_polls: int = 0
    consecutive_active_polls: int = 0

    def __post_init__(self) -> None:
        if not self.min_ms <= self.max_ms:
            raise ValueError("min interval must not exceed max interval")
        self.base_ms = self.clamp(self.base_ms)
        self.current_ms = self.clamp(self.current_ms or self.base_ms)

    @classmethod
    def from_config(cls, polling: PollingConfig, table: TableConfig | None = None) -> AdaptiveInterval:
        min_ms = (table.min_interval_ms if table else None) or polling.min_interval_ms
        base_ms = (table.base_interval_ms if table else None) or polling.base_interval_ms
        max_ms = (table.max_interval_ms if table else None) or polling.max_interval_ms
        return cls(
            min_ms=float(min_ms),
            base_ms=float(base_ms),
            max_ms=float(max(max_ms, min_ms)),
            shrink_factor=polling.shrink_factor,
            growth_factor=polling.growth_factor,
            empty_polls_before_backoff=polling.empty_polls_before_backoff,
        )

    def clamp(self, value: float) -> float:
        return min(self.max_ms, max(self.min_ms, value))

    def record_poll(self, change_count: int) -> float:
        if change_count > 0:
            self.consecutive_active_polls += 1
            self.consecutive_empty_polls = 0
            self.current_ms = self.clamp(self.current_ms * self.shrink_factor)
        else:
            self.consecutive_empty_polls += 1
            self.consecutive_active_polls = 0
            if self.consecutive_empty_polls >= self.empty_polls_before_backoff:
                self.current_ms = self.clamp(self.current_ms * self.growth_factor)
        return self.current_ms

    def record_error(self) -> float:
        # failures neither speed up nor slow down polling
        return self.current_ms

    def apply_requested(self, requested_ms: Iterable[float]) -> float:
        """Lower the interval to the fastest rate any subscriber asked for."""
        floor = min([float(value) for value in requested_ms if value and value > 0] + [self.current_ms])
        self.current_ms = self.clamp(floor)
        return self.current_ms

    @property
    def current_seconds(self) -> float:
        return self.current_ms / 1000.0
