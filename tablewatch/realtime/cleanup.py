"""Pluggable cleanup strategies for CDC batch mode.

A strategy decides which rows a poll may return (``scope``) and what happens
to them once a batch has been delivered (``after_delivery``). The scheduler
only talks to this interface.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Sequence
from typing import Any

from tablewatch.db.source import Condition, RowPredicate
from tablewatch.realtime.catalog import TableBinding
from tablewatch.realtime.errors import JobConfigurationError
from tablewatch.realtime.models import ChangeEvent

logger = logging.getLogger(__name__)


class CleanupStrategy(ABC):
    name: str

    @abstractmethod
    def scope(self, base: RowPredicate, watch_column: str, cursor: Any) -> RowPredicate: ...

    @abstractmethod
    async def after_delivery(self, binding: TableBinding, events: Sequence[ChangeEvent]) -> None: ...


class TimeBasedCleanup(CleanupStrategy):
    """Rows already returned fall behind the cursor; nothing to clean up."""

    name = "time-based"

    def scope(self, base: RowPredicate, watch_column: str, cursor: Any) -> RowPredicate:
        if cursor is None:
            return base
        return base.extend(Condition(column=watch_column, op=">", value=cursor))

    async def after_delivery(self, binding: TableBinding, events: Sequence[ChangeEvent]) -> None:
        return None


class ProcessedMarkerCleanup(CleanupStrategy):
    """Select unprocessed rows regardless of the cursor, then flag them processed.

    Tolerates rows that arrive late with timestamps older than the cursor.
    """

    name = "processed-marker"

    def __init__(self, processed_column: str = "processed", processed_at_column: str | None = "processed_at") -> None:
        self.processed_column = processed_column
        self.processed_at_column = processed_at_column

    def scope(self, base: RowPredicate, watch_column: str, cursor: Any) -> RowPredicate:  # noqa: ARG002
        return RowPredicate(conditions=base.conditions, unprocessed_column=self.processed_column)

    async def after_delivery(self, binding: TableBinding, events: Sequence[ChangeEvent]) -> None:
        key_column = binding.config.key_column
        ids = [event.record.get(key_column) for event in events]
        ids = [row_id for row_id in ids if row_id is not None]
        if len(ids) < len(events):
            logger.warning(
                "%d row(s) from %s have no %s value and cannot be marked processed",
                len(events) - len(ids),
                binding.table,
                key_column,
            )
        if not ids:
            return
        await binding.source.mark_processed(
            binding.table,
            ids,
            key_column=key_column,
            processed_column=self.processed_column,
            processed_at_column=self.processed_at_column,
        )


def build_cleanup_strategy(binding: TableBinding) -> CleanupStrategy:
    """Strategy for a table; processed-marker only applies in CDC mode."""
    config = binding.config
    if not config.cdc_mode or config.cleanup_strategy == "time-based":
        return TimeBasedCleanup()
    if config.cleanup_strategy == "processed-marker":
        return ProcessedMarkerCleanup(config.processed_column, config.processed_at_column)
    raise JobConfigurationError(f"unknown cleanup strategy: {config.cleanup_strategy}")
