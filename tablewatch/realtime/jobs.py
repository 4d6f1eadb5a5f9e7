"""Polling job state and construction."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field

from tablewatch.config.models import PollingConfig
from tablewatch.db.exceptions import DatabaseError, UnknownTableError
from tablewatch.realtime.catalog import EntityCatalog, TableBinding
from tablewatch.realtime.cleanup import CleanupStrategy, ProcessedMarkerCleanup, build_cleanup_strategy
from tablewatch.realtime.cursor import CursorTracker
from tablewatch.realtime.detector import resolve_watch_column
from tablewatch.realtime.errors import InvalidFiltersError, JobConfigurationError
from tablewatch.realtime.filters import QueryFilters
from tablewatch.realtime.interval import AdaptiveInterval
from tablewatch.realtime.models import PollingJobKey, TriggerMode

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class PollingJob:
    """One deduplicated unit of recurring change detection for a (table, filters) pair."""

    key: PollingJobKey
    binding: TableBinding
    filters: QueryFilters
    mode: TriggerMode
    watch_column: str
    interval: AdaptiveInterval
    batch_size: int
    cleanup: CleanupStrategy
    timezone_offset_minutes: int = 0
    next_run_at: float = 0.0
    triggers_enabled: bool = False
    closed: bool = False
    failed_reason: str | None = None
    tick_lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    @property
    def cdc_mode(self) -> bool:
        return self.binding.config.cdc_mode


def job_key_for(service_name: str, entity_name: str, filters: QueryFilters) -> PollingJobKey:
    return PollingJobKey(service_name=service_name, entity_name=entity_name, filters=filters.canonical())


class JobFactory:
    """Build PollingJobs, failing fast on anything that would never poll successfully."""

    def __init__(
        self,
        catalog: EntityCatalog,
        cursors: CursorTracker,
        polling: PollingConfig | Callable[[], PollingConfig],
    ) -> None:
        self._catalog = catalog
        self._cursors = cursors
        self._polling = polling

    def _polling_config(self) -> PollingConfig:
        return self._polling() if callable(self._polling) else self._polling

    async def create(self, key: PollingJobKey, filters: QueryFilters) -> PollingJob:
        polling = self._polling_config()
        binding = self._catalog.resolve(key.service_name, key.entity_name)
        try:
            columns = await binding.source.list_columns(binding.table)
        except UnknownTableError as exc:
            raise JobConfigurationError(str(exc)) from exc
        except DatabaseError as exc:
            raise JobConfigurationError(f"cannot read schema of '{binding.table}': {exc}") from exc

        names = {column.name for column in columns}
        referenced = [*filters.fields, *(s.column for s in filters.sort), *(c.column for c in filters.filter)]
        missing = sorted({name for name in referenced if name not in names})
        if missing:
            raise InvalidFiltersError(f"unknown column(s) in filters for '{binding.table}': {', '.join(missing)}")

        mode = TriggerMode(binding.config.trigger_mode)
        explicit = binding.config.date_column if mode is TriggerMode.NEW_ROW else binding.config.monitor_column
        watch_column = resolve_watch_column(binding.table, mode, explicit, columns)

        cleanup = build_cleanup_strategy(binding)
        if isinstance(cleanup, ProcessedMarkerCleanup) and cleanup.processed_column not in names:
            raise JobConfigurationError(
                f"processed-marker cleanup needs column '{cleanup.processed_column}' on '{binding.table}'"
            )

        config = binding.config
        batch_size = config.batch_size or (polling.cdc_batch_size if config.cdc_mode else polling.batch_size)
        self._cursors.seed(key, config.timezone_offset_minutes, lookback_seconds=polling.initial_lookback_seconds)
        job = PollingJob(
            key=key,
            binding=binding,
            filters=filters,
            mode=mode,
            watch_column=watch_column,
            interval=AdaptiveInterval.from_config(polling, config),
            batch_size=batch_size,
            cleanup=cleanup,
            timezone_offset_minutes=config.timezone_offset_minutes,
        )
        logger.info(
            "created polling job %s (mode=%s column=%s batch=%d cleanup=%s)",
            key,
            mode.value,
            watch_column,
            batch_size,
            cleanup.name,
        )
        return job
