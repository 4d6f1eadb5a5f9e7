"""Change detection: one bounded query per poll cycle."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from tablewatch.db.exceptions import DatabaseError, SourceQueryError, UnknownColumnError, UnknownTableError
from tablewatch.db.source import ColumnInfo, OrderBy
from tablewatch.realtime.catalog import TableBinding
from tablewatch.realtime.cursor import CursorTracker, normalize_watermark
from tablewatch.realtime.errors import JobConfigurationError, UnresolvableColumnError
from tablewatch.realtime.filters import is_identifier
from tablewatch.realtime.models import ChangeEvent, ChangeOperation, TriggerMode

if TYPE_CHECKING:
    from tablewatch.realtime.jobs import PollingJob

logger = logging.getLogger(__name__)

NEW_ROW_COLUMN_CANDIDATES: tuple[str, ...] = (
    "dateAdded",
    "created_at",
    "created_date",
    "CreatedAt",
    "CreatedDate",
    "DateCreated",
    "created",
    "create_time",
    "insert_date",
    "InsertDate",
    "timestamp",
)

UPDATED_ROW_COLUMN_CANDIDATES: tuple[str, ...] = (
    "dateLstMod",
    "updated_at",
    "updated_date",
    "modified_at",
    "modified_date",
    "last_modified",
    "UpdatedAt",
    "UpdatedDate",
    "ModifiedAt",
    "ModifiedDate",
    "DateModified",
    "DateUpdated",
    "LastModified",
    "update_time",
    "modify_time",
    "change_date",
    "timestamp",
)


def resolve_watch_column(
    table: str,
    mode: TriggerMode,
    explicit: str | None,
    columns: Sequence[ColumnInfo],
) -> str:
    """Pick the column whose value drives the cursor for ``mode``.

    An explicit column must exist on the table. Otherwise the first known
    timestamp name for the mode wins, then the first date/time typed column.
    """
    by_lower = {column.name.lower(): column.name for column in columns}
    if explicit:
        if not is_identifier(explicit):
            raise JobConfigurationError(f"invalid column name: {explicit!r}")
        actual = by_lower.get(explicit.lower())
        if actual is None:
            raise JobConfigurationError(f"column '{explicit}' does not exist on '{table}'")
        return actual
    candidates = NEW_ROW_COLUMN_CANDIDATES if mode is TriggerMode.NEW_ROW else UPDATED_ROW_COLUMN_CANDIDATES
    for candidate in candidates:
        actual = by_lower.get(candidate.lower())
        if actual is not None:
            return actual
    for column in columns:
        if column.is_temporal:
            return column.name
    raise UnresolvableColumnError(table, mode.value)


async def _missing_watch_column(binding: TableBinding, column: str) -> str | None:
    """Re-read the table schema after a failed query; describe the problem if the watch column is gone."""
    forget = getattr(binding.source, "forget_table", None)
    if forget is not None:
        forget(binding.table)
    try:
        columns = await binding.source.list_columns(binding.table)
    except UnknownTableError as exc:
        return str(exc)
    except DatabaseError as exc:
        logger.debug("schema re-check for %s failed: %s", binding.table, exc)
        return None
    if column not in {info.name for info in columns}:
        return f"column '{column}' no longer exists on '{binding.table}'"
    return None


def _latest(values: list[Any], offset_minutes: int) -> Any:
    present = [value for value in values if value is not None]
    if not present:
        return None
    try:
        return max(present, key=lambda value: normalize_watermark(value, offset_minutes))
    except TypeError:
        return present[-1]


@dataclass(slots=True)
class Detection:
    """Result of one poll; nothing is committed until the scheduler says so."""

    events: list[ChangeEvent] = field(default_factory=list)
    cursor_candidate: Any = None


class ChangeDetector:
    """Produce the next batch of ChangeEvents for a job without double-reporting."""

    def __init__(self, cursors: CursorTracker) -> None:
        self._cursors = cursors

    @property
    def cursors(self) -> CursorTracker:
        return self._cursors

    async def detect(self, job: PollingJob) -> Detection:
        cursor = self._cursors.get(job.key)
        predicate = job.cleanup.scope(job.filters.predicate(), job.watch_column, cursor)
        try:
            rows = await job.binding.source.query_rows(
                job.binding.table,
                predicate,
                [OrderBy(column=job.watch_column)],
                job.batch_size,
            )
        except (UnknownTableError, UnknownColumnError) as exc:
            raise JobConfigurationError(str(exc)) from exc
        except SourceQueryError as exc:
            missing = await _missing_watch_column(job.binding, job.watch_column)
            if missing is not None:
                raise JobConfigurationError(missing) from exc
            raise
        if not rows:
            return Detection()
        operation = ChangeOperation.INSERT if job.mode is TriggerMode.NEW_ROW else ChangeOperation.UPDATE
        detected_at = datetime.now(timezone.utc)
        events = [
            ChangeEvent(
                operation=operation,
                record=row,
                source_cursor_value=row.get(job.watch_column),
                detected_at=detected_at,
            )
            for row in rows
        ]
        candidate = _latest([event.source_cursor_value for event in events], job.timezone_offset_minutes)
        logger.debug("%s: %d change(s), cursor candidate %r", job.key, len(events), candidate)
        return Detection(events=events, cursor_candidate=candidate)
