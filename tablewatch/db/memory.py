"""In-memory row source for local testing and CI.

Drop-in replacement for :class:`SQLAlchemyRowSource` that keeps each table as
a list of dicts. Column types are declared up front so watch-column
resolution behaves as it would against a reflected table.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Sequence
from datetime import datetime, timezone
from functools import cmp_to_key
from typing import Any

from tablewatch.db.exceptions import UnknownColumnError, UnknownTableError
from tablewatch.db.source import ColumnInfo, Condition, OrderBy, RowPredicate

logger = logging.getLogger(__name__)


def _like(value: Any, pattern: Any) -> bool:
    if value is None:
        return False
    regex = "^" + re.escape(str(pattern)).replace("%", ".*").replace("_", ".") + "$"
    return re.match(regex, str(value), re.DOTALL) is not None


def _holds(row: dict[str, Any], condition: Condition) -> bool:
    actual = row.get(condition.column)
    op, value = condition.op, condition.value
    if op == "is_null" or (op == "=" and value is None):
        return actual is None
    if op == "not_null" or (op == "!=" and value is None):
        return actual is not None
    if op == "in":
        return actual in list(value)
    if op == "like":
        return _like(actual, value)
    # SQL semantics: comparisons against NULL are never true
    if actual is None:
        return False
    if op == "=":
        return actual == value
    if op == "!=":
        return actual != value
    if op == ">":
        return actual > value
    if op == ">=":
        return actual >= value
    if op == "<":
        return actual < value
    return actual <= value


def _compare(left: dict[str, Any], right: dict[str, Any], order_by: Sequence[OrderBy]) -> int:
    for item in order_by:
        a, b = left.get(item.column), right.get(item.column)
        if a == b:
            continue
        # NULLs sort last ascending, first descending (Postgres default)
        if a is None:
            result = 1
        elif b is None:
            result = -1
        else:
            result = -1 if a < b else 1
        return -result if item.descending else result
    return 0


class InMemoryRowSource:
    """RowSource over plain Python lists; not thread-safe, not persistent."""

    def __init__(self) -> None:
        self._rows: dict[str, list[dict[str, Any]]] = {}
        self._columns: dict[str, dict[str, bool]] = {}
        self.fail_with: Exception | None = None
        self.query_count = 0

    def create_table(self, name: str, columns: dict[str, bool] | Sequence[str]) -> None:
        """Declare a table; ``columns`` maps names to "is a date/time column"."""
        declared = dict(columns) if isinstance(columns, dict) else {column: False for column in columns}
        self._columns[name] = declared
        self._rows.setdefault(name, [])

    def insert(self, table: str, *rows: dict[str, Any]) -> None:
        target = self._table(table)
        for row in rows:
            self._check_columns(table, row)
            target.append({column: row.get(column) for column in self._columns[table]})

    def update(self, table: str, row_id: Any, changes: dict[str, Any], *, key_column: str = "id") -> bool:
        self._check_columns(table, changes)
        for row in self._table(table):
            if row.get(key_column) == row_id:
                row.update(changes)
                return True
        return False

    def delete(self, table: str, row_id: Any, *, key_column: str = "id") -> bool:
        rows = self._table(table)
        for index, row in enumerate(rows):
            if row.get(key_column) == row_id:
                del rows[index]
                return True
        return False

    def drop_column(self, table: str, column: str) -> None:
        """Remove a column from the schema and from every stored row."""
        self._column(table, column)
        del self._columns[table][column]
        for row in self._table(table):
            row.pop(column, None)

    def drop_table(self, table: str) -> None:
        self._table(table)
        del self._rows[table]
        del self._columns[table]

    def rows(self, table: str) -> list[dict[str, Any]]:
        return [dict(row) for row in self._table(table)]

    async def query_rows(
        self,
        table: str,
        predicate: RowPredicate,
        order_by: Sequence[OrderBy],
        limit: int | None,
        *,
        offset: int = 0,
        fields: Sequence[str] | None = None,
    ) -> list[dict[str, Any]]:
        self.query_count += 1
        self._raise_injected()
        rows = self._table(table)
        referenced = [c.column for c in predicate.conditions] + [o.column for o in order_by] + list(fields or ())
        if predicate.unprocessed_column is not None:
            referenced.append(predicate.unprocessed_column)
        for column in referenced:
            self._column(table, column)

        selected = [row for row in rows if all(_holds(row, condition) for condition in predicate.conditions)]
        if predicate.unprocessed_column is not None:
            marker = predicate.unprocessed_column
            selected = [row for row in selected if row.get(marker) in (None, False)]
        if order_by:
            selected.sort(key=cmp_to_key(lambda a, b: _compare(a, b, order_by)))
        selected = selected[offset:]
        if limit is not None:
            selected = selected[:limit]
        if fields:
            return [{column: row.get(column) for column in fields} for row in selected]
        return [dict(row) for row in selected]

    async def mark_processed(
        self,
        table: str,
        row_ids: Sequence[Any],
        *,
        key_column: str = "id",
        processed_column: str = "processed",
        processed_at_column: str | None = "processed_at",
    ) -> int:
        self._raise_injected()
        rows = self._table(table)
        self._column(table, processed_column)
        wanted = {row_id for row_id in row_ids if row_id is not None}
        stamp_column = processed_at_column if processed_at_column in self._columns[table] else None
        now = datetime.now(timezone.utc).replace(tzinfo=None)
        marked = 0
        for row in rows:
            if row.get(key_column) in wanted:
                row[processed_column] = True
                if stamp_column is not None:
                    row[stamp_column] = now
                marked += 1
        logger.info("marked %d row(s) as processed in %s", marked, table)
        return marked

    async def list_columns(self, table: str) -> list[ColumnInfo]:
        self._raise_injected()
        self._table(table)
        return [ColumnInfo(name=name, is_temporal=temporal) for name, temporal in self._columns[table].items()]

    def _raise_injected(self) -> None:
        if self.fail_with is not None:
            raise self.fail_with

    def _table(self, name: str) -> list[dict[str, Any]]:
        rows = self._rows.get(name)
        if rows is None:
            raise UnknownTableError(name)
        return rows

    def _column(self, table: str, column: str) -> None:
        if column not in self._columns[table]:
            raise UnknownColumnError(table, column)

    def _check_columns(self, table: str, row: dict[str, Any]) -> None:
        self._table(table)
        for column in row:
            self._column(table, column)

