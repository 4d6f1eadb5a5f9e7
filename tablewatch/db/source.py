"""Row-query capability over an external source database.

``RowSource`` is the narrow interface the change-detection core consumes;
``SQLAlchemyRowSource`` implements it with SQLAlchemy Core over an
``AsyncEngine`` and reflected tables, so it works with any dialect that has
an async driver.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Protocol

import sqlalchemy as sa
from sqlalchemy.exc import NoSuchTableError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from tablewatch.db.exceptions import SourceQueryError, UnknownColumnError, UnknownTableError

logger = logging.getLogger(__name__)

OPERATORS = frozenset({"=", "!=", ">", ">=", "<", "<=", "like", "in", "is_null", "not_null"})


@dataclass(frozen=True, slots=True)
class Condition:
    """One ``column <op> value`` clause."""

    column: str
    op: str
    value: Any = None

    def __post_init__(self) -> None:
        if self.op not in OPERATORS:
            raise ValueError(f"unsupported operator: {self.op}")


@dataclass(frozen=True, slots=True)
class OrderBy:
    column: str
    descending: bool = False


@dataclass(frozen=True, slots=True)
class RowPredicate:
    """Conjunction of conditions, optionally restricted to unprocessed rows."""

    conditions: tuple[Condition, ...] = ()
    unprocessed_column: str | None = None

    def extend(self, *conditions: Condition) -> RowPredicate:
        return replace(self, conditions=self.conditions + tuple(conditions))


@dataclass(frozen=True, slots=True)
class ColumnInfo:
    name: str
    is_temporal: bool = False


class RowSource(Protocol):
    """Query capability owned by the database connectivity layer."""

    async def query_rows(
        self,
        table: str,
        predicate: RowPredicate,
        order_by: Sequence[OrderBy],
        limit: int | None,
        *,
        offset: int = 0,
        fields: Sequence[str] | None = None,
    ) -> list[dict[str, Any]]: ...

    async def mark_processed(
        self,
        table: str,
        row_ids: Sequence[Any],
        *,
        key_column: str = "id",
        processed_column: str = "processed",
        processed_at_column: str | None = "processed_at",
    ) -> int: ...

    async def list_columns(self, table: str) -> list[ColumnInfo]: ...


def _split_table_name(name: str) -> tuple[str | None, str]:
    if "." in name:
        schema, _, table = name.rpartition(".")
        return schema, table
    return None, name


def _column(table: sa.Table, name: str) -> sa.Column[Any]:
    try:
        return table.c[name]
    except KeyError as exc:
        raise UnknownColumnError(table.fullname, name) from exc


def _clause(table: sa.Table, condition: Condition) -> sa.ColumnElement[bool]:
    column = _column(table, condition.column)
    op, value = condition.op, condition.value
    if op == "=":
        return column.is_(None) if value is None else column == value
    if op == "!=":
        return column.is_not(None) if value is None else column != value
    if op == ">":
        return column > value
    if op == ">=":
        return column >= value
    if op == "<":
        return column < value
    if op == "<=":
        return column <= value
    if op == "like":
        return column.like(value)
    if op == "in":
        return column.in_(list(value))
    if op == "is_null":
        return column.is_(None)
    return column.is_not(None)


def build_select(
    table: sa.Table,
    predicate: RowPredicate,
    order_by: Sequence[OrderBy],
    limit: int | None,
    *,
    offset: int = 0,
    fields: Sequence[str] | None = None,
) -> sa.Select[Any]:
    """Build the SELECT for one ``query_rows`` call against a reflected table."""
    columns = [_column(table, name) for name in fields] if fields else [table]
    stmt = sa.select(*columns)
    clauses = [_clause(table, condition) for condition in predicate.conditions]
    if predicate.unprocessed_column is not None:
        marker = _column(table, predicate.unprocessed_column)
        clauses.append(sa.or_(marker.is_(None), marker == sa.false()))
    if clauses:
        stmt = stmt.where(sa.and_(*clauses))
    for item in order_by:
        column = _column(table, item.column)
        stmt = stmt.order_by(column.desc() if item.descending else column.asc())
    if limit is not None:
        stmt = stmt.limit(limit)
    if offset:
        stmt = stmt.offset(offset)
    return stmt


def build_mark_processed(
    table: sa.Table,
    row_ids: Sequence[Any],
    *,
    key_column: str,
    processed_column: str,
    processed_at_column: str | None,
    now: datetime,
) -> sa.Update:
    values: dict[str, Any] = {processed_column: True}
    if processed_at_column is not None and processed_at_column in table.c:
        values[processed_at_column] = now
    _column(table, processed_column)
    return sa.update(table).where(_column(table, key_column).in_(list(row_ids))).values(**values)


@dataclass
class SQLAlchemyRowSource:
    """RowSource backed by an AsyncEngine; tables are reflected once and cached."""

    engine: AsyncEngine
    _tables: dict[str, sa.Table] = field(default_factory=dict, init=False, repr=False)
    _reflect_lock: asyncio.Lock = field(default_factory=asyncio.Lock, init=False, repr=False)

    @property
    def dialect_name(self) -> str:
        return self.engine.dialect.name

    async def get_table(self, name: str) -> sa.Table:
        cached = self._tables.get(name)
        if cached is not None:
            return cached
        async with self._reflect_lock:
            cached = self._tables.get(name)
            if cached is not None:
                return cached
            schema, table_name = _split_table_name(name)

            def _reflect(sync_conn: sa.Connection) -> sa.Table:
                return sa.Table(table_name, sa.MetaData(), schema=schema, autoload_with=sync_conn)

            try:
                async with self.engine.connect() as conn:
                    table = await conn.run_sync(_reflect)
            except NoSuchTableError as exc:
                raise UnknownTableError(name) from exc
            except SQLAlchemyError as exc:
                raise SourceQueryError(name, type(exc).__name__) from exc
            self._tables[name] = table
            return table

    def forget_table(self, name: str) -> None:
        """Drop cached reflection so the next call sees schema changes."""
        self._tables.pop(name, None)

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
        reflected = await self.get_table(table)
        stmt = build_select(reflected, predicate, order_by, limit, offset=offset, fields=fields)
        try:
            async with self.engine.connect() as conn:
                result = await conn.execute(stmt)
                rows = [dict(row._mapping) for row in result]
        except SQLAlchemyError as exc:
            raise SourceQueryError(table, type(exc).__name__) from exc
        logger.debug("query on %s returned %d row(s)", table, len(rows))
        return rows

    async def mark_processed(
        self,
        table: str,
        row_ids: Sequence[Any],
        *,
        key_column: str = "id",
        processed_column: str = "processed",
        processed_at_column: str | None = "processed_at",
    ) -> int:
        ids = [row_id for row_id in row_ids if row_id is not None]
        if not ids:
            return 0
        reflected = await self.get_table(table)
        stmt = build_mark_processed(
            reflected,
            ids,
            key_column=key_column,
            processed_column=processed_column,
            processed_at_column=processed_at_column,
            now=datetime.now(timezone.utc).replace(tzinfo=None),
        )
        try:
            async with self.engine.begin() as conn:
                result = await conn.execute(stmt)
        except SQLAlchemyError as exc:
            raise SourceQueryError(table, type(exc).__name__) from exc
        logger.info("marked %d row(s) as processed in %s", len(ids), table)
        return int(result.rowcount or 0)

    async def list_columns(self, table: str) -> list[ColumnInfo]:
        reflected = await self.get_table(table)
        return [
            ColumnInfo(name=column.name, is_temporal=isinstance(column.type, (sa.DateTime, sa.Date)))
            for column in reflected.columns
        ]
