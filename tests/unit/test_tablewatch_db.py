"""Unit tests for the source database layer (engines, query building, row sources)."""

from __future__ import annotations

from collections.abc import AsyncIterator
from datetime import datetime
from pathlib import Path

import pytest
import pytest_asyncio
import sqlalchemy as sa
from sqlalchemy.dialects import sqlite
from sqlalchemy.ext.asyncio import AsyncEngine

from tablewatch.db import (
    ConfigurationError,
    InMemoryRowSource,
    SQLAlchemyRowSource,
    SourceQueryError,
    UnknownColumnError,
    UnknownTableError,
    build_select,
    create_engine,
    normalize_url,
)
from tablewatch.db.source import Condition, OrderBy, RowPredicate

_metadata = sa.MetaData()
_orders = sa.Table(
    "orders",
    _metadata,
    sa.Column("id", sa.Integer, primary_key=True),
    sa.Column("status", sa.String(20)),
    sa.Column("created_at", sa.DateTime),
    sa.Column("processed", sa.Boolean),
    sa.Column("processed_at", sa.DateTime),
)


def _sql(stmt: sa.Select) -> str:
    return str(stmt.compile(dialect=sqlite.dialect(), compile_kwargs={"literal_binds": True}))


@pytest.mark.parametrize(
    ("url", "expected"),
    [
        ("postgresql://u:p@db/shop", "postgresql+asyncpg://u:p@db/shop"),
        ("postgres://db/shop", "postgresql+asyncpg://db/shop"),
        (" sqlite+aiosqlite:///x.db ", "sqlite+aiosqlite:///x.db"),
    ],
)
def test_normalize_url(url: str, expected: str) -> None:
    assert normalize_url(url) == expected


@pytest.mark.parametrize("url", ["", "   ", "mysql://db/shop", "not a url"])
def test_normalize_url_rejects(url: str) -> None:
    with pytest.raises(ConfigurationError):
        normalize_url(url)


def test_build_select_with_predicate_order_and_paging() -> None:
    predicate = RowPredicate(
        conditions=(Condition("status", "=", "open"), Condition("created_at", "is_null")),
        unprocessed_column="processed",
    )
    sql = _sql(build_select(_orders, predicate, [OrderBy("id", descending=True)], 10, offset=20, fields=["id"]))
    assert sql.startswith("SELECT orders.id \nFROM orders")
    assert "orders.status = 'open'" in sql
    assert "orders.created_at IS NULL" in sql
    assert "orders.processed IS NULL OR orders.processed = " in sql
    assert "ORDER BY orders.id DESC" in sql
    assert "LIMIT 10 OFFSET 20" in sql


def test_build_select_null_equality_uses_is() -> None:
    sql = _sql(build_select(_orders, RowPredicate((Condition("status", "!=", None),)), [], None))
    assert "orders.status IS NOT NULL" in sql


def test_build_select_unknown_column() -> None:
    with pytest.raises(UnknownColumnError):
        build_select(_orders, RowPredicate((Condition("colour", "=", "red"),)), [], None)


def test_condition_rejects_unknown_operator() -> None:
    with pytest.raises(ValueError):
        Condition("status", "~", "open")


@pytest_asyncio.fixture
async def sqlite_engine(tmp_path: Path) -> AsyncIterator[AsyncEngine]:
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'shop.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(_metadata.create_all)
        await conn.execute(
            sa.insert(_orders),
            [
                {"id": 1, "status": "open", "created_at": datetime(2025, 1, 1), "processed": False},
                {"id": 2, "status": "paid", "created_at": datetime(2025, 1, 2), "processed": None},
                {"id": 3, "status": "open", "created_at": datetime(2025, 1, 3), "processed": True},
            ],
        )
    yield engine
    await engine.dispose()


@pytest.mark.asyncio
async def test_sqlalchemy_source_queries_reflected_table(sqlite_engine: AsyncEngine) -> None:
    source = SQLAlchemyRowSource(sqlite_engine)
    rows = await source.query_rows(
        "orders",
        RowPredicate((Condition("created_at", ">", datetime(2025, 1, 1)),)),
        [OrderBy("created_at")],
        None,
        fields=["id", "created_at"],
    )
    assert rows == [
        {"id": 2, "created_at": datetime(2025, 1, 2)},
        {"id": 3, "created_at": datetime(2025, 1, 3)},
    ]
    unprocessed = await source.query_rows("orders", RowPredicate(unprocessed_column="processed"), [OrderBy("id")], 10)
    assert [row["id"] for row in unprocessed] == [1, 2]


@pytest.mark.asyncio
async def test_sqlalchemy_source_marks_processed(sqlite_engine: AsyncEngine) -> None:
    source = SQLAlchemyRowSource(sqlite_engine)
    assert await source.mark_processed("orders", [1, 2, None]) == 2
    assert await source.mark_processed("orders", []) == 0
    rows = await source.query_rows("orders", RowPredicate(), [OrderBy("id")], None)
    assert [row["processed"] for row in rows] == [True, True, True]
    assert rows[0]["processed_at"] is not None


@pytest.mark.asyncio
async def test_sqlalchemy_source_lists_columns(sqlite_engine: AsyncEngine) -> None:
    columns = {column.name: column.is_temporal for column in await SQLAlchemyRowSource(sqlite_engine).list_columns("orders")}
    assert columns == {"id": False, "status": False, "created_at": True, "processed": False, "processed_at": True}


@pytest.mark.asyncio
async def test_sqlalchemy_source_unknown_names(sqlite_engine: AsyncEngine) -> None:
    source = SQLAlchemyRowSource(sqlite_engine)
    with pytest.raises(UnknownTableError):
        await source.list_columns("invoices")
    with pytest.raises(UnknownColumnError):
        await source.query_rows("orders", RowPredicate(), [OrderBy("colour")], None)


@pytest.mark.asyncio
async def test_sqlalchemy_source_sees_new_columns_after_forget(sqlite_engine: AsyncEngine) -> None:
    source = SQLAlchemyRowSource(sqlite_engine)
    await source.list_columns("orders")
    async with sqlite_engine.begin() as conn:
        await conn.execute(sa.text("ALTER TABLE orders ADD COLUMN note VARCHAR(20)"))
    assert "note" not in [column.name for column in await source.list_columns("orders")]
    source.forget_table("orders")
    assert "note" in [column.name for column in await source.list_columns("orders")]


def _memory_source() -> InMemoryRowSource:
    source = InMemoryRowSource()
    source.create_table("orders", {"id": False, "status": False, "amount": False, "created_at": True, "processed": False})
    source.insert(
        "orders",
        {"id": 1, "status": "open", "amount": 10},
        {"id": 2, "status": "paid", "amount": None},
        {"id": 3, "status": "open", "amount": 40, "processed": True},
    )
    return source


@pytest.mark.asyncio
async def test_memory_source_follows_sql_semantics() -> None:
    source = _memory_source()
    query = source.query_rows
    assert [r["id"] for r in await query("orders", RowPredicate((Condition("amount", ">", 5),)), [], None)] == [1, 3]
    assert [r["id"] for r in await query("orders", RowPredicate((Condition("amount", "=", None),)), [], None)] == [2]
    assert [r["id"] for r in await query("orders", RowPredicate((Condition("status", "like", "o%"),)), [], None)] == [1, 3]
    assert [r["id"] for r in await query("orders", RowPredicate((Condition("id", "in", [2, 3]),)), [], None)] == [2, 3]
    assert [r["id"] for r in await query("orders", RowPredicate(unprocessed_column="processed"), [], None)] == [1, 2]
    by_amount = await query("orders", RowPredicate(), [OrderBy("amount", descending=True)], 2, fields=["id"])
    assert by_amount == [{"id": 2}, {"id": 3}]
    assert [r["id"] for r in await query("orders", RowPredicate(), [OrderBy("amount")], None, offset=1)] == [3, 2]
    assert source.query_count == 7


@pytest.mark.asyncio
async def test_memory_source_mark_processed_and_errors() -> None:
    source = _memory_source()
    assert await source.mark_processed("orders", [1, 2]) == 2
    assert all(row["processed"] for row in source.rows("orders"))
    with pytest.raises(UnknownTableError):
        await source.list_columns("invoices")
    with pytest.raises(UnknownColumnError):
        source.insert("orders", {"id": 9, "colour": "red"})
    source.fail_with = SourceQueryError("orders", "boom")
    with pytest.raises(SourceQueryError):
        await source.list_columns("orders")


def test_memory_source_update_and_delete() -> None:
    source = _memory_source()
    assert source.update("orders", 2, {"status": "void"})
    assert not source.update("orders", 99, {"status": "void"})
    assert source.delete("orders", 1)
    assert not source.delete("orders", 1)
    assert [(row["id"], row["status"]) for row in source.rows("orders")] == [(2, "void"), (3, "open")]
