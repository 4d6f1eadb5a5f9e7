"""Integration test defaults: a real PostgreSQL source."""

from __future__ import annotations

from collections.abc import AsyncIterator
from pathlib import Path

import pytest
import pytest_asyncio
import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import NullPool

from tablewatch.db.engine import dispose_engine, normalize_url

ORDERS_TABLE = "tw_it_orders"
_HERE = Path(__file__).parent


@pytest.hookimpl(tryfirst=True)
def pytest_collection_modifyitems(items: list[pytest.Item]) -> None:
    """Apply the PostgreSQL requirement marker to every test in this directory."""
    for item in items:
        if _HERE in item.path.parents:
            item.add_marker(pytest.mark.requires_postgres)


@pytest.fixture
def orders_table() -> str:
    return ORDERS_TABLE


@pytest_asyncio.fixture
async def pg_engine(db_url: str) -> AsyncIterator[AsyncEngine]:
    """Engine for test setup, with a freshly created orders table."""
    # NullPool avoids reusing asyncpg connections across event loops.
    engine = create_async_engine(normalize_url(db_url), poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.execute(sa.text(f"DROP TABLE IF EXISTS {ORDERS_TABLE} CASCADE"))
        await conn.execute(
            sa.text(
                f"CREATE TABLE {ORDERS_TABLE} ("
                "id SERIAL PRIMARY KEY, status TEXT NOT NULL, amount INTEGER, created_at TIMESTAMP NOT NULL)"
            )
        )
        await conn.execute(
            sa.text(f"INSERT INTO {ORDERS_TABLE} (status, amount, created_at) VALUES ('open', 10, now() - interval '30 days')")
        )
    try:
        yield engine
    finally:
        async with engine.begin() as conn:
            await conn.execute(sa.text(f"DROP TABLE IF EXISTS {ORDERS_TABLE} CASCADE"))
        await engine.dispose()
        await dispose_engine()
