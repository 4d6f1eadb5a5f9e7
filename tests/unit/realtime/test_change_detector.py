"""Change detection and polling job construction against an in-memory source."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
import sqlalchemy as sa

from tablewatch.config import PollingConfig, SourceConfig, TableConfig
from tablewatch.db import SQLAlchemyRowSource, create_engine
from tablewatch.db.exceptions import SourceQueryError
from tablewatch.db.memory import InMemoryRowSource
from tablewatch.db.source import ColumnInfo, RowSource
from tablewatch.realtime.catalog import EntityCatalog
from tablewatch.realtime.cleanup import ProcessedMarkerCleanup, TimeBasedCleanup
from tablewatch.realtime.cursor import CursorTracker
from tablewatch.realtime.detector import ChangeDetector, resolve_watch_column
from tablewatch.realtime.errors import (
    InvalidFiltersError,
    JobConfigurationError,
    UnknownEntityError,
    UnresolvableColumnError,
)
from tablewatch.realtime.filters import QueryFilters
from tablewatch.realtime.jobs import JobFactory, job_key_for
from tablewatch.realtime.models import ChangeOperation, TriggerMode


def _now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _factory(source: RowSource, tables: dict[str, TableConfig], **polling: int) -> tuple[JobFactory, CursorTracker]:
    catalog = EntityCatalog()
    config = SourceConfig(database_url="sqlite+aiosqlite:///unused.db", tables=tables)
    catalog.add_service("shop", source, config.tables)
    cursors = CursorTracker()
    return JobFactory(catalog, cursors, PollingConfig(**polling)), cursors


def test_explicit_column_is_matched_case_insensitively() -> None:
    columns = [ColumnInfo("id"), ColumnInfo("Created_At", is_temporal=True)]
    assert resolve_watch_column("orders", TriggerMode.NEW_ROW, "created_at", columns) == "Created_At"


def test_explicit_column_must_exist() -> None:
    with pytest.raises(JobConfigurationError, match="does not exist"):
        resolve_watch_column("orders", TriggerMode.NEW_ROW, "inserted", [ColumnInfo("id")])


def test_explicit_column_must_be_an_identifier() -> None:
    with pytest.raises(JobConfigurationError, match="invalid column name"):
        resolve_watch_column("orders", TriggerMode.NEW_ROW, "x; drop table", [ColumnInfo("id")])


def test_mode_specific_candidates_are_preferred() -> None:
    columns = [ColumnInfo("id"), ColumnInfo("UpdatedAt", True), ColumnInfo("CreatedAt", True)]
    assert resolve_watch_column("orders", TriggerMode.NEW_ROW, None, columns) == "CreatedAt"
    assert resolve_watch_column("orders", TriggerMode.UPDATED_ROW, None, columns) == "UpdatedAt"


def test_falls_back_to_first_temporal_column() -> None:
    columns = [ColumnInfo("id"), ColumnInfo("shipped_on", True), ColumnInfo("billed_on", True)]
    assert resolve_watch_column("orders", TriggerMode.UPDATED_ROW, None, columns) == "shipped_on"


def test_no_usable_column_is_a_configuration_error() -> None:
    with pytest.raises(UnresolvableColumnError) as exc_info:
        resolve_watch_column("notes", TriggerMode.NEW_ROW, None, [ColumnInfo("id"), ColumnInfo("body")])
    assert exc_info.value.table == "notes"
    assert exc_info.value.mode == "newRow"


@pytest.mark.asyncio
async def test_factory_rejects_unknown_entity(shop_source: InMemoryRowSource) -> None:
    factory, _ = _factory(shop_source, {"orders": TableConfig()})
    with pytest.raises(UnknownEntityError):
        await factory.create(job_key_for("shop", "invoices", QueryFilters()), QueryFilters())


@pytest.mark.asyncio
async def test_factory_rejects_missing_table(shop_source: InMemoryRowSource) -> None:
    factory, _ = _factory(shop_source, {"archive": TableConfig()})
    with pytest.raises(JobConfigurationError, match="archive"):
        await factory.create(job_key_for("shop", "archive", QueryFilters()), QueryFilters())


@pytest.mark.asyncio
async def test_factory_rejects_unknown_filter_columns(shop_source: InMemoryRowSource) -> None:
    factory, _ = _factory(shop_source, {"orders": TableConfig()})
    filters = QueryFilters.parse({"filter": "colour = 'red'", "fields": "id,status"})
    with pytest.raises(InvalidFiltersError, match="colour"):
        await factory.create(job_key_for("shop", "orders", filters), filters)


@pytest.mark.asyncio
async def test_factory_wraps_schema_read_failures(shop_source: InMemoryRowSource) -> None:
    factory, _ = _factory(shop_source, {"orders": TableConfig()})
    shop_source.fail_with = SourceQueryError("orders", "connection refused")
    with pytest.raises(JobConfigurationError, match="cannot read schema"):
        await factory.create(job_key_for("shop", "orders", QueryFilters()), QueryFilters())


@pytest.mark.asyncio
async def test_factory_builds_job_and_seeds_cursor(shop_source: InMemoryRowSource) -> None:
    factory, cursors = _factory(shop_source, {"orders": TableConfig(date_column="created_at")}, batch_size=7)
    key = job_key_for("shop", "orders", QueryFilters())
    job = await factory.create(key, QueryFilters())
    assert job.watch_column == "created_at"
    assert job.mode is TriggerMode.NEW_ROW
    assert job.batch_size == 7
    assert isinstance(job.cleanup, TimeBasedCleanup)
    assert cursors.get(key) is not None


@pytest.mark.asyncio
async def test_cdc_jobs_use_cdc_batch_size_and_marker_cleanup(shop_source: InMemoryRowSource) -> None:
    factory, _ = _factory(
        shop_source,
        {"order_events": TableConfig(cdc_mode=True, cleanup_strategy="processed-marker")},
        cdc_batch_size=500,
    )
    job = await factory.create(job_key_for("shop", "order_events", QueryFilters()), QueryFilters())
    assert job.batch_size == 500
    assert isinstance(job.cleanup, ProcessedMarkerCleanup)


@pytest.mark.asyncio
async def test_processed_marker_needs_its_column(shop_source: InMemoryRowSource) -> None:
    factory, _ = _factory(shop_source, {"orders": TableConfig(cdc_mode=True, cleanup_strategy="processed-marker")})
    with pytest.raises(JobConfigurationError, match="processed"):
        await factory.create(job_key_for("shop", "orders", QueryFilters()), QueryFilters())


@pytest.mark.asyncio
async def test_detect_returns_rows_past_cursor_without_moving_it(shop_source: InMemoryRowSource) -> None:
    factory, cursors = _factory(shop_source, {"orders": TableConfig(date_column="created_at")})
    key = job_key_for("shop", "orders", QueryFilters())
    job = await factory.create(key, QueryFilters())
    seeded = cursors.get(key)
    now = _now()
    shop_source.insert(
        "orders",
        {"id": 11, "status": "open", "amount": 1, "created_at": now + timedelta(seconds=2)},
        {"id": 10, "status": "open", "amount": 1, "created_at": now + timedelta(seconds=1)},
    )

    detection = await ChangeDetector(cursors).detect(job)

    assert [event.record["id"] for event in detection.events] == [10, 11]
    assert all(event.operation is ChangeOperation.INSERT for event in detection.events)
    assert detection.cursor_candidate == now + timedelta(seconds=2)
    assert cursors.get(key) == seeded


@pytest.mark.asyncio
async def test_detect_honours_filters_and_batch_size(shop_source: InMemoryRowSource) -> None:
    factory, cursors = _factory(shop_source, {"orders": TableConfig(date_column="created_at")}, batch_size=2)
    filters = QueryFilters.parse({"filter": {"status": "open"}})
    job = await factory.create(job_key_for("shop", "orders", filters), filters)
    now = _now()
    for offset, status in enumerate(["open", "paid", "open", "open"], start=1):
        shop_source.insert(
            "orders",
            {"id": 100 + offset, "status": status, "created_at": now + timedelta(seconds=offset)},
        )

    detection = await ChangeDetector(cursors).detect(job)

    assert [event.record["id"] for event in detection.events] == [101, 103]


@pytest.mark.asyncio
async def test_updated_row_mode_reports_updates(shop_source: InMemoryRowSource) -> None:
    factory, cursors = _factory(shop_source, {"customers_view": TableConfig(table="orders", trigger_mode="updatedRow")})
    job = await factory.create(job_key_for("shop", "customers_view", QueryFilters()), QueryFilters())
    assert job.watch_column == "updated_at"
    shop_source.update("orders", 2, {"status": "refunded", "updated_at": _now() + timedelta(seconds=1)})

    detection = await ChangeDetector(cursors).detect(job)

    assert [(event.operation, event.record["status"]) for event in detection.events] == [
        (ChangeOperation.UPDATE, "refunded")
    ]


@pytest.mark.asyncio
async def test_processed_marker_scope_ignores_cursor(shop_source: InMemoryRowSource) -> None:
    factory, cursors = _factory(
        shop_source,
        {"order_events": TableConfig(cdc_mode=True, cleanup_strategy="processed-marker")},
    )
    job = await factory.create(job_key_for("shop", "order_events", QueryFilters()), QueryFilters())
    late = _now() - timedelta(days=2)
    shop_source.insert(
        "order_events",
        {"id": 1, "kind": "late", "created_at": late, "processed": False},
        {"id": 2, "kind": "done", "created_at": late, "processed": True},
    )

    detection = await ChangeDetector(cursors).detect(job)
    assert [event.record["id"] for event in detection.events] == [1]

    await job.cleanup.after_delivery(job.binding, detection.events)
    assert shop_source.rows("order_events")[0]["processed"] is True
    assert shop_source.rows("order_events")[0]["processed_at"] is not None
    assert (await ChangeDetector(cursors).detect(job)).events == []


@pytest.mark.asyncio
async def test_empty_poll_has_no_candidate(shop_source: InMemoryRowSource) -> None:
    factory, cursors = _factory(shop_source, {"orders": TableConfig(date_column="created_at")})
    job = await factory.create(job_key_for("shop", "orders", QueryFilters()), QueryFilters())
    detection = await ChangeDetector(cursors).detect(job)
    assert detection.events == []
    assert detection.cursor_candidate is None


@pytest.mark.asyncio
async def test_detect_turns_missing_watch_column_into_configuration_error(shop_source: InMemoryRowSource) -> None:
    factory, cursors = _factory(shop_source, {"orders": TableConfig(date_column="created_at")})
    job = await factory.create(job_key_for("shop", "orders", QueryFilters()), QueryFilters())
    shop_source.drop_column("orders", "created_at")

    with pytest.raises(JobConfigurationError, match="created_at"):
        await ChangeDetector(cursors).detect(job)


@pytest.mark.asyncio
async def test_detect_rechecks_reflected_schema_after_query_failure(tmp_path: Path) -> None:
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'shop.db'}")
    try:
        async with engine.begin() as conn:
            await conn.execute(sa.text("CREATE TABLE orders (id INTEGER PRIMARY KEY, note TEXT, placed_at DATETIME)"))
            await conn.execute(sa.text("INSERT INTO orders (id, note, placed_at) VALUES (1, 'a', '2000-01-01 00:00:00')"))
        factory, cursors = _factory(SQLAlchemyRowSource(engine), {"orders": TableConfig()})
        job = await factory.create(job_key_for("shop", "orders", QueryFilters()), QueryFilters())
        detector = ChangeDetector(cursors)
        assert job.watch_column == "placed_at"

        # an unrelated column going away is transient: the cached reflection is refreshed
        async with engine.begin() as conn:
            await conn.execute(sa.text("ALTER TABLE orders DROP COLUMN note"))
        with pytest.raises(SourceQueryError):
            await detector.detect(job)
        assert (await detector.detect(job)).events == []

        async with engine.begin() as conn:
            await conn.execute(sa.text("ALTER TABLE orders DROP COLUMN placed_at"))
        with pytest.raises(JobConfigurationError, match="no longer exists"):
            await detector.detect(job)
    finally:
        await engine.dispose()
