"""Validate tablewatch.yaml and show what would be watched."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass

from pydantic import ValidationError
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from tablewatch.config import ConfigLoadError, ConfigManager, TableWatchConfig
from tablewatch.db.engine import create_engine
from tablewatch.db.exceptions import DatabaseError
from tablewatch.db.source import SQLAlchemyRowSource
from tablewatch.realtime.detector import resolve_watch_column
from tablewatch.realtime.errors import JobConfigurationError
from tablewatch.realtime.models import TriggerMode

console = Console()


@dataclass(slots=True)
class TableCheck:
    service_name: str
    entity_name: str
    table: str
    mode: str
    watch_column: str | None
    error: str | None = None


def _declared_column(mode: TriggerMode, date_column: str | None, monitor_column: str | None) -> str | None:
    return date_column if mode is TriggerMode.NEW_ROW else monitor_column


def collect_checks(settings: TableWatchConfig) -> list[TableCheck]:
    checks: list[TableCheck] = []
    for service_name, source in settings.sources.items():
        for entity_name, table_config in source.tables.items():
            mode = TriggerMode(table_config.trigger_mode)
            checks.append(
                TableCheck(
                    service_name=service_name,
                    entity_name=entity_name,
                    table=table_config.table or entity_name,
                    mode=mode.value,
                    watch_column=_declared_column(mode, table_config.date_column, table_config.monitor_column),
                )
            )
    return checks


async def resolve_columns(settings: TableWatchConfig, checks: list[TableCheck]) -> None:
    """Connect to every source and resolve the column each table will be watched on."""
    for service_name, source_config in settings.sources.items():
        service_checks = [check for check in checks if check.service_name == service_name]
        try:
            engine = create_engine(source_config.database_url, pool_size=1, max_overflow=0)
        except DatabaseError as exc:
            for check in service_checks:
                check.error = str(exc)
            continue
        source = SQLAlchemyRowSource(engine)
        try:
            for check in service_checks:
                table_config = source_config.tables[check.entity_name]
                mode = TriggerMode(check.mode)
                try:
                    columns = await source.list_columns(check.table)
                    check.watch_column = resolve_watch_column(
                        check.table,
                        mode,
                        _declared_column(mode, table_config.date_column, table_config.monitor_column),
                        columns,
                    )
                except (DatabaseError, JobConfigurationError) as exc:
                    check.error = str(exc)
        finally:
            await engine.dispose()


def check_config_command(config: str | None = None, connect: bool = False) -> list[TableCheck]:
    """Load configuration, optionally check the sources, and print a summary table."""
    try:
        settings = ConfigManager.load(config_path=config).get()
    except (ConfigLoadError, ValidationError) as exc:
        console.print(f"[red]Invalid configuration:[/red] {escape(str(exc))}")
        raise SystemExit(1) from exc

    checks = collect_checks(settings)
    if connect and checks:
        asyncio.run(resolve_columns(settings, checks))

    table = Table(title="Watched tables")
    table.add_column("Service")
    table.add_column("Entity")
    table.add_column("Table")
    table.add_column("Mode")
    table.add_column("Watch column")
    table.add_column("Status")
    for check in checks:
        status = f"[red]{escape(check.error)}[/red]" if check.error else "[green]ok[/green]"
        table.add_row(
            check.service_name,
            check.entity_name,
            check.table,
            check.mode,
            check.watch_column or "(auto)",
            status,
        )
    console.print(table)
    polling = settings.polling
    console.print(
        f"Polling: min={polling.min_interval_ms}ms base={polling.base_interval_ms}ms max={polling.max_interval_ms}ms; "
        f"triggers {'enabled' if settings.triggers.enabled else 'disabled'}"
    )
    if not checks:
        console.print("[yellow]No tables configured under 'sources'.[/yellow]")
    if any(check.error for check in checks):
        raise SystemExit(1)
    return checks
