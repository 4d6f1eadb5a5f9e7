"""Resolve (service, entity) pairs to configured source tables."""

from __future__ import annotations

from dataclasses import dataclass

from tablewatch.config.models import TableConfig
from tablewatch.db.source import RowSource
from tablewatch.realtime.errors import JobConfigurationError, UnknownEntityError
from tablewatch.realtime.filters import TABLE_IDENTIFIER


@dataclass(frozen=True, slots=True)
class TableBinding:
    """A watched table together with the source that can query it."""

    service_name: str
    entity_name: str
    table: str
    source: RowSource
    config: TableConfig


class EntityCatalog:
    """Registry of services (row sources) and the tables each one exposes."""

    def __init__(self) -> None:
        self._sources: dict[str, RowSource] = {}
        self._tables: dict[str, dict[str, TableConfig]] = {}

    def add_service(self, service_name: str, source: RowSource, tables: dict[str, TableConfig]) -> None:
        for entity_name, table_config in tables.items():
            table = table_config.table or entity_name
            if not TABLE_IDENTIFIER.match(table):
                raise JobConfigurationError(f"invalid table name for {service_name}/{entity_name}: {table!r}")
        self._sources[service_name] = source
        self._tables[service_name] = dict(tables)

    def resolve(self, service_name: str, entity_name: str) -> TableBinding:
        tables = self._tables.get(service_name)
        if tables is None or entity_name not in tables:
            raise UnknownEntityError(service_name, entity_name)
        table_config = tables[entity_name]
        return TableBinding(
            service_name=service_name,
            entity_name=entity_name,
            table=table_config.table or entity_name,
            source=self._sources[service_name],
            config=table_config,
        )

    def entities(self) -> list[tuple[str, str]]:
        return [(service, entity) for service, tables in self._tables.items() for entity in tables]
