"""Source database layer: engines, exceptions and the row-query capability."""

from tablewatch.db.engine import create_engine, dispose_engine, get_engine, normalize_url
from tablewatch.db.exceptions import (
    ConfigurationError,
    DatabaseError,
    SourceQueryError,
    UnknownColumnError,
    UnknownTableError,
)
from tablewatch.db.memory import InMemoryRowSource
from tablewatch.db.source import (
    ColumnInfo,
    Condition,
    OrderBy,
    RowPredicate,
    RowSource,
    SQLAlchemyRowSource,
    build_mark_processed,
    build_select,
)

__all__ = [
    "ColumnInfo",
    "Condition",
    "ConfigurationError",
    "DatabaseError",
    "InMemoryRowSource",
    "OrderBy",
    "RowPredicate",
    "RowSource",
    "SQLAlchemyRowSource",
    "SourceQueryError",
    "UnknownColumnError",
    "UnknownTableError",
    "build_mark_processed",
    "build_select",
    "create_engine",
    "dispose_engine",
    "get_engine",
    "normalize_url",
]
