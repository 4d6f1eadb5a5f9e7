"""Database-related exceptions for tablewatch.

Messages never include credentials from the source URL.
"""


class DatabaseError(Exception):
    """Base exception for source database access."""


class ConfigurationError(DatabaseError):
    """Raised when a source database URL is missing or unusable."""


class UnknownTableError(DatabaseError):
    """Raised when a watched table does not exist in the source database."""

    def __init__(self, table: str) -> None:
        self.table = table
        super().__init__(f"Table not found in source database: {table}")


class UnknownColumnError(DatabaseError):
    """Raised when a query references a column the table does not have."""

    def __init__(self, table: str, column: str) -> None:
        self.table = table
        self.column = column
        super().__init__(f"Column '{column}' does not exist on table '{table}'")


class SourceQueryError(DatabaseError):
    """Raised when a query against the source database fails at runtime."""

    def __init__(self, table: str, message: str) -> None:
        self.table = table
        super().__init__(f"Query on '{table}' failed: {message}")
