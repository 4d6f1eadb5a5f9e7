"""Async engine creation and lifecycle for watched source databases."""

from __future__ import annotations

from sqlalchemy.engine import make_url
from sqlalchemy.exc import ArgumentError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from tablewatch.db.exceptions import ConfigurationError

_engines: dict[str, AsyncEngine] = {}


def normalize_url(url: str) -> str:
    """Return an async-driver URL.

    Plain ``postgresql://`` URLs are routed to asyncpg; any other dialect must
    name its async driver explicitly (``mysql+aiomysql://``,
    ``sqlite+aiosqlite://``, ...).
    """
    u = url.strip()
    if not u:
        raise ConfigurationError("Source database URL is empty.")
    if u.startswith("postgresql://") or u.startswith("postgres://"):
        return "postgresql+asyncpg://" + u.split("://", 1)[1]
    try:
        parsed = make_url(u)
    except ArgumentError as exc:
        raise ConfigurationError("Source database URL could not be parsed.") from exc
    if "+" not in parsed.drivername:
        raise ConfigurationError(
            f"Source database URL for dialect '{parsed.drivername}' must name an async driver (e.g. {parsed.drivername}+<driver>://)."
        )
    return u


def create_engine(
    database_url: str,
    *,
    pool_size: int = 5,
    max_overflow: int = 5,
    pool_timeout: float = 30.0,
    pool_recycle: int = 1800,
    pool_pre_ping: bool = True,
    echo: bool = False,
) -> AsyncEngine:
    """Create an async engine for one source database.

    Args:
        database_url: Source URL; see :func:`normalize_url`.
        pool_size: Connection pool size (ignored for SQLite).
        max_overflow: Extra connections beyond pool_size (ignored for SQLite).
        pool_timeout: Seconds to wait for a connection.
        pool_recycle: Seconds after which connections are recycled.
        pool_pre_ping: Ping connections before use.
        echo: Log SQL.

    Raises:
        ConfigurationError: URL missing or invalid.
    """
    url = normalize_url(database_url)
    if url.startswith("sqlite"):
        return create_async_engine(url, echo=echo)
    return create_async_engine(
        url,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_timeout=pool_timeout,
        pool_recycle=pool_recycle,
        pool_pre_ping=pool_pre_ping,
        echo=echo,
    )


def get_engine(database_url: str) -> AsyncEngine:
    """Get or create the cached engine for a URL; equal URLs share one engine."""
    url = normalize_url(database_url)
    if url not in _engines:
        _engines[url] = create_engine(url)
    return _engines[url]


async def dispose_engine(database_url: str | None = None) -> None:
    """Dispose one cached engine, or all of them when no URL is given."""
    if database_url is None:
        for key in list(_engines.keys()):
            await _engines.pop(key).dispose()
        return
    engine = _engines.pop(normalize_url(database_url), None)
    if engine is not None:
        await engine.dispose()
