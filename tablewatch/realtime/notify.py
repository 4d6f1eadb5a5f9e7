"""Notification adapters feeding source-side trigger events into tablewatch."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import asyncpg
from sqlalchemy.engine import make_url

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Notification:
    """One raw notification received on a listen channel."""

    channel: str
    payload: dict[str, Any]
    received_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


NotificationCallback = Callable[[Notification], Awaitable[None]]


def decode_payload(payload: str | None) -> dict[str, Any]:
    if not payload:
        return {}
    try:
        parsed = json.loads(payload)
    except ValueError:
        return {"raw_payload": payload, "parse_error": True}
    return parsed if isinstance(parsed, dict) else {"value": parsed}


class NotifyAdapter(ABC):
    """A source of notifications whose channels can change at runtime."""

    def __init__(self) -> None:
        self._callbacks: list[NotificationCallback] = []

    def on_notification(self, callback: NotificationCallback) -> None:
        self._callbacks.append(callback)

    @abstractmethod
    async def start(self) -> None: ...

    @abstractmethod
    async def stop(self) -> None: ...

    @abstractmethod
    async def listen(self, channel: str) -> None: ...

    @abstractmethod
    async def unlisten(self, channel: str) -> None: ...

    async def _deliver(self, notification: Notification) -> None:
        for callback in list(self._callbacks):
            try:
                await callback(notification)
            except Exception as exc:
                logger.warning("notification handler failed on channel %s: %s", notification.channel, exc)


class InMemoryNotifyAdapter(NotifyAdapter):
    """Process-local adapter; ``notify`` plays the role of the database."""

    def __init__(self) -> None:
        super().__init__()
        self.channels: set[str] = set()
        self.running = False

    async def start(self) -> None:
        self.running = True

    async def stop(self) -> None:
        self.running = False
        self.channels.clear()

    async def listen(self, channel: str) -> None:
        self.channels.add(channel)

    async def unlisten(self, channel: str) -> None:
        self.channels.discard(channel)

    async def notify(self, channel: str, payload: dict[str, Any] | str) -> bool:
        if not self.running or channel not in self.channels:
            return False
        body = payload if isinstance(payload, dict) else decode_payload(payload)
        await self._deliver(Notification(channel=channel, payload=body))
        return True


def asyncpg_dsn(database_url: str) -> str:
    """Strip the SQLAlchemy driver suffix so asyncpg accepts the URL."""
    url = make_url(database_url)
    return url.set(drivername="postgresql").render_as_string(hide_password=False)


class PostgresNotifyAdapter(NotifyAdapter):
    """LISTEN/NOTIFY over a dedicated asyncpg connection with a health check loop."""

    def __init__(self, database_url: str, reconnect_interval: float = 30.0) -> None:
        super().__init__()
        self._dsn = asyncpg_dsn(database_url)
        self._reconnect_interval = reconnect_interval
        self._conn: Any | None = None
        self._channels: list[str] = []
        self._running = False
        self._health_task: asyncio.Task[None] | None = None

    @property
    def channels(self) -> list[str]:
        return list(self._channels)

    async def start(self) -> None:
        self._conn = await asyncpg.connect(self._dsn)
        for channel in self._channels:
            await self._conn.add_listener(channel, self._on_notify)
        self._running = True
        self._health_task = asyncio.create_task(self._health_check_loop())
        logger.info("listening for notifications on %d channel(s)", len(self._channels))

    async def stop(self) -> None:
        self._running = False
        if self._health_task is not None:
            self._health_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._health_task
            self._health_task = None
        if self._conn is not None:
            for channel in self._channels:
                try:
                    await self._conn.remove_listener(channel, self._on_notify)
                except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as exc:
                    logger.debug("remove_listener(%s) failed during stop: %s", channel, exc)
            await self._conn.close()
            self._conn = None

    async def listen(self, channel: str) -> None:
        if channel in self._channels:
            return
        self._channels.append(channel)
        if self._conn is not None:
            await self._conn.add_listener(channel, self._on_notify)

    async def unlisten(self, channel: str) -> None:
        if channel not in self._channels:
            return
        self._channels.remove(channel)
        if self._conn is not None:
            await self._conn.remove_listener(channel, self._on_notify)

    async def _reconnect(self) -> None:
        if self._conn is not None:
            try:
                await self._conn.close()
            except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as exc:
                logger.debug("closing stale listen connection failed: %s", exc)
        self._conn = await asyncpg.connect(self._dsn)
        for channel in self._channels:
            await self._conn.add_listener(channel, self._on_notify)
        logger.info("listen connection re-established (%d channel(s))", len(self._channels))

    async def _health_check_loop(self) -> None:
        while self._running:
            try:
                if self._conn is None:
                    await self._reconnect()
                else:
                    await self._conn.execute("SELECT 1")
            except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as exc:
                logger.warning("listen connection unhealthy, reconnecting: %s", exc)
                try:
                    await self._reconnect()
                except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as reconnect_exc:
                    self._conn = None
                    logger.warning("reconnect failed, retrying in %.0fs: %s", self._reconnect_interval, reconnect_exc)
            await asyncio.sleep(self._reconnect_interval)

    async def _on_notify(self, conn: Any, pid: int, channel: str, payload: str) -> None:  # noqa: ARG002
        await self._deliver(Notification(channel=channel, payload=decode_payload(payload)))
