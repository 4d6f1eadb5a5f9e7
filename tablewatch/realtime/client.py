"""Python client: fetch a list, then keep it current over a real-time connection."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any
from uuid import uuid4

import httpx
from websockets.exceptions import WebSocketException

from tablewatch.realtime.connection import Connection, ConnectionClosedError, WebSocketClientConnection
from tablewatch.realtime.errors import MalformedMessageError
from tablewatch.realtime.messages import (
    PollingErrorMessage,
    SnapshotResponse,
    SubscribeTable,
    SubscriptionConfirmed,
    SubscriptionErrorMessage,
    TableUpdate,
    UnsubscribeTable,
    parse_server_message,
)
from tablewatch.realtime.reconciler import ClientRecordSet

logger = logging.getLogger(__name__)

UpdateCallback = Callable[[TableUpdate], Awaitable[None]]
ErrorCallback = Callable[[str], Awaitable[None]]
ConnectionFactory = Callable[[str, dict[str, str]], Awaitable[Connection]]


class ChannelState(str, Enum):
    PENDING = "pending"
    SUBSCRIBED = "subscribed"
    FAILED = "failed"
    UNSUBSCRIBED = "unsubscribed"
    DISCONNECTED = "disconnected"


_TRANSITIONS: dict[ChannelState, frozenset[ChannelState]] = {
    ChannelState.PENDING: frozenset(
        {ChannelState.SUBSCRIBED, ChannelState.FAILED, ChannelState.UNSUBSCRIBED, ChannelState.DISCONNECTED}
    ),
    ChannelState.SUBSCRIBED: frozenset({ChannelState.UNSUBSCRIBED, ChannelState.DISCONNECTED}),
    ChannelState.FAILED: frozenset(),
    ChannelState.UNSUBSCRIBED: frozenset(),
    ChannelState.DISCONNECTED: frozenset({ChannelState.PENDING}),
}


@dataclass(frozen=True, slots=True)
class ClientContext:
    """Caller identity forwarded with every request; never read from globals."""

    api_key: str | None = None
    organization_id: str | None = None
    extra_headers: dict[str, str] = field(default_factory=dict)

    def headers(self) -> dict[str, str]:
        headers = dict(self.extra_headers)
        if self.api_key:
            headers["X-API-Key"] = self.api_key
        if self.organization_id:
            headers["X-Organization-Id"] = self.organization_id
        return headers


def filters_to_params(filters: dict[str, Any] | None) -> dict[str, str]:
    """Encode subscription filters as list-endpoint query parameters."""
    params: dict[str, str] = {}
    for name, value in (filters or {}).items():
        if value is None:
            continue
        if isinstance(value, (list, tuple)):
            params[name] = ",".join(str(item) for item in value)
        elif isinstance(value, dict):
            params[name] = json.dumps(value, separators=(",", ":"), default=str)
        else:
            params[name] = str(value)
    return params


class RealtimeSubscription:
    """One channel on a connection, moving PENDING -> SUBSCRIBED -> UNSUBSCRIBED/DISCONNECTED.

    A DISCONNECTED channel goes back to PENDING when ``resume`` subscribes it
    again on a new connection.
    """

    def __init__(
        self,
        connection: Connection,
        *,
        service_name: str,
        entity_name: str,
        channel_id: str | None = None,
        filters: dict[str, Any] | None = None,
        polling_interval: int | None = 5000,
        enable_database_triggers: bool = False,
        records: ClientRecordSet | None = None,
        on_update: UpdateCallback | None = None,
        on_error: ErrorCallback | None = None,
    ) -> None:
        self.connection = connection
        self.service_name = service_name
        self.entity_name = entity_name
        self.channel_id = channel_id or f"{service_name}_{entity_name}_{uuid4().hex[:12]}"
        self.filters = dict(filters or {})
        self.polling_interval = polling_interval
        self.enable_database_triggers = enable_database_triggers
        self.records = records if records is not None else ClientRecordSet()
        self.state = ChannelState.PENDING
        self.error: str | None = None
        self.last_polling_error: str | None = None
        self.method: str | None = None
        self.confirmed_interval_ms: int | None = None
        self._on_update = on_update
        self._on_error = on_error
        self._settled = asyncio.Event()
        self._started = False

    @property
    def active(self) -> bool:
        return self.state in {ChannelState.PENDING, ChannelState.SUBSCRIBED}

    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        await self._send_subscribe()

    async def resume(self, connection: Connection) -> bool:
        """Subscribe again on a fresh connection with the same channel id.

        The server answers with a confirmation and a full polling refresh,
        which brings ``records`` back up to date.
        """
        if self.state is not ChannelState.DISCONNECTED:
            return False
        self.connection = connection
        self._settled.clear()
        self._transition(ChannelState.PENDING)
        await self._send_subscribe()
        return True

    async def wait_settled(self, timeout: float | None = None) -> ChannelState:
        """Wait until the server confirms or rejects the channel (or it goes away)."""
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(self._settled.wait(), timeout=timeout)
        return self.state

    async def unsubscribe(self) -> None:
        if not self.active:
            return
        self._transition(ChannelState.UNSUBSCRIBED)
        try:
            await self.connection.send(UnsubscribeTable(channel_id=self.channel_id).to_wire())
        except ConnectionClosedError:
            logger.debug("connection already closed while unsubscribing %s", self.channel_id)

    async def _handle(self, raw: dict[str, Any]) -> None:
        if raw.get("channelId") != self.channel_id:
            return
        try:
            message = parse_server_message(raw)
        except MalformedMessageError as exc:
            logger.warning("dropping malformed message for %s: %s", self.channel_id, exc)
            return

        if isinstance(message, SubscriptionConfirmed):
            if self._transition(ChannelState.SUBSCRIBED):
                self.method = message.method
                self.confirmed_interval_ms = message.polling_interval
        elif isinstance(message, SubscriptionErrorMessage):
            if self._transition(ChannelState.FAILED):
                self.error = message.error
                await self._report_error(message.error)
        elif isinstance(message, TableUpdate):
            if not self.active:
                return
            self.records.apply_update(message)
            if self._on_update is not None:
                await self._on_update(message)
        elif isinstance(message, PollingErrorMessage):
            # transient; the server retries on its next tick
            self.last_polling_error = message.error
            logger.debug("polling error on %s: %s", self.channel_id, message.error)

    async def _send_subscribe(self) -> None:
        self.connection.on_message(self._handle)
        self.connection.on_close(self._handle_close)
        request = SubscribeTable(
            service_name=self.service_name,
            entity_name=self.entity_name,
            channel_id=self.channel_id,
            filters=self.filters,
            polling_interval=self.polling_interval,
            enable_database_triggers=self.enable_database_triggers,
        )
        try:
            await self.connection.send(request.to_wire())
        except ConnectionClosedError as exc:
            self._transition(ChannelState.DISCONNECTED)
            await self._report_error(str(exc))

    async def _handle_close(self) -> None:
        self._transition(ChannelState.DISCONNECTED)

    def _transition(self, target: ChannelState) -> bool:
        if target not in _TRANSITIONS[self.state]:
            logger.debug("ignoring %s -> %s on channel %s", self.state.value, target.value, self.channel_id)
            return False
        self.state = target
        if target is not ChannelState.PENDING:
            self._settled.set()
        return True

    async def _report_error(self, error: str) -> None:
        if self._on_error is not None:
            await self._on_error(error)


@dataclass(slots=True)
class LiveTable:
    """A fetched list plus the subscription that keeps it current (if any)."""

    service_name: str
    entity_name: str
    filters: dict[str, Any]
    records: ClientRecordSet
    realtime_enabled: bool
    subscription: RealtimeSubscription | None = None

    @property
    def data(self) -> list[dict[str, Any]]:
        return self.records.records


async def _websocket_factory(url: str, headers: dict[str, str]) -> Connection:
    connection = WebSocketClientConnection(url, headers=headers)
    await connection.connect()
    return connection


class RealtimeDataClient:
    """Fetch table snapshots over HTTP and subscribe to their updates.

    When a socket drops the client reconnects with exponential backoff and
    re-subscribes every channel that was live on it, keeping channel ids.
    ``max_reconnect_attempts=None`` retries forever; ``reconnect=False``
    leaves dropped channels DISCONNECTED.
    """

    def __init__(
        self,
        base_url: str,
        *,
        context: ClientContext | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        connection_factory: ConnectionFactory | None = None,
        timeout_seconds: float = 10.0,
        reconnect: bool = True,
        reconnect_delay_seconds: float = 1.0,
        max_reconnect_delay_seconds: float = 5.0,
        max_reconnect_attempts: int | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._context = context or ClientContext()
        self._http = httpx.AsyncClient(
            base_url=self._base_url,
            headers=self._context.headers(),
            timeout=timeout_seconds,
            transport=transport,
        )
        self._connection_factory = connection_factory or _websocket_factory
        self._connections: dict[str, Connection] = {}
        self._subscriptions: dict[str, list[RealtimeSubscription]] = {}
        self._reconnect = reconnect
        self._reconnect_delay = reconnect_delay_seconds
        self._max_reconnect_delay = max(max_reconnect_delay_seconds, reconnect_delay_seconds)
        self._max_reconnect_attempts = max_reconnect_attempts
        self._reconnect_tasks: dict[str, asyncio.Task[None]] = {}
        self._closing = False

    async def fetch_snapshot(
        self, service_name: str, entity_name: str, filters: dict[str, Any] | None = None
    ) -> SnapshotResponse:
        params = {"realtime": "true", **filters_to_params(filters)}
        response = await self._http.get(f"/api/v2/{service_name}/_table/{entity_name}", params=params)
        response.raise_for_status()
        return SnapshotResponse.model_validate(response.json())

    async def refetch(self, table: LiveTable) -> list[dict[str, Any]]:
        snapshot = await self.fetch_snapshot(table.service_name, table.entity_name, table.filters)
        table.records.replace(snapshot.data)
        return table.data

    async def subscribe(
        self,
        service_name: str,
        entity_name: str,
        *,
        filters: dict[str, Any] | None = None,
        polling_interval: int | None = 5000,
        enable_database_triggers: bool = False,
        on_update: UpdateCallback | None = None,
        on_error: ErrorCallback | None = None,
    ) -> LiveTable:
        """Fetch the first page, then follow it when the server offers a socket.

        When ``realtime.enabled`` is false the returned table has no
        subscription and only ``refetch`` keeps it fresh.
        """
        snapshot = await self.fetch_snapshot(service_name, entity_name, filters)
        table = LiveTable(
            service_name=service_name,
            entity_name=entity_name,
            filters=dict(filters or {}),
            records=ClientRecordSet(snapshot.data),
            realtime_enabled=snapshot.realtime.enabled and bool(snapshot.realtime.socket_url),
        )
        if not table.realtime_enabled:
            logger.info("real-time updates unavailable for %s/%s; use refetch()", service_name, entity_name)
            return table

        socket_url = str(snapshot.realtime.socket_url)
        connection = await self._connection(socket_url)
        subscription = RealtimeSubscription(
            connection,
            service_name=service_name,
            entity_name=entity_name,
            channel_id=snapshot.realtime.channel_id,
            filters=filters,
            polling_interval=polling_interval,
            enable_database_triggers=enable_database_triggers,
            records=table.records,
            on_update=on_update,
            on_error=on_error,
        )
        await subscription.start()
        self._subscriptions.setdefault(socket_url, []).append(subscription)
        table.subscription = subscription
        return table

    async def close(self) -> None:
        self._closing = True
        for task in list(self._reconnect_tasks.values()):
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._reconnect_tasks.clear()
        for subscriptions in self._subscriptions.values():
            for subscription in subscriptions:
                await subscription.unsubscribe()
        self._subscriptions.clear()
        for connection in self._connections.values():
            await connection.close()
        self._connections.clear()
        await self._http.aclose()

    async def __aenter__(self) -> RealtimeDataClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def wait_reconnected(self) -> None:
        """Wait for reconnect attempts that are currently running."""
        tasks = [task for task in self._reconnect_tasks.values() if not task.done()]
        if tasks:
            await asyncio.wait(tasks)

    async def _connection(self, socket_url: str) -> Connection:
        connection = self._connections.get(socket_url)
        if connection is None or connection.closed:
            connection = await self._connection_factory(socket_url, self._context.headers())
            self._connections[socket_url] = connection
            connection.on_close(lambda: self._on_connection_closed(socket_url))
        return connection

    async def _on_connection_closed(self, socket_url: str) -> None:
        if self._closing or not self._reconnect:
            return
        running = self._reconnect_tasks.get(socket_url)
        if running is not None and not running.done():
            return
        self._reconnect_tasks[socket_url] = asyncio.create_task(
            self._reconnect_loop(socket_url), name=f"tablewatch-reconnect:{socket_url}"
        )

    async def _reconnect_loop(self, socket_url: str) -> None:
        attempt = 0
        while not self._closing:
            if self._max_reconnect_attempts is not None and attempt >= self._max_reconnect_attempts:
                logger.warning("giving up on %s after %d reconnect attempt(s)", socket_url, attempt)
                return
            delay = min(self._max_reconnect_delay, self._reconnect_delay * (2**attempt))
            attempt += 1
            await asyncio.sleep(delay)
            try:
                connection = await self._connection(socket_url)
            except (OSError, WebSocketException, asyncio.TimeoutError) as exc:
                logger.warning("reconnect %d to %s failed, retrying: %s", attempt, socket_url, exc)
                continue
            resumed = 0
            for subscription in self._subscriptions.get(socket_url, []):
                if await subscription.resume(connection):
                    resumed += 1
            if connection.closed:
                continue
            logger.info("reconnected to %s; resubscribed %d channel(s)", socket_url, resumed)
            return
