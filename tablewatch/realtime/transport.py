"""Fan-out transport: subscriber channels, bounded outboxes and update routing."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections import deque
from collections.abc import Callable, Coroutine
from typing import Any

from tablewatch.realtime.connection import Connection
from tablewatch.realtime.errors import MalformedMessageError, SubscriptionError
from tablewatch.realtime.jobs import PollingJob
from tablewatch.realtime.messages import (
    PollingErrorMessage,
    SubscribeTable,
    SubscriptionConfirmed,
    SubscriptionErrorMessage,
    TableUpdate,
    UnsubscribeTable,
    WireMessage,
    parse_client_message,
)
from tablewatch.realtime.models import ChangeEvent, ChangeOperation, ChannelRef, PollingJobKey, UpdateType
from tablewatch.realtime.registry import SubscriptionRegistry
from tablewatch.realtime.snapshot import SnapshotLoader, snapshot_checksum

logger = logging.getLogger(__name__)

SendFailure = Callable[[ChannelRef, Exception], None]


class ChannelOutbox:
    """Bounded send queue for one channel, drained by its own task.

    When full, the oldest message is dropped and the channel is flagged for
    resync so the next polling tick sends it a complete refresh.
    """

    def __init__(self, ref: ChannelRef, connection: Connection, *, maxlen: int, on_failure: SendFailure) -> None:
        self.ref = ref
        self.connection = connection
        self.needs_resync = True
        self.last_checksum: str | None = None
        self.dropped = 0
        self._maxlen = max(1, maxlen)
        self._on_failure = on_failure
        self._queue: deque[dict[str, Any]] = deque()
        self._ready = asyncio.Event()
        self._idle = asyncio.Event()
        self._idle.set()
        self._task: asyncio.Task[None] | None = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def __len__(self) -> int:
        return len(self._queue)

    def put(self, message: dict[str, Any]) -> bool:
        if self._closed:
            return False
        if len(self._queue) >= self._maxlen:
            self._queue.popleft()
            self.dropped += 1
            self.needs_resync = True
            logger.warning(
                "outbox for channel %s dropped oldest message because channel_queue_size=%d; resync scheduled",
                self.ref.channel_id,
                self._maxlen,
            )
        self._queue.append(message)
        self._idle.clear()
        self._ready.set()
        if self._task is None:
            self._task = asyncio.create_task(self._drain(), name=f"tablewatch-outbox:{self.ref.channel_id}")
        return True

    async def wait_idle(self) -> None:
        await self._idle.wait()

    async def close(self) -> None:
        self._closed = True
        self._queue.clear()
        self._idle.set()
        self._ready.set()
        task = self._task
        self._task = None
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _drain(self) -> None:
        while not self._closed:
            if not self._queue:
                self._idle.set()
                self._ready.clear()
                await self._ready.wait()
                continue
            message = self._queue.popleft()
            try:
                await self.connection.send(message)
            except Exception as exc:
                self._closed = True
                self._queue.clear()
                self._idle.set()
                self._on_failure(self.ref, exc)
                return
        self._idle.set()


class FanOutTransport:
    """Route polling and trigger output from jobs to every bound channel."""

    def __init__(
        self,
        registry: SubscriptionRegistry,
        snapshots: SnapshotLoader,
        *,
        queue_size: int | Callable[[], int] = 100,
    ) -> None:
        self._registry = registry
        self._snapshots = snapshots
        self._queue_size = queue_size
        self._connections: dict[str, Connection] = {}
        self._outboxes: dict[ChannelRef, ChannelOutbox] = {}
        self._background: set[asyncio.Task[Any]] = set()

    @property
    def registry(self) -> SubscriptionRegistry:
        return self._registry

    @property
    def queue_size(self) -> int:
        return self._queue_size() if callable(self._queue_size) else self._queue_size

    def outbox(self, ref: ChannelRef) -> ChannelOutbox | None:
        return self._outboxes.get(ref)

    def attach(self, connection: Connection) -> None:
        """Start serving subscribe/unsubscribe messages arriving on ``connection``."""

        async def _on_message(message: dict[str, Any]) -> None:
            await self.handle_message(connection, message)

        async def _on_close() -> None:
            await self.detach(connection)

        self._connections[connection.connection_id] = connection
        connection.on_message(_on_message)
        connection.on_close(_on_close)
        logger.info("connection %s attached", connection.connection_id)

    async def detach(self, connection: Connection) -> None:
        if self._connections.pop(connection.connection_id, None) is None:
            return
        refs = [ref for ref in self._outboxes if ref.connection_id == connection.connection_id]
        for ref in refs:
            outbox = self._outboxes.pop(ref, None)
            if outbox is not None:
                await outbox.close()
        unbound = await self._registry.unsubscribe_connection(connection.connection_id)
        logger.info("connection %s detached (%d channel(s) unbound)", connection.connection_id, len(unbound))

    async def handle_message(self, connection: Connection, raw: Any) -> None:
        try:
            message = parse_client_message(raw)
        except MalformedMessageError as exc:
            if exc.channel_id is None:
                logger.warning("ignoring malformed message on connection %s: %s", connection.connection_id, exc)
                return
            await self._send_direct(connection, SubscriptionErrorMessage(channel_id=exc.channel_id, error=str(exc)))
            return
        if isinstance(message, SubscribeTable):
            await self._subscribe(connection, message)
        elif isinstance(message, UnsubscribeTable):
            await self._unsubscribe(connection, message.channel_id)

    async def on_change_batch(self, job_key: PollingJobKey, events: list[ChangeEvent]) -> None:
        """Send a polling refresh for one completed tick.

        When the batch had changes, every channel whose last refresh differs
        from the new snapshot gets it; channels flagged for resync get it on
        every tick. Errors propagate so the scheduler keeps the cursor where
        it was.
        """
        job = self._registry.job(job_key)
        if job is None or not self._registry.route_update(job_key):
            return
        if not events and not self._resync_refs(job_key):
            return
        rows = await self._snapshots.load(job.binding, job.filters)
        checksum = snapshot_checksum(rows)
        targets: list[ChannelRef] = []
        for ref in self._registry.route_update(job_key):
            outbox = self._outboxes.get(ref)
            if outbox is None:
                continue
            if outbox.needs_resync or (events and outbox.last_checksum != checksum):
                targets.append(ref)
                outbox.needs_resync = False
                outbox.last_checksum = checksum
                outbox.put(self._update(ref, job, UpdateType.POLLING_REFRESH, rows))
        if targets:
            logger.debug("polling refresh for %s sent to %d channel(s)", job_key, len(targets))

    async def on_poll_error(self, job_key: PollingJobKey, error: Exception) -> None:
        for ref in self._registry.route_update(job_key):
            outbox = self._outboxes.get(ref)
            if outbox is not None:
                outbox.put(PollingErrorMessage(channel_id=ref.channel_id, error=str(error)).to_wire())

    async def publish_trigger(self, job_key: PollingJobKey, event: ChangeEvent) -> int:
        """Deliver one source-trigger event; returns the number of channels it went to."""
        job = self._registry.job(job_key)
        if job is None:
            return 0
        if event.operation is not ChangeOperation.DELETE and not job.filters.matches(event.record):
            return 0
        data = job.filters.project(event.record, job.binding.config.key_column)
        delivered = 0
        async with job.tick_lock:
            for ref in self._registry.route_update(job_key):
                outbox = self._outboxes.get(ref)
                if outbox is not None and outbox.put(
                    self._update(ref, job, UpdateType.DATABASE_TRIGGER, data, event.operation)
                ):
                    delivered += 1
        return delivered

    async def wait_idle(self) -> None:
        """Wait for pending initial refreshes and for every outbox to drain."""
        current = asyncio.current_task()
        while True:
            pending = [task for task in self._background if task is not current and not task.done()]
            if pending:
                await asyncio.wait(pending)
            for outbox in list(self._outboxes.values()):
                await outbox.wait_idle()
            if not any(task is not current and not task.done() for task in self._background):
                return

    async def close(self) -> None:
        for task in list(self._background):
            task.cancel()
        for task in list(self._background):
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._background.clear()
        for connection in list(self._connections.values()):
            await self.detach(connection)

    def stats(self) -> dict[str, int]:
        return {
            "connections": len(self._connections),
            "outboxes": len(self._outboxes),
            "dropped_messages": sum(outbox.dropped for outbox in self._outboxes.values()),
        }

    async def _subscribe(self, connection: Connection, message: SubscribeTable) -> None:
        ref = ChannelRef(connection_id=connection.connection_id, channel_id=message.channel_id)
        previous = self._outboxes.pop(ref, None)
        if previous is not None:
            await previous.close()
        try:
            binding = await self._registry.subscribe(connection.connection_id, message)
        except SubscriptionError as exc:
            logger.info("subscription %s rejected: %s", message.channel_id, exc)
            await self._send_direct(connection, SubscriptionErrorMessage(channel_id=exc.channel_id, error=str(exc)))
            return
        if connection.closed or connection.connection_id not in self._connections:
            await self._registry.unsubscribe(connection.connection_id, message.channel_id)
            return
        job = self._registry.job(binding.job_key)
        outbox = ChannelOutbox(ref, connection, maxlen=self.queue_size, on_failure=self._on_send_failure)
        self._outboxes[ref] = outbox
        outbox.put(
            SubscriptionConfirmed(
                channel_id=message.channel_id,
                method="database_triggers" if binding.enable_database_triggers else "polling",
                polling_interval=int(job.interval.current_ms) if job is not None else None,
            ).to_wire()
        )
        self._spawn(self._initial_refresh(ref, binding.job_key))

    async def _unsubscribe(self, connection: Connection, channel_id: str) -> None:
        ref = ChannelRef(connection_id=connection.connection_id, channel_id=channel_id)
        outbox = self._outboxes.pop(ref, None)
        if outbox is not None:
            await outbox.close()
        await self._registry.unsubscribe(connection.connection_id, channel_id)

    async def _initial_refresh(self, ref: ChannelRef, job_key: PollingJobKey) -> None:
        job = self._registry.job(job_key)
        outbox = self._outboxes.get(ref)
        if job is None or outbox is None:
            return
        async with job.tick_lock:
            if self._outboxes.get(ref) is not outbox or not outbox.needs_resync:
                return
            try:
                rows = await self._snapshots.load(job.binding, job.filters)
            except Exception as exc:
                logger.warning("initial snapshot for %s failed: %s", job_key, exc)
                outbox.put(PollingErrorMessage(channel_id=ref.channel_id, error=str(exc)).to_wire())
                return
            outbox.needs_resync = False
            outbox.last_checksum = snapshot_checksum(rows)
            outbox.put(self._update(ref, job, UpdateType.POLLING_REFRESH, rows))

    def _resync_refs(self, job_key: PollingJobKey) -> list[ChannelRef]:
        refs = []
        for ref in self._registry.route_update(job_key):
            outbox = self._outboxes.get(ref)
            if outbox is not None and outbox.needs_resync:
                refs.append(ref)
        return refs

    def _update(
        self,
        ref: ChannelRef,
        job: PollingJob,
        update_type: UpdateType,
        data: Any,
        operation: ChangeOperation | None = None,
    ) -> dict[str, Any]:
        return TableUpdate(
            channel_id=ref.channel_id,
            update_type=update_type,
            data=data,
            operation=operation,
            service_name=job.key.service_name,
            entity_name=job.key.entity_name,
        ).to_wire()

    def _on_send_failure(self, ref: ChannelRef, error: Exception) -> None:
        connection = self._connections.get(ref.connection_id)
        logger.info("send to channel %s failed, unbinding connection: %s", ref.channel_id, error)
        if connection is not None:
            self._spawn(self.detach(connection))

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _send_direct(self, connection: Connection, message: WireMessage) -> None:
        try:
            await connection.send(message.to_wire())
        except Exception as exc:
            logger.info("could not reach connection %s: %s", connection.connection_id, exc)
