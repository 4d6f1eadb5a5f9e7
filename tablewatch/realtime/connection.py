"""Duplex connection abstraction used by the transport and the client.

The transport never touches a socket directly: anything that can ``send`` a
JSON object, deliver incoming objects to ``on_message`` handlers and be
``close``d works (Starlette websocket, ``websockets`` client, in-process pair).
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from typing import Any
from uuid import uuid4

import websockets
from websockets.exceptions import ConnectionClosed

logger = logging.getLogger(__name__)

MessageHandler = Callable[[dict[str, Any]], Awaitable[None]]
CloseHandler = Callable[[], Awaitable[None]]


class ConnectionClosedError(ConnectionError):
    """Raised when sending on a connection that is already closed."""


class Connection(ABC):
    """One duplex message channel between a client and the server."""

    def __init__(self, connection_id: str | None = None) -> None:
        self.connection_id = connection_id or uuid4().hex
        self._message_handlers: list[MessageHandler] = []
        self._close_handlers: list[CloseHandler] = []
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def on_message(self, handler: MessageHandler) -> None:
        self._message_handlers.append(handler)

    def on_close(self, handler: CloseHandler) -> None:
        self._close_handlers.append(handler)

    @abstractmethod
    async def send(self, message: dict[str, Any]) -> None: ...

    @abstractmethod
    async def close(self) -> None: ...

    async def _dispatch(self, message: dict[str, Any]) -> None:
        for handler in list(self._message_handlers):
            await handler(message)

    async def _mark_closed(self) -> None:
        if self._closed:
            return
        self._closed = True
        for handler in list(self._close_handlers):
            try:
                await handler()
            except Exception as exc:
                logger.warning("close handler failed on connection %s: %s", self.connection_id, exc)


class InMemoryConnection(Connection):
    """In-process endpoint; ``pair()`` returns two connected ends."""

    def __init__(self, connection_id: str | None = None) -> None:
        super().__init__(connection_id)
        self._peer: InMemoryConnection | None = None
        self.sent: list[dict[str, Any]] = []

    @classmethod
    def pair(cls) -> tuple[InMemoryConnection, InMemoryConnection]:
        left, right = cls(), cls()
        left._peer, right._peer = right, left
        return left, right

    async def send(self, message: dict[str, Any]) -> None:
        if self._closed:
            raise ConnectionClosedError(f"connection {self.connection_id} is closed")
        # serialise to catch payloads that would not survive a real socket
        decoded = json.loads(json.dumps(message))
        self.sent.append(decoded)
        if self._peer is not None and not self._peer.closed:
            await self._peer._dispatch(decoded)

    async def close(self) -> None:
        if self._closed:
            return
        await self._mark_closed()
        peer = self._peer
        if peer is not None:
            await peer._mark_closed()


class WebSocketClientConnection(Connection):
    """Client side of a tablewatch websocket using the ``websockets`` library."""

    def __init__(self, url: str, *, headers: dict[str, str] | None = None) -> None:
        super().__init__()
        self._url = url
        self._headers = headers or {}
        self._ws: Any | None = None
        self._reader: asyncio.Task[None] | None = None

    async def connect(self) -> None:
        self._ws = await websockets.connect(self._url, additional_headers=self._headers)
        self._reader = asyncio.create_task(self._read_loop())
        logger.info("connected to %s", self._url)

    async def send(self, message: dict[str, Any]) -> None:
        if self._ws is None or self._closed:
            raise ConnectionClosedError("websocket is not connected")
        try:
            await self._ws.send(json.dumps(message))
        except ConnectionClosed as exc:
            await self._mark_closed()
            raise ConnectionClosedError(str(exc)) from exc

    async def close(self) -> None:
        if self._ws is not None:
            await self._ws.close()
        if self._reader is not None:
            self._reader.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._reader
            self._reader = None
        await self._mark_closed()

    async def _read_loop(self) -> None:
        ws = self._ws
        if ws is None:
            await self._mark_closed()
            return
        try:
            async for raw in ws:
                try:
                    message = json.loads(raw)
                except (TypeError, ValueError):
                    logger.warning("dropping non-JSON frame from %s", self._url)
                    continue
                if isinstance(message, dict):
                    await self._dispatch(message)
        except ConnectionClosed:
            logger.info("websocket to %s closed", self._url)
        finally:
            await self._mark_closed()
