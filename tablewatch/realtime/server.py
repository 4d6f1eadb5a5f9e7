"""Starlette server exposing the list endpoint and the real-time websocket."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from typing import Any
from uuid import uuid4

import uvicorn
from starlette.applications import Starlette
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route, WebSocketRoute
from starlette.websockets import WebSocket, WebSocketDisconnect

from tablewatch.config.models import TransportConfig
from tablewatch.db.exceptions import DatabaseError, UnknownColumnError, UnknownTableError
from tablewatch.realtime.catalog import EntityCatalog
from tablewatch.realtime.connection import Connection, ConnectionClosedError
from tablewatch.realtime.errors import InvalidFiltersError, UnknownEntityError
from tablewatch.realtime.filters import QueryFilters
from tablewatch.realtime.messages import RealtimeInfo, SnapshotResponse
from tablewatch.realtime.snapshot import SnapshotLoader
from tablewatch.realtime.transport import FanOutTransport

logger = logging.getLogger(__name__)

FILTER_PARAMS = ("page", "fields", "sort", "filter")

Lifespan = Callable[[Starlette], AbstractAsyncContextManager[None]]


class StarletteWebSocketConnection(Connection):
    """Server side of one websocket, fed by ``serve()``'s receive loop."""

    def __init__(self, websocket: WebSocket) -> None:
        super().__init__()
        self._websocket = websocket

    async def send(self, message: dict[str, Any]) -> None:
        if self._closed:
            raise ConnectionClosedError(f"connection {self.connection_id} is closed")
        try:
            await self._websocket.send_json(message)
        except (WebSocketDisconnect, RuntimeError, OSError) as exc:
            await self._mark_closed()
            raise ConnectionClosedError(str(exc) or "websocket closed") from exc

    async def close(self) -> None:
        if self._closed:
            return
        try:
            await self._websocket.close()
        except (RuntimeError, OSError) as exc:
            logger.debug("websocket %s already gone: %s", self.connection_id, exc)
        await self._mark_closed()

    async def serve(self) -> None:
        try:
            while not self._closed:
                raw = await self._websocket.receive_text()
                try:
                    message = json.loads(raw)
                except ValueError:
                    logger.warning("dropping non-JSON frame on connection %s", self.connection_id)
                    continue
                if not isinstance(message, dict):
                    logger.warning("dropping non-object frame on connection %s", self.connection_id)
                    continue
                await self._dispatch(message)
        except WebSocketDisconnect:
            logger.info("connection %s disconnected", self.connection_id)
        finally:
            await self._mark_closed()


class RealtimeServer:
    """List endpoint, websocket route and health check on one Starlette app."""

    def __init__(
        self,
        *,
        catalog: EntityCatalog,
        transport: FanOutTransport,
        snapshots: SnapshotLoader,
        config: TransportConfig | Callable[[], TransportConfig] | None = None,
        realtime_enabled: bool = True,
        lifespan: Lifespan | None = None,
    ) -> None:
        self._catalog = catalog
        self._transport = transport
        self._snapshots = snapshots
        self._config = config or TransportConfig()
        self._realtime_enabled = realtime_enabled
        self._server: Any | None = None
        self._server_task: asyncio.Task[None] | None = None

        settings = self.config
        self._app = Starlette(
            routes=[
                Route("/api/v2/{service}/_table/{entity}", endpoint=self._list_rows, methods=["GET"]),
                Route("/health", endpoint=self._health, methods=["GET"]),
                WebSocketRoute(settings.socket_path, endpoint=self._websocket),
            ],
            lifespan=lifespan,
        )
        self._app.add_middleware(
            CORSMiddleware, allow_origins=settings.cors_origins, allow_methods=["*"], allow_headers=["*"]
        )

    @property
    def app(self) -> Starlette:
        return self._app

    @property
    def config(self) -> TransportConfig:
        return self._config() if callable(self._config) else self._config

    async def start(self) -> None:
        if self._server_task is not None:
            return
        settings = self.config
        config = uvicorn.Config(self._app, host=settings.host, port=settings.port, log_level="warning")
        self._server = uvicorn.Server(config=config)
        self._server_task = asyncio.create_task(self._server.serve())
        logger.info("real-time server listening on %s:%d", settings.host, settings.port)

    async def stop(self) -> None:
        if self._server is not None:
            self._server.should_exit = True
        if self._server_task is not None:
            await self._server_task
            self._server_task = None
            self._server = None

    async def _list_rows(self, request: Request) -> JSONResponse:
        service_name = request.path_params["service"]
        entity_name = request.path_params["entity"]
        raw = {name: request.query_params[name] for name in FILTER_PARAMS if name in request.query_params}
        try:
            filters = QueryFilters.parse(raw)
            binding = self._catalog.resolve(service_name, entity_name)
        except UnknownEntityError as exc:
            return JSONResponse({"error": "not_found", "message": str(exc)}, status_code=404)
        except InvalidFiltersError as exc:
            return JSONResponse({"error": "invalid_filters", "message": str(exc)}, status_code=400)

        try:
            rows = await self._snapshots.load(binding, filters)
        except UnknownColumnError as exc:
            return JSONResponse({"error": "invalid_filters", "message": str(exc)}, status_code=400)
        except UnknownTableError as exc:
            return JSONResponse({"error": "not_found", "message": str(exc)}, status_code=404)
        except DatabaseError as exc:
            logger.warning("list query for %s/%s failed: %s", service_name, entity_name, exc)
            return JSONResponse({"error": "source_unavailable", "message": str(exc)}, status_code=503)

        wants_realtime = request.query_params.get("realtime", "true").lower() not in {"false", "0", "no"}
        enabled = self._realtime_enabled and wants_realtime
        realtime = RealtimeInfo(
            enabled=enabled,
            socket_url=self.config.advertised_socket_url() if enabled else None,
            channel_id=f"{service_name}_{entity_name}_{uuid4().hex[:12]}" if enabled else None,
        )
        return JSONResponse(SnapshotResponse(data=rows, realtime=realtime).to_wire())

    async def _health(self, request: Request) -> JSONResponse:  # noqa: ARG002
        return JSONResponse(
            {
                "status": "ok",
                "realtime_enabled": self._realtime_enabled,
                **self._transport.registry.stats(),
                **{f"transport_{name}": value for name, value in self._transport.stats().items()},
            }
        )

    async def _websocket(self, websocket: WebSocket) -> None:
        await websocket.accept()
        connection = StarletteWebSocketConnection(websocket)
        self._transport.attach(connection)
        await connection.serve()
