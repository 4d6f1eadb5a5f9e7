"""Database trigger DDL, payload parsing and notification routing."""

from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy.exc import ProgrammingError

from tablewatch import TableWatch
from tablewatch.config import TableWatchConfig, TriggersConfig
from tablewatch.db.memory import InMemoryRowSource
from tablewatch.realtime.catalog import TableBinding
from tablewatch.realtime.connection import InMemoryConnection
from tablewatch.realtime.models import ChangeOperation, ChannelRef
from tablewatch.realtime.notify import InMemoryNotifyAdapter
from tablewatch.realtime.triggers import build_trigger_ddl, event_from_notification, trigger_channel

CHANNEL = "tablewatch_rt_shop_orders"


@dataclass
class _Installer:
    installed: list[tuple[str, str]] = field(default_factory=list)
    fail: bool = False

    async def install(self, binding: TableBinding, channel: str) -> None:
        if self.fail:
            raise ProgrammingError("CREATE TRIGGER", {}, Exception("permission denied"))
        self.installed.append((binding.table, channel))


@pytest.fixture
def shop_settings(shop_settings: TableWatchConfig) -> TableWatchConfig:
    return shop_settings.model_copy(update={"triggers": TriggersConfig(enabled=True)})


@pytest.fixture
def adapter() -> InMemoryNotifyAdapter:
    return InMemoryNotifyAdapter()


@pytest_asyncio.fixture
async def watch(
    shop_settings: TableWatchConfig, shop_source: InMemoryRowSource, adapter: InMemoryNotifyAdapter
) -> AsyncIterator[TableWatch]:
    instance = TableWatch(shop_settings, sources={"shop": shop_source}, notify_adapters={"shop": adapter})
    await instance.start_core()
    try:
        yield instance
    finally:
        await instance.stop_core()


def _subscribe(channel_id: str, **extra: Any) -> dict[str, Any]:
    return {
        "type": "subscribe_table",
        "serviceName": "shop",
        "entityName": "orders",
        "channelId": channel_id,
        "enableDatabaseTriggers": True,
        **extra,
    }


def _payload(operation: str, data: dict[str, Any]) -> dict[str, Any]:
    return {"table": "orders", "service": "shop", "operation": operation, "data": data, "timestamp": 1700000000.5}


def test_trigger_channel_is_lowercase() -> None:
    assert trigger_channel("tablewatch_rt", "Shop", "Orders") == CHANNEL


def test_trigger_ddl_notifies_on_every_row_change() -> None:
    statements = build_trigger_ddl("public.orders", "shop", "orders", CHANNEL)
    assert len(statements) == 3
    assert f"CREATE OR REPLACE FUNCTION {CHANNEL}_notify()" in statements[0]
    assert "PERFORM pg_notify(" in statements[0]
    assert f"'{CHANNEL}'," in statements[0]
    assert "row_to_json(OLD)" in statements[0]
    assert statements[1] == f"DROP TRIGGER IF EXISTS {CHANNEL}_trigger ON public.orders"
    assert "AFTER INSERT OR UPDATE OR DELETE ON public.orders" in statements[2]


@pytest.mark.parametrize(
    ("table", "service", "entity"),
    [("orders; drop table x", "shop", "orders"), ("orders", "shop-eu", "orders"), ("orders", "shop", "o'rders")],
)
def test_trigger_ddl_rejects_unsafe_identifiers(table: str, service: str, entity: str) -> None:
    with pytest.raises(ValueError):
        build_trigger_ddl(table, service, entity, CHANNEL)


def test_event_from_notification() -> None:
    event = event_from_notification(_payload("update", {"id": 1, "status": "paid"}))
    assert event is not None
    assert event.operation is ChangeOperation.UPDATE
    assert event.record == {"id": 1, "status": "paid"}
    assert event.detected_at.timestamp() == 1700000000.5


@pytest.mark.parametrize(
    "payload",
    [
        {"operation": "TRUNCATE", "data": {"id": 1}},
        {"operation": "INSERT", "data": [1, 2]},
        {"operation": "INSERT"},
        {"raw_payload": "not json", "parse_error": True},
    ],
)
def test_unusable_payloads_are_ignored(payload: dict[str, Any]) -> None:
    assert event_from_notification(payload) is None


@pytest.mark.asyncio
async def test_trigger_subscription_listens_and_routes_events(watch: TableWatch, adapter: InMemoryNotifyAdapter) -> None:
    client, server = InMemoryConnection.pair()
    watch.transport.attach(server)
    await client.send(_subscribe("a"))
    await watch.transport.wait_idle()

    assert server.sent[0]["method"] == "database_triggers"
    assert adapter.channels == {CHANNEL}
    assert watch.bridge.listening() == [CHANNEL]

    assert await adapter.notify(CHANNEL, _payload("INSERT", {"id": 7, "status": "open"}))
    await watch.transport.wait_idle()

    update = server.sent[-1]
    assert update["updateType"] == "database_trigger"
    assert update["operation"] == "INSERT"
    assert update["data"] == {"id": 7, "status": "open"}


@pytest.mark.asyncio
async def test_only_trigger_channels_receive_trigger_events(watch: TableWatch, adapter: InMemoryNotifyAdapter) -> None:
    client, server = InMemoryConnection.pair()
    watch.transport.attach(server)
    await client.send(_subscribe("with_triggers", filters={"filter": {"status": "open"}}))
    await client.send(_subscribe("polling_only", enableDatabaseTriggers=False))
    await watch.transport.wait_idle()

    await adapter.notify(CHANNEL, _payload("DELETE", {"id": 1}))
    await watch.transport.wait_idle()

    trigger_targets = [m["channelId"] for m in server.sent if m.get("updateType") == "database_trigger"]
    assert trigger_targets == ["with_triggers"]


@pytest.mark.asyncio
async def test_last_trigger_channel_leaving_stops_listening(watch: TableWatch, adapter: InMemoryNotifyAdapter) -> None:
    client, server = InMemoryConnection.pair()
    watch.transport.attach(server)
    await client.send(_subscribe("a"))
    await client.send(_subscribe("b", enableDatabaseTriggers=False))
    await watch.transport.wait_idle()

    await client.send({"type": "unsubscribe_table", "channelId": "a"})

    assert adapter.channels == set()
    assert watch.bridge.listening() == []
    # polling carries on for the remaining channel
    assert watch.registry.binding(ChannelRef(server.connection_id, "b")) is not None
    assert not await adapter.notify(CHANNEL, _payload("INSERT", {"id": 9}))


@pytest.mark.asyncio
async def test_trigger_is_installed_once(shop_settings: TableWatchConfig, shop_source: InMemoryRowSource) -> None:
    adapter, installer = InMemoryNotifyAdapter(), _Installer()
    watch = TableWatch(shop_settings, sources={"shop": shop_source})
    watch.bridge.add_service("shop", adapter, installer)
    await watch.start_core()
    try:
        client, server = InMemoryConnection.pair()
        watch.transport.attach(server)
        await client.send(_subscribe("a"))
        await client.send({"type": "unsubscribe_table", "channelId": "a"})
        await client.send(_subscribe("b"))
        await watch.transport.wait_idle()
    finally:
        await watch.stop_core()
    assert installer.installed == [("orders", CHANNEL)]


@pytest.mark.asyncio
async def test_install_failure_keeps_polling(shop_settings: TableWatchConfig, shop_source: InMemoryRowSource) -> None:
    adapter, installer = InMemoryNotifyAdapter(), _Installer(fail=True)
    watch = TableWatch(shop_settings, sources={"shop": shop_source})
    watch.bridge.add_service("shop", adapter, installer)
    await watch.start_core()
    try:
        client, server = InMemoryConnection.pair()
        watch.transport.attach(server)
        await client.send(_subscribe("a"))
        await watch.transport.wait_idle()
        assert adapter.channels == set()
        assert [m["type"] for m in server.sent] == ["subscription_confirmed", "table_update"]
    finally:
        await watch.stop_core()


@pytest.mark.asyncio
async def test_services_without_adapter_fall_back_to_polling(
    shop_settings: TableWatchConfig, shop_source: InMemoryRowSource
) -> None:
    watch = TableWatch(shop_settings, sources={"shop": shop_source})
    await watch.start_core()
    try:
        client, server = InMemoryConnection.pair()
        watch.transport.attach(server)
        await client.send(_subscribe("a"))
        await watch.transport.wait_idle()
        assert server.sent[0]["method"] == "polling"
    finally:
        await watch.stop_core()
