"""Optional source-side triggers: install NOTIFY triggers and route their events.

Polling keeps running for every job; triggers only add low-latency
``database_trigger`` updates on top of it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Protocol

import sqlalchemy as sa
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from tablewatch.realtime.catalog import EntityCatalog, TableBinding
from tablewatch.realtime.filters import TABLE_IDENTIFIER, is_identifier
from tablewatch.realtime.jobs import PollingJob
from tablewatch.realtime.models import ChangeEvent, ChangeOperation
from tablewatch.realtime.notify import Notification, NotifyAdapter
from tablewatch.realtime.registry import JobEvent, SubscriptionRegistry
from tablewatch.realtime.transport import FanOutTransport

logger = logging.getLogger(__name__)


def trigger_channel(prefix: str, service_name: str, entity_name: str) -> str:
    return f"{prefix}_{service_name}_{entity_name}".lower()


def build_trigger_ddl(table: str, service_name: str, entity_name: str, channel: str) -> list[str]:
    """Statements creating a row-level NOTIFY trigger on ``table`` (Postgres)."""
    if not TABLE_IDENTIFIER.match(table):
        raise ValueError(f"invalid table name: {table!r}")
    if not (is_identifier(service_name) and is_identifier(entity_name) and is_identifier(channel)):
        raise ValueError(f"invalid trigger identifiers for {service_name}/{entity_name}")
    function = f"{channel}_notify"
    trigger = f"{channel}_trigger"
    return [
        f"""
        CREATE OR REPLACE FUNCTION {function}() RETURNS TRIGGER AS $$
        BEGIN
          PERFORM pg_notify(
            '{channel}',
            json_build_object(
              'table', '{entity_name}',
              'service', '{service_name}',
              'operation', TG_OP,
              'data', CASE WHEN TG_OP = 'DELETE' THEN row_to_json(OLD) ELSE row_to_json(NEW) END,
              'timestamp', extract(epoch from now())
            )::text
          );
          RETURN NULL;
        END;
        $$ LANGUAGE plpgsql
        """,
        f"DROP TRIGGER IF EXISTS {trigger} ON {table}",
        f"CREATE TRIGGER {trigger} AFTER INSERT OR UPDATE OR DELETE ON {table} "
        f"FOR EACH ROW EXECUTE FUNCTION {function}()",
    ]


def event_from_notification(payload: dict[str, Any]) -> ChangeEvent | None:
    """Parse a trigger payload; returns None for anything unusable."""
    try:
        operation = ChangeOperation(str(payload.get("operation", "")).upper())
    except ValueError:
        return None
    record = payload.get("data")
    if not isinstance(record, dict):
        return None
    detected_at = datetime.now(timezone.utc)
    timestamp = payload.get("timestamp")
    if isinstance(timestamp, (int, float)):
        detected_at = datetime.fromtimestamp(float(timestamp), tz=timezone.utc)
    return ChangeEvent(operation=operation, record=record, detected_at=detected_at)


class TriggerInstaller(Protocol):
    async def install(self, binding: TableBinding, channel: str) -> None: ...


@dataclass(slots=True)
class PostgresTriggerInstaller:
    """Create (or replace) the NOTIFY function and trigger through SQLAlchemy."""

    engine: AsyncEngine

    async def install(self, binding: TableBinding, channel: str) -> None:
        statements = build_trigger_ddl(binding.table, binding.service_name, binding.entity_name, channel)
        async with self.engine.begin() as conn:
            for statement in statements:
                await conn.execute(sa.text(statement))
        logger.info("installed notify trigger on %s (channel %s)", binding.table, channel)


class DatabaseTriggerBridge:
    """Keep LISTEN channels in step with the jobs that asked for triggers."""

    def __init__(
        self,
        catalog: EntityCatalog,
        registry: SubscriptionRegistry,
        transport: FanOutTransport,
        *,
        channel_prefix: str = "tablewatch_rt",
    ) -> None:
        self._catalog = catalog
        self._registry = registry
        self._transport = transport
        self._channel_prefix = channel_prefix
        self._adapters: dict[str, NotifyAdapter] = {}
        self._installers: dict[str, TriggerInstaller] = {}
        self._installed: set[tuple[str, str]] = set()
        self._listening: dict[str, tuple[str, str]] = {}
        self._started = False

    def add_service(self, service_name: str, adapter: NotifyAdapter, installer: TriggerInstaller | None) -> None:
        self._adapters[service_name] = adapter
        if installer is not None:
            self._installers[service_name] = installer
        adapter.on_notification(self.handle_notification)

    def supports(self, service_name: str, entity_name: str) -> bool:
        if service_name not in self._adapters:
            return False
        return is_identifier(trigger_channel(self._channel_prefix, service_name, entity_name))

    def listening(self) -> list[str]:
        return sorted(self._listening)

    async def start(self) -> None:
        for service_name, adapter in self._adapters.items():
            await adapter.start()
            logger.info("trigger bridge started for service %s", service_name)
        self._started = True

    async def stop(self) -> None:
        self._started = False
        for adapter in self._adapters.values():
            await adapter.stop()
        self._listening.clear()

    async def on_job_event(self, event: JobEvent, job: PollingJob) -> None:  # noqa: ARG002
        """Registry listener: start or stop listening as trigger demand changes."""
        service_name, entity_name = job.key.service_name, job.key.entity_name
        wanted = any(
            other.triggers_enabled and not other.closed
            for other in self._registry.jobs_for_table(service_name, entity_name)
        )
        channel = trigger_channel(self._channel_prefix, service_name, entity_name)
        if wanted and channel not in self._listening:
            await self.activate(service_name, entity_name)
        elif not wanted and channel in self._listening:
            await self.deactivate(service_name, entity_name)

    async def activate(self, service_name: str, entity_name: str) -> bool:
        adapter = self._adapters.get(service_name)
        if adapter is None:
            logger.warning("database triggers not available for service %s, staying on polling", service_name)
            return False
        binding = self._catalog.resolve(service_name, entity_name)
        channel = trigger_channel(self._channel_prefix, service_name, entity_name)
        installer = self._installers.get(service_name)
        if installer is not None and (service_name, entity_name) not in self._installed:
            try:
                await installer.install(binding, channel)
            except (SQLAlchemyError, ValueError) as exc:
                logger.warning("could not install trigger for %s/%s, staying on polling: %s", service_name, entity_name, exc)
                return False
            self._installed.add((service_name, entity_name))
        await adapter.listen(channel)
        self._listening[channel] = (service_name, entity_name)
        logger.info("listening on %s for %s/%s", channel, service_name, entity_name)
        return True

    async def deactivate(self, service_name: str, entity_name: str) -> None:
        channel = trigger_channel(self._channel_prefix, service_name, entity_name)
        if self._listening.pop(channel, None) is None:
            return
        adapter = self._adapters.get(service_name)
        if adapter is not None:
            await adapter.unlisten(channel)
        logger.info("stopped listening on %s", channel)

    async def handle_notification(self, notification: Notification) -> None:
        target = self._listening.get(notification.channel)
        if target is None:
            return
        event = event_from_notification(notification.payload)
        if event is None:
            logger.warning("ignoring unusable trigger payload on %s", notification.channel)
            return
        delivered = 0
        for job in self._registry.jobs_for_table(*target, triggers_only=True):
            delivered += await self._transport.publish_trigger(job.key, event)
        logger.debug("%s on %s/%s delivered to %d channel(s)", event.operation.value, *target, delivered)
