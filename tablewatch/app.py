"""TableWatch application: configuration, sources and the real-time core in one place."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from starlette.applications import Starlette

from tablewatch.config import ConfigManager, TableWatchConfig
from tablewatch.db.engine import dispose_engine, get_engine
from tablewatch.db.source import RowSource, SQLAlchemyRowSource
from tablewatch.realtime.catalog import EntityCatalog
from tablewatch.realtime.cursor import CursorTracker
from tablewatch.realtime.detector import ChangeDetector
from tablewatch.realtime.jobs import JobFactory, PollingJob
from tablewatch.realtime.notify import NotifyAdapter, PostgresNotifyAdapter
from tablewatch.realtime.registry import JobEvent, SubscriptionRegistry
from tablewatch.realtime.scheduler import AdaptiveScheduler
from tablewatch.realtime.server import RealtimeServer
from tablewatch.realtime.snapshot import SnapshotLoader
from tablewatch.realtime.transport import FanOutTransport
from tablewatch.realtime.triggers import DatabaseTriggerBridge, PostgresTriggerInstaller

logger = logging.getLogger(__name__)


class TableWatch:
    """Watch configured tables and serve their changes to subscribers.

    With no explicit ``config`` the process-wide ``ConfigManager`` is used and
    hot-reloadable settings (polling policy, outbox size) take effect for new
    polling jobs and channels without a restart.

    Args:
        config: Fixed configuration; bypasses ``ConfigManager``.
        sources: Row sources by service name, replacing the configured
            database URL for that service.
        notify_adapters: Trigger notification adapters by service name.
    """

    def __init__(
        self,
        config: TableWatchConfig | None = None,
        *,
        sources: dict[str, RowSource] | None = None,
        notify_adapters: dict[str, NotifyAdapter] | None = None,
    ) -> None:
        self._static_config = config
        self._owned_urls: list[str] = []
        settings = self.config

        self.cursors = CursorTracker()
        self.catalog = EntityCatalog()
        self.detector = ChangeDetector(self.cursors)
        self.scheduler = AdaptiveScheduler(self.detector)
        self.job_factory = JobFactory(self.catalog, self.cursors, lambda: self.config.polling)
        self.snapshots = SnapshotLoader(lambda: self.config.polling.page_size)
        self.registry = SubscriptionRegistry(
            self.scheduler,
            self.job_factory.create,
            triggers_allowed=self._triggers_allowed,
            default_interval_ms=lambda: self.config.polling.default_polling_interval_ms,
        )
        self.transport = FanOutTransport(
            self.registry,
            self.snapshots,
            queue_size=lambda: self.config.transport.channel_queue_size,
        )
        self.scheduler.set_handlers(
            on_change_batch=self.transport.on_change_batch,
            on_poll_error=self.transport.on_poll_error,
        )
        self.bridge = DatabaseTriggerBridge(
            self.catalog,
            self.registry,
            self.transport,
            channel_prefix=settings.triggers.channel_prefix,
        )
        self.registry.add_listener(self._on_job_event)
        self.server = RealtimeServer(
            catalog=self.catalog,
            transport=self.transport,
            snapshots=self.snapshots,
            config=lambda: self.config.transport,
            lifespan=self._lifespan,
        )
        self._add_sources(settings, sources or {}, notify_adapters or {})
        if config is None:
            ConfigManager.instance().on_change(self._on_config_change)
        self._core_started = False

    @property
    def config(self) -> TableWatchConfig:
        if self._static_config is not None:
            return self._static_config
        return ConfigManager.instance().get()

    @property
    def app(self) -> Starlette:
        return self.server.app

    async def start_core(self) -> None:
        if self._core_started:
            return
        await self.bridge.start()
        self._core_started = True
        logger.info("tablewatch started (%d entities)", len(self.catalog.entities()))

    async def stop_core(self) -> None:
        if not self._core_started:
            return
        self._core_started = False
        await self.transport.close()
        await self.scheduler.stop()
        await self.bridge.stop()
        for url in self._owned_urls:
            await dispose_engine(url)
        logger.info("tablewatch stopped")

    async def start(self) -> None:
        """Serve over uvicorn in the background; the core starts with the app lifespan."""
        await self.server.start()

    async def stop(self) -> None:
        await self.server.stop()
        await self.stop_core()

    def health_status(self) -> dict[str, Any]:
        return {
            "core_started": self._core_started,
            "entities": len(self.catalog.entities()),
            "listening_channels": self.bridge.listening(),
            **self.registry.stats(),
            **self.transport.stats(),
        }

    @asynccontextmanager
    async def _lifespan(self, app: Starlette) -> AsyncIterator[None]:  # noqa: ARG002
        await self.start_core()
        try:
            yield
        finally:
            await self.stop_core()

    def _add_sources(
        self,
        settings: TableWatchConfig,
        sources: dict[str, RowSource],
        notify_adapters: dict[str, NotifyAdapter],
    ) -> None:
        for service_name, source_config in settings.sources.items():
            source = sources.get(service_name)
            dialect = ""
            engine = None
            if source is None:
                engine = get_engine(source_config.database_url)
                self._owned_urls.append(source_config.database_url)
                source = SQLAlchemyRowSource(engine)
                dialect = source.dialect_name
            elif isinstance(source, SQLAlchemyRowSource):
                engine = source.engine
                dialect = source.dialect_name
            self.catalog.add_service(service_name, source, source_config.tables)

            if not settings.triggers.enabled:
                continue
            adapter = notify_adapters.get(service_name)
            if adapter is not None:
                installer = PostgresTriggerInstaller(engine) if engine is not None and dialect == "postgresql" else None
                self.bridge.add_service(service_name, adapter, installer)
            elif engine is not None and dialect == "postgresql":
                self.bridge.add_service(
                    service_name,
                    PostgresNotifyAdapter(
                        source_config.database_url,
                        reconnect_interval=settings.triggers.reconnect_interval_seconds,
                    ),
                    PostgresTriggerInstaller(engine),
                )
            else:
                logger.warning(
                    "database triggers are not supported for service %s (dialect %r); polling only",
                    service_name,
                    dialect or "unknown",
                )

        for service_name in sources.keys() - settings.sources.keys():
            logger.warning("ignoring row source for unconfigured service %s", service_name)

    def _triggers_allowed(self, service_name: str, entity_name: str) -> bool:
        return self.config.triggers.enabled and self.bridge.supports(service_name, entity_name)

    async def _on_job_event(self, event: JobEvent, job: PollingJob) -> None:
        if event == "removed":
            self.cursors.discard(job.key)
        await self.bridge.on_job_event(event, job)

    def _on_config_change(self, old: TableWatchConfig, new: TableWatchConfig) -> None:
        if old.polling != new.polling:
            logger.info("polling settings changed; new polling jobs use the updated policy")
        if old.transport.channel_queue_size != new.transport.channel_queue_size:
            logger.info("channel_queue_size is now %d for new channels", new.transport.channel_queue_size)
