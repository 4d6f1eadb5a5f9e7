"""Subscription registry: channels, the jobs they share, and per-key locking."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Literal

from tablewatch.realtime.errors import InvalidFiltersError, JobConfigurationError, SubscriptionError
from tablewatch.realtime.filters import QueryFilters
from tablewatch.realtime.jobs import PollingJob, job_key_for
from tablewatch.realtime.messages import SubscribeTable
from tablewatch.realtime.models import ChannelRef, PollingJobKey
from tablewatch.realtime.scheduler import AdaptiveScheduler

logger = logging.getLogger(__name__)

JobBuilder = Callable[[PollingJobKey, QueryFilters], Awaitable[PollingJob]]
JobEvent = Literal["created", "updated", "removed"]
JobListener = Callable[[JobEvent, PollingJob], Awaitable[None]]


@dataclass(slots=True)
class ChannelBinding:
    """One subscriber channel bound to a polling job."""

    ref: ChannelRef
    job_key: PollingJobKey
    filters: QueryFilters
    requested_interval_ms: int | None = None
    enable_database_triggers: bool = False


class SubscriptionRegistry:
    """Map channels to polling jobs; many channels may share one job.

    Mutations for a job key run under that key's lock only, so unrelated
    tables never wait on each other. ``route_update`` takes no lock.
    """

    def __init__(
        self,
        scheduler: AdaptiveScheduler,
        job_builder: JobBuilder,
        *,
        triggers_allowed: bool | Callable[[str, str], bool] = False,
        default_interval_ms: int | Callable[[], int] | None = None,
    ) -> None:
        self._scheduler = scheduler
        self._job_builder = job_builder
        self._triggers_allowed = triggers_allowed
        self._default_interval_ms = default_interval_ms
        self._bindings: dict[ChannelRef, ChannelBinding] = {}
        self._channels_by_job: dict[PollingJobKey, set[ChannelRef]] = {}
        self._channels_by_connection: dict[str, set[ChannelRef]] = {}
        self._jobs: dict[PollingJobKey, PollingJob] = {}
        self._jobs_by_table: dict[tuple[str, str], set[PollingJobKey]] = {}
        self._key_locks: dict[PollingJobKey, asyncio.Lock] = {}
        self._listeners: list[JobListener] = []

    def triggers_allowed(self, service_name: str, entity_name: str) -> bool:
        if callable(self._triggers_allowed):
            return self._triggers_allowed(service_name, entity_name)
        return self._triggers_allowed

    def default_interval_ms(self) -> int | None:
        """Interval applied for channels that did not ask for one."""
        if callable(self._default_interval_ms):
            return self._default_interval_ms()
        return self._default_interval_ms

    def add_listener(self, listener: JobListener) -> None:
        self._listeners.append(listener)

    @asynccontextmanager
    async def _locked(self, key: PollingJobKey) -> AsyncIterator[None]:
        while True:
            lock = self._key_locks.setdefault(key, asyncio.Lock())
            await lock.acquire()
            if self._key_locks.get(key) is lock:
                break
            # the key was torn down while we waited; retry on its new lock
            lock.release()
        try:
            yield
        finally:
            if key not in self._jobs and self._key_locks.get(key) is lock:
                del self._key_locks[key]
            lock.release()

    async def subscribe(self, connection_id: str, request: SubscribeTable) -> ChannelBinding:
        """Bind a channel, creating the job on first use. Failures never leave a job behind."""
        ref = ChannelRef(connection_id=connection_id, channel_id=request.channel_id)
        try:
            filters = QueryFilters.parse(request.filters)
        except InvalidFiltersError as exc:
            raise SubscriptionError(ref.channel_id, str(exc)) from exc
        key = job_key_for(request.service_name, request.entity_name, filters)

        wants_triggers = request.enable_database_triggers
        if wants_triggers and not self.triggers_allowed(request.service_name, request.entity_name):
            logger.warning("database triggers unavailable for %s; using polling", key)
            wants_triggers = False

        if ref in self._bindings:
            await self.unsubscribe(connection_id, request.channel_id)

        async with self._locked(key):
            job = self._jobs.get(key)
            if job is not None and job.closed:
                await self._drop_job(key, job)
                job = None
            created = job is None
            if job is None:
                try:
                    job = await self._job_builder(key, filters)
                except JobConfigurationError as exc:
                    raise SubscriptionError(ref.channel_id, str(exc)) from exc
                except Exception as exc:
                    logger.warning("could not create polling job %s: %s", key, exc)
                    raise SubscriptionError(ref.channel_id, f"subscription failed: {exc}") from exc
                self._jobs[key] = job
                self._jobs_by_table.setdefault((key.service_name, key.entity_name), set()).add(key)
                self._scheduler.schedule(job)

            binding = ChannelBinding(
                ref=ref,
                job_key=key,
                filters=filters,
                requested_interval_ms=request.polling_interval or self.default_interval_ms(),
                enable_database_triggers=wants_triggers,
            )
            self._bindings[ref] = binding
            self._channels_by_job.setdefault(key, set()).add(ref)
            self._channels_by_connection.setdefault(connection_id, set()).add(ref)
            self._refresh_job(job)
            await self._notify("created" if created else "updated", job)
        logger.info("channel %s bound to %s", ref.channel_id, key)
        return binding

    async def unsubscribe(self, connection_id: str, channel_id: str) -> bool:
        ref = ChannelRef(connection_id=connection_id, channel_id=channel_id)
        binding = self._bindings.get(ref)
        if binding is None:
            return False
        key = binding.job_key
        async with self._locked(key):
            if self._bindings.pop(ref, None) is None:
                return False
            refs = self._channels_by_connection.get(connection_id)
            if refs is not None:
                refs.discard(ref)
                if not refs:
                    del self._channels_by_connection[connection_id]
            channels = self._channels_by_job.get(key, set())
            channels.discard(ref)
            job = self._jobs.get(key)
            if not channels:
                self._channels_by_job.pop(key, None)
                if job is not None:
                    await self._drop_job(key, job)
            elif job is not None:
                self._refresh_job(job)
                await self._notify("updated", job)
        logger.info("channel %s unbound from %s", channel_id, key)
        return True

    async def unsubscribe_connection(self, connection_id: str) -> list[ChannelRef]:
        refs = list(self._channels_by_connection.get(connection_id, ()))
        for ref in refs:
            await self.unsubscribe(ref.connection_id, ref.channel_id)
        return refs

    def route_update(self, key: PollingJobKey) -> frozenset[ChannelRef]:
        return frozenset(self._channels_by_job.get(key, ()))

    def binding(self, ref: ChannelRef) -> ChannelBinding | None:
        return self._bindings.get(ref)

    def job(self, key: PollingJobKey) -> PollingJob | None:
        return self._jobs.get(key)

    def jobs_for_table(self, service_name: str, entity_name: str, *, triggers_only: bool = False) -> list[PollingJob]:
        keys = self._jobs_by_table.get((service_name, entity_name), set())
        jobs = [self._jobs[key] for key in keys if key in self._jobs]
        if triggers_only:
            jobs = [job for job in jobs if job.triggers_enabled]
        return jobs

    def stats(self) -> dict[str, int]:
        return {
            "jobs": len(self._jobs),
            "channels": len(self._bindings),
            "connections": len(self._channels_by_connection),
        }

    def _refresh_job(self, job: PollingJob) -> None:
        bindings = [self._bindings[ref] for ref in self._channels_by_job.get(job.key, ()) if ref in self._bindings]
        job.triggers_enabled = any(binding.enable_database_triggers for binding in bindings)
        self._scheduler.apply_requested(
            job.key,
            [binding.requested_interval_ms for binding in bindings if binding.requested_interval_ms],
        )

    async def _drop_job(self, key: PollingJobKey, job: PollingJob) -> None:
        self._jobs.pop(key, None)
        table_keys = self._jobs_by_table.get((key.service_name, key.entity_name))
        if table_keys is not None:
            table_keys.discard(key)
            if not table_keys:
                del self._jobs_by_table[(key.service_name, key.entity_name)]
        self._scheduler.cancel(key)
        job.closed = True
        await self._notify("removed", job)

    async def _notify(self, event: JobEvent, job: PollingJob) -> None:
        for listener in list(self._listeners):
            try:
                await listener(event, job)
            except Exception as exc:
                logger.warning("job listener failed on %s for %s: %s", event, job.key, exc)
