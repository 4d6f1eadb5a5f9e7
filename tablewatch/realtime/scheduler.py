"""Adaptive scheduler: one independent polling task per job."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable, Iterable
from time import monotonic

from tablewatch.realtime.detector import ChangeDetector
from tablewatch.realtime.errors import JobConfigurationError
from tablewatch.realtime.jobs import PollingJob
from tablewatch.realtime.models import ChangeEvent, PollingJobKey

logger = logging.getLogger(__name__)

OnChangeBatch = Callable[[PollingJobKey, list[ChangeEvent]], Awaitable[None]]
OnPollError = Callable[[PollingJobKey, Exception], Awaitable[None]]


async def _discard_batch(job_key: PollingJobKey, events: list[ChangeEvent]) -> None:  # noqa: ARG001
    return None


class AdaptiveScheduler:
    """Decide when each polling job runs and commit its results.

    A tick is one critical section per job: cursor read, query, delivery,
    cleanup, cursor advance and interval update never interleave with another
    tick of the same job. Different jobs run in parallel tasks.
    """

    def __init__(
        self,
        detector: ChangeDetector,
        *,
        on_change_batch: OnChangeBatch | None = None,
        on_poll_error: OnPollError | None = None,
        clock: Callable[[], float] = monotonic,
    ) -> None:
        self._detector = detector
        self._on_change_batch = on_change_batch or _discard_batch
        self._on_poll_error = on_poll_error
        self._clock = clock
        self._jobs: dict[PollingJobKey, PollingJob] = {}
        self._tasks: dict[PollingJobKey, asyncio.Task[None]] = {}
        self._wakeups: dict[PollingJobKey, asyncio.Event] = {}

    def set_handlers(self, *, on_change_batch: OnChangeBatch, on_poll_error: OnPollError | None = None) -> None:
        self._on_change_batch = on_change_batch
        self._on_poll_error = on_poll_error

    def get(self, key: PollingJobKey) -> PollingJob | None:
        return self._jobs.get(key)

    def jobs(self) -> list[PollingJob]:
        return list(self._jobs.values())

    def is_scheduled(self, key: PollingJobKey) -> bool:
        task = self._tasks.get(key)
        return task is not None and not task.done()

    def schedule(self, job: PollingJob, *, run_immediately: bool = False) -> None:
        """Start the job's polling task; the first tick waits one interval unless asked otherwise."""
        if job.key in self._jobs:
            raise ValueError(f"polling job already scheduled: {job.key}")
        job.next_run_at = self._clock() + (0.0 if run_immediately else job.interval.current_seconds)
        self._jobs[job.key] = job
        self._wakeups[job.key] = asyncio.Event()
        self._tasks[job.key] = asyncio.create_task(self._run(job), name=f"tablewatch-poll:{job.key}")

    def apply_requested(self, key: PollingJobKey, requested_ms: Iterable[float]) -> float | None:
        job = self._jobs.get(key)
        if job is None:
            return None
        before = job.interval.current_ms
        current = job.interval.apply_requested(requested_ms)
        if current < before:
            job.next_run_at = min(job.next_run_at, self._clock() + job.interval.current_seconds)
            self._wake(key)
        return current

    def cancel(self, key: PollingJobKey) -> bool:
        """Stop future ticks; an in-flight tick is left to finish on its own."""
        job = self._jobs.pop(key, None)
        if job is None:
            return False
        job.closed = True
        self._wake(key)
        self._wakeups.pop(key, None)
        self._tasks.pop(key, None)
        logger.info("polling job %s torn down", key)
        return True

    async def stop(self) -> None:
        tasks = list(self._tasks.values())
        for job in self._jobs.values():
            job.closed = True
        self._jobs.clear()
        self._tasks.clear()
        self._wakeups.clear()
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def tick(self, job: PollingJob) -> list[ChangeEvent]:
        async with job.tick_lock:
            events: list[ChangeEvent] = []
            try:
                detection = await self._detector.detect(job)
                events = detection.events
                await self._on_change_batch(job.key, events)
                if events:
                    await job.cleanup.after_delivery(job.binding, events)
                self._detector.cursors.advance(job.key, detection.cursor_candidate, job.timezone_offset_minutes)
                before = job.interval.current_ms
                after = job.interval.record_poll(len(events))
                if after != before:
                    logger.info(
                        "adaptive interval for %s: %.0fms -> %.0fms (changes: %d)", job.key, before, after, len(events)
                    )
            except JobConfigurationError as exc:
                job.failed_reason = str(exc)
                job.closed = True
                logger.error("polling job %s stopped: %s", job.key, exc)
                await self._report_error(job, exc)
                events = []
            except Exception as exc:
                job.interval.record_error()
                logger.warning("polling error for %s, retrying next tick: %s", job.key, exc)
                await self._report_error(job, exc)
                events = []
            finally:
                job.next_run_at = self._clock() + job.interval.current_seconds
            return events

    async def _report_error(self, job: PollingJob, error: Exception) -> None:
        if self._on_poll_error is None:
            return
        try:
            await self._on_poll_error(job.key, error)
        except Exception as exc:
            logger.warning("polling error handler failed for %s: %s", job.key, exc)

    def _wake(self, key: PollingJobKey) -> None:
        event = self._wakeups.get(key)
        if event is not None:
            event.set()

    async def _run(self, job: PollingJob) -> None:
        wakeup = self._wakeups[job.key]
        while not job.closed:
            delay = job.next_run_at - self._clock()
            if delay > 0:
                wakeup.clear()
                with contextlib.suppress(asyncio.TimeoutError):
                    await asyncio.wait_for(wakeup.wait(), timeout=delay)
                continue
            await self.tick(job)
        if job.failed_reason is not None and self._jobs.get(job.key) is job:
            self._jobs.pop(job.key, None)
            self._tasks.pop(job.key, None)
            self._wakeups.pop(job.key, None)
