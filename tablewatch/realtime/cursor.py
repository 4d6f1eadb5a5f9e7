"""Per-job change-detection watermarks."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from threading import Lock
from typing import Any

from tablewatch.realtime.models import PollingJobKey

logger = logging.getLogger(__name__)


def normalize_watermark(value: Any, offset_minutes: int) -> Any:
    """Map a watermark onto a clock-independent scale for comparisons.

    Naive datetimes are source-local: the source runs ``offset_minutes``
    ahead of UTC, so the offset is subtracted. Aware datetimes are converted to
    UTC directly. Dates compare as midnight. Anything else (ints, strings) is
    compared as-is.
    """
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            return value.astimezone(timezone.utc).replace(tzinfo=None)
        return value - timedelta(minutes=offset_minutes)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day) - timedelta(minutes=offset_minutes)
    return value


def source_now(offset_minutes: int) -> datetime:
    """Current time on the source database's clock, as a naive datetime."""
    return (datetime.now(timezone.utc) + timedelta(minutes=offset_minutes)).replace(tzinfo=None)


@dataclass(slots=True)
class CursorState:
    value: Any
    offset_minutes: int


class CursorTracker:
    """Holds the last delivered watermark for every polling job.

    Values only ever move forward (after clock-skew normalisation); an
    ``advance`` with an older value is ignored.
    """

    def __init__(self) -> None:
        self._states: dict[PollingJobKey, CursorState] = {}
        self._lock = Lock()

    def seed(self, key: PollingJobKey, offset_minutes: int = 0, *, lookback_seconds: int = 60) -> Any:
        """Initialise a job's cursor a little before "now" on the source clock."""
        with self._lock:
            existing = self._states.get(key)
            if existing is not None:
                return existing.value
            value = source_now(offset_minutes) - timedelta(seconds=lookback_seconds)
            self._states[key] = CursorState(value=value, offset_minutes=offset_minutes)
            return value

    def get(self, key: PollingJobKey) -> Any:
        with self._lock:
            state = self._states.get(key)
            return None if state is None else state.value

    def advance(self, key: PollingJobKey, candidate: Any, offset_minutes: int = 0) -> bool:
        """Move the cursor to ``candidate`` if it is newer; returns whether it moved."""
        if candidate is None:
            return False
        with self._lock:
            state = self._states.get(key)
            if state is None:
                self._states[key] = CursorState(value=candidate, offset_minutes=offset_minutes)
                return True
            try:
                newer = normalize_watermark(candidate, state.offset_minutes) > normalize_watermark(
                    state.value, state.offset_minutes
                )
            except TypeError:
                logger.warning("cursor for %s got incomparable value %r (current %r), ignored", key, candidate, state.value)
                return False
            if newer:
                state.value = candidate
            return newer

    def discard(self, key: PollingJobKey) -> None:
        with self._lock:
            self._states.pop(key, None)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._states
