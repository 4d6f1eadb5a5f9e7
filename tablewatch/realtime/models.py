"""Core data types shared by the change-detection and fan-out components."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class ChangeOperation(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class TriggerMode(str, Enum):
    NEW_ROW = "newRow"
    UPDATED_ROW = "updatedRow"


class UpdateType(str, Enum):
    POLLING_REFRESH = "polling_refresh"
    DATABASE_TRIGGER = "database_trigger"


@dataclass(frozen=True, slots=True)
class PollingJobKey:
    """Identity of one deduplicated unit of polling work.

    ``filters`` is the canonical JSON produced by ``QueryFilters.canonical()``,
    so two subscriptions with equivalent filters compare equal.
    """

    service_name: str
    entity_name: str
    filters: str = "{}"

    def __str__(self) -> str:
        return f"{self.service_name}/{self.entity_name}{self.filters}"


@dataclass(slots=True)
class ChangeEvent:
    """One row-level change detected in a source table."""

    operation: ChangeOperation
    record: dict[str, Any]
    source_cursor_value: Any = None
    detected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def record_id(self) -> Any:
        return self.record.get("id")


@dataclass(frozen=True, slots=True)
class ChannelRef:
    """A subscriber channel; ids are only unique within one connection."""

    connection_id: str
    channel_id: str
