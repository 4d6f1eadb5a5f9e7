"""Real-time change detection and fan-out."""

from tablewatch.realtime.catalog import EntityCatalog, TableBinding
from tablewatch.realtime.cleanup import CleanupStrategy, ProcessedMarkerCleanup, TimeBasedCleanup
from tablewatch.realtime.client import ChannelState, ClientContext, LiveTable, RealtimeDataClient, RealtimeSubscription
from tablewatch.realtime.connection import Connection, ConnectionClosedError, InMemoryConnection, WebSocketClientConnection
from tablewatch.realtime.cursor import CursorTracker
from tablewatch.realtime.detector import ChangeDetector, Detection, resolve_watch_column
from tablewatch.realtime.errors import (
    InvalidFiltersError,
    JobConfigurationError,
    MalformedMessageError,
    RealtimeError,
    SubscriptionError,
    UnknownEntityError,
    UnresolvableColumnError,
)
from tablewatch.realtime.filters import QueryFilters
from tablewatch.realtime.interval import AdaptiveInterval
from tablewatch.realtime.jobs import JobFactory, PollingJob
from tablewatch.realtime.models import ChangeEvent, ChangeOperation, ChannelRef, PollingJobKey, TriggerMode, UpdateType
from tablewatch.realtime.notify import InMemoryNotifyAdapter, NotifyAdapter, PostgresNotifyAdapter
from tablewatch.realtime.reconciler import ClientRecordSet
from tablewatch.realtime.registry import ChannelBinding, SubscriptionRegistry
from tablewatch.realtime.scheduler import AdaptiveScheduler
from tablewatch.realtime.server import RealtimeServer, StarletteWebSocketConnection
from tablewatch.realtime.snapshot import SnapshotLoader
from tablewatch.realtime.transport import ChannelOutbox, FanOutTransport
from tablewatch.realtime.triggers import DatabaseTriggerBridge, PostgresTriggerInstaller

__all__ = [
    "AdaptiveInterval",
    "AdaptiveScheduler",
    "ChangeDetector",
    "ChangeEvent",
    "ChangeOperation",
    "ChannelBinding",
    "ChannelOutbox",
    "ChannelRef",
    "ChannelState",
    "CleanupStrategy",
    "ClientContext",
    "ClientRecordSet",
    "Connection",
    "ConnectionClosedError",
    "CursorTracker",
    "DatabaseTriggerBridge",
    "Detection",
    "EntityCatalog",
    "FanOutTransport",
    "InMemoryConnection",
    "InMemoryNotifyAdapter",
    "InvalidFiltersError",
    "JobConfigurationError",
    "JobFactory",
    "LiveTable",
    "MalformedMessageError",
    "NotifyAdapter",
    "PollingJob",
    "PollingJobKey",
    "PostgresNotifyAdapter",
    "PostgresTriggerInstaller",
    "ProcessedMarkerCleanup",
    "QueryFilters",
    "RealtimeDataClient",
    "RealtimeError",
    "RealtimeServer",
    "RealtimeSubscription",
    "SnapshotLoader",
    "StarletteWebSocketConnection",
    "SubscriptionError",
    "SubscriptionRegistry",
    "TableBinding",
    "TimeBasedCleanup",
    "TriggerMode",
    "UnknownEntityError",
    "UnresolvableColumnError",
    "UpdateType",
    "WebSocketClientConnection",
    "resolve_watch_column",
]
