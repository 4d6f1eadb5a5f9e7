"""Wire messages exchanged over a real-time connection.

Every message is a flat JSON object whose ``type`` names the event, e.g.
``{"type": "unsubscribe_table", "channelId": "orders_1a2b"}``.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel
from pydantic_core import to_jsonable_python

from tablewatch.realtime.errors import MalformedMessageError
from tablewatch.realtime.models import ChangeOperation, UpdateType


class WireMessage(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    def to_wire(self) -> dict[str, Any]:
        return to_jsonable_python(self.model_dump(by_alias=True, exclude_none=True))


class SubscribeTable(WireMessage):
    type: Literal["subscribe_table"] = "subscribe_table"
    service_name: str = Field(min_length=1)
    entity_name: str = Field(min_length=1)
    channel_id: str = Field(min_length=1, max_length=200)
    filters: dict[str, Any] = Field(default_factory=dict)
    polling_interval: int | None = Field(default=None, ge=1)
    enable_database_triggers: bool = False


class UnsubscribeTable(WireMessage):
    type: Literal["unsubscribe_table"] = "unsubscribe_table"
    channel_id: str = Field(min_length=1)


class TableUpdate(WireMessage):
    type: Literal["table_update"] = "table_update"
    channel_id: str
    update_type: UpdateType
    data: Any
    operation: ChangeOperation | None = None
    timestamp: str = Field(default_factory=lambda: utc_timestamp())
    service_name: str | None = None
    entity_name: str | None = None


class SubscriptionConfirmed(WireMessage):
    type: Literal["subscription_confirmed"] = "subscription_confirmed"
    channel_id: str
    method: Literal["polling", "database_triggers"] = "polling"
    polling_interval: int | None = None


class SubscriptionErrorMessage(WireMessage):
    type: Literal["subscription_error"] = "subscription_error"
    channel_id: str
    error: str


class PollingErrorMessage(WireMessage):
    type: Literal["polling_error"] = "polling_error"
    channel_id: str
    error: str


class RealtimeInfo(WireMessage):
    """How a client can follow a list it just fetched."""

    enabled: bool = False
    socket_url: str | None = None
    channel_id: str | None = None
    supported_methods: list[str] = Field(default_factory=lambda: ["polling", "database_triggers"])
    default_method: str = "polling"


class SnapshotResponse(WireMessage):
    data: list[dict[str, Any]] = Field(default_factory=list)
    realtime: RealtimeInfo = Field(default_factory=RealtimeInfo)


CLIENT_MESSAGES: dict[str, type[WireMessage]] = {
    "subscribe_table": SubscribeTable,
    "unsubscribe_table": UnsubscribeTable,
}

SERVER_MESSAGES: dict[str, type[WireMessage]] = {
    "table_update": TableUpdate,
    "subscription_confirmed": SubscriptionConfirmed,
    "subscription_error": SubscriptionErrorMessage,
    "polling_error": PollingErrorMessage,
}


def utc_timestamp(moment: datetime | None = None) -> str:
    value = moment or datetime.now(timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _parse(raw: Any, registry: dict[str, type[WireMessage]]) -> WireMessage:
    if not isinstance(raw, dict):
        raise MalformedMessageError("message must be a JSON object")
    channel_id = raw.get("channelId") if isinstance(raw.get("channelId"), str) else None
    message_type = raw.get("type")
    model = registry.get(message_type) if isinstance(message_type, str) else None
    if model is None:
        raise MalformedMessageError(f"unsupported message type: {message_type!r}", channel_id=channel_id)
    try:
        return model.model_validate(raw)
    except ValidationError as exc:
        first = exc.errors()[0]
        location = ".".join(str(part) for part in first.get("loc", ()))
        raise MalformedMessageError(f"invalid {message_type}: {location} {first.get('msg', '')}".strip(), channel_id) from exc


def parse_client_message(raw: Any) -> WireMessage:
    return _parse(raw, CLIENT_MESSAGES)


def parse_server_message(raw: Any) -> WireMessage:
    return _parse(raw, SERVER_MESSAGES)
