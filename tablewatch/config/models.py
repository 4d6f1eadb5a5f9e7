"""Configuration models for tablewatch."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

TriggerModeName = Literal["newRow", "updatedRow"]
CleanupStrategyName = Literal["time-based", "processed-marker"]


class PollingConfig(BaseModel):
    """Adaptive polling defaults applied to every new polling job."""

    min_interval_ms: int = Field(default=5000, ge=100)
    base_interval_ms: int = Field(default=30000, ge=100)
    max_interval_ms: int = Field(default=300000, ge=100)
    empty_polls_before_backoff: int = Field(default=3, ge=1)
    shrink_factor: float = Field(default=0.5, gt=0.0, lt=1.0)
    growth_factor: float = Field(default=1.5, gt=1.0)
    default_polling_interval_ms: int = Field(default=5000, ge=100)
    batch_size: int = Field(default=100, ge=1)
    cdc_batch_size: int = Field(default=5000, ge=1)
    page_size: int = Field(default=100, ge=1, le=10000)
    initial_lookback_seconds: int = Field(default=60, ge=0)

    @model_validator(mode="after")
    def _ordered_bounds(self) -> PollingConfig:
        if not self.min_interval_ms <= self.base_interval_ms <= self.max_interval_ms:
            raise ValueError("polling intervals must satisfy min <= base <= max")
        return self


class TransportConfig(BaseModel):
    """Real-time server and fan-out settings."""

    host: str = Field(default="0.0.0.0")
    port: int = Field(default=3001, ge=1, le=65535)
    socket_path: str = Field(default="/realtime")
    public_socket_url: str = Field(default="", description="URL advertised to clients; derived from host/port if empty.")
    channel_queue_size: int = Field(default=100, ge=1)
    cors_origins: list[str] = Field(default_factory=lambda: ["*"])

    def advertised_socket_url(self) -> str:
        if self.public_socket_url.strip():
            return self.public_socket_url.strip()
        host = "localhost" if self.host in {"0.0.0.0", "::"} else self.host
        return f"ws://{host}:{self.port}{self.socket_path}"


class TriggersConfig(BaseModel):
    """Optional source-side trigger support (Postgres LISTEN/NOTIFY)."""

    enabled: bool = Field(default=False, description="Allow subscribers to request database triggers.")
    channel_prefix: str = Field(default="tablewatch_rt")
    reconnect_interval_seconds: float = Field(default=30.0, gt=0.0)


class TableConfig(BaseModel):
    """Change-detection settings for one watched table."""

    table: str | None = Field(default=None, description="Physical table name; defaults to the entity name.")
    trigger_mode: TriggerModeName = "newRow"
    date_column: str | None = None
    monitor_column: str | None = None
    timezone_offset_minutes: int = Field(default=0, ge=-1440, le=1440)
    key_column: str = "id"
    cdc_mode: bool = False
    batch_size: int | None = Field(default=None, ge=1)
    cleanup_strategy: CleanupStrategyName = "time-based"
    processed_column: str = "processed"
    processed_at_column: str | None = "processed_at"
    min_interval_ms: int | None = Field(default=None, ge=100)
    base_interval_ms: int | None = Field(default=None, ge=100)
    max_interval_ms: int | None = Field(default=None, ge=100)

    @model_validator(mode="after")
    def _single_watch_column(self) -> TableConfig:
        if self.trigger_mode == "newRow" and self.monitor_column:
            raise ValueError("monitor_column is only valid with trigger_mode 'updatedRow'")
        if self.trigger_mode == "updatedRow" and self.date_column:
            raise ValueError("date_column is only valid with trigger_mode 'newRow'")
        return self


class SourceConfig(BaseModel):
    """One external database exposed as a service."""

    database_url: str
    tables: dict[str, TableConfig] = Field(default_factory=dict)

    @field_validator("database_url")
    @classmethod
    def _non_empty(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("must be non-empty")
        return normalized


class TableWatchConfig(BaseSettings):
    """Root configuration model for tablewatch."""

    polling: PollingConfig = Field(default_factory=PollingConfig)
    transport: TransportConfig = Field(default_factory=TransportConfig)
    triggers: TriggersConfig = Field(default_factory=TriggersConfig)
    sources: dict[str, SourceConfig] = Field(default_factory=dict)

    model_config = SettingsConfigDict(
        env_prefix="TABLEWATCH_",
        env_nested_delimiter="__",
        extra="ignore",
    )
