"""Process-wide configuration access with layered sources and hot reload."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from threading import Lock
from typing import Any, Callable, ClassVar

from tablewatch.config.loader import YAMLConfigLoader
from tablewatch.config.models import TableWatchConfig

logger = logging.getLogger(__name__)

ConfigListener = Callable[[TableWatchConfig, TableWatchConfig], None]

ENV_PREFIX = "TABLEWATCH_"
# Settings that only matter for jobs/channels created after the change.
HOT_RELOADABLE_PREFIXES: tuple[str, ...] = (
    "polling",
    "transport.channel_queue_size",
    "triggers.reconnect_interval_seconds",
)


def _deep_merge(base: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in updates.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            merged[key] = _deep_merge(current, value)
        else:
            merged[key] = value
    return merged


def _parse_env_scalar(raw: str) -> Any:
    text = raw.strip()
    lowered = text.lower()
    if lowered in {"true", "false"}:
        return lowered == "true"
    if lowered in {"null", "none"}:
        return None
    for cast in (int, float):
        try:
            return cast(text)
        except ValueError:
            continue
    if text[:1] in {"[", "{"}:
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            return text
    return text


def _env_layer(prefix: str = ENV_PREFIX) -> dict[str, Any]:
    """Turn TABLEWATCH_POLLING__MIN_INTERVAL_MS=1000 into {"polling": {"min_interval_ms": 1000}}."""
    layer: dict[str, Any] = {}
    for name, raw in os.environ.items():
        if not name.startswith(prefix) or name == f"{prefix}CONFIG":
            continue
        parts = [segment.lower() for segment in name[len(prefix) :].split("__") if segment]
        if not parts:
            continue
        node = layer
        for part in parts[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                child = {}
                node[part] = child
            node = child
        node[parts[-1]] = _parse_env_scalar(raw)
    return layer


def _flat_changes(old: dict[str, Any], new: dict[str, Any], prefix: str = "") -> dict[str, Any]:
    changes: dict[str, Any] = {}
    for key in old.keys() | new.keys():
        dotted = f"{prefix}.{key}" if prefix else str(key)
        before, after = old.get(key), new.get(key)
        if isinstance(before, dict) and isinstance(after, dict):
            changes.update(_flat_changes(before, after, dotted))
        elif before != after:
            changes[dotted] = after
    return changes


def _assign_dotted(target: dict[str, Any], dotted: str, value: Any) -> None:
    parts = [part for part in dotted.split(".") if part]
    node = target
    for part in parts[:-1]:
        node = node.setdefault(part, {})
    if parts:
        node[parts[-1]] = value


def _compose(config_path: str | None, overrides: dict[str, Any]) -> TableWatchConfig:
    layered = _deep_merge(YAMLConfigLoader.load_dict(config_path), _env_layer())
    return TableWatchConfig.model_validate(_deep_merge(layered, overrides))


@dataclass(frozen=True)
class ReloadResult:
    """Which changed settings were applied live and which need a restart."""

    applied: dict[str, Any]
    skipped: dict[str, Any]


class ConfigManager:
    """Thread-safe singleton holding the active TableWatchConfig."""

    _instance: ClassVar[ConfigManager | None] = None
    _class_lock: ClassVar[Lock] = Lock()

    def __init__(self) -> None:
        self._lock = Lock()
        self._config = TableWatchConfig()
        self._listeners: list[ConfigListener] = []
        self._config_path: str | None = None
        self._overrides: dict[str, Any] = {}

    @classmethod
    def instance(cls) -> ConfigManager:
        if cls._instance is None:
            with cls._class_lock:
                if cls._instance is None:
                    cls._instance = cls()
        return cls._instance

    @classmethod
    def _reset_for_tests(cls) -> None:
        with cls._class_lock:
            cls._instance = None

    @classmethod
    def load(
        cls,
        config_path: str | None = None,
        overrides: dict[str, Any] | None = None,
    ) -> ConfigManager:
        """Build config from defaults, YAML, environment and explicit overrides (last wins)."""
        manager = cls.instance()
        runtime = dict(overrides or {})
        fresh = _compose(config_path, runtime)
        with manager._lock:
            previous = manager._config
            manager._config = fresh
            manager._config_path = config_path
            manager._overrides = runtime
            listeners = list(manager._listeners)
        for listener in listeners:
            listener(previous, fresh)
        return manager

    def get(self) -> TableWatchConfig:
        with self._lock:
            return self._config

    def on_change(self, callback: ConfigListener) -> None:
        with self._lock:
            self._listeners.append(callback)

    def reload(self, config_path: str | None = None) -> ReloadResult:
        """Re-read configuration, applying only hot-reloadable settings."""
        with self._lock:
            current = self._config
            path = config_path if config_path is not None else self._config_path
            overrides = dict(self._overrides)
            listeners = list(self._listeners)

        candidate = _compose(path, overrides)
        current_dump = current.model_dump(mode="python")
        changes = _flat_changes(current_dump, candidate.model_dump(mode="python"))

        applied = {key: value for key, value in changes.items() if key.startswith(HOT_RELOADABLE_PREFIXES)}
        skipped = {key: value for key, value in changes.items() if key not in applied}
        if skipped:
            logger.info("config reload skipped %d setting(s) that need a restart: %s", len(skipped), sorted(skipped))

        if not applied:
            with self._lock:
                self._config_path = path
            return ReloadResult(applied={}, skipped=skipped)

        patch: dict[str, Any] = {}
        for key, value in applied.items():
            _assign_dotted(patch, key, value)
        updated = TableWatchConfig.model_validate(_deep_merge(current_dump, patch))
        with self._lock:
            self._config = updated
            self._config_path = path
        for listener in listeners:
            listener(current, updated)
        return ReloadResult(applied=applied, skipped=skipped)
