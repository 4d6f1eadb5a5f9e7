"""YAML configuration loading for tablewatch.yaml."""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

import yaml  # type: ignore[import-untyped]

_ENV_REF = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-([^}]*))?\}")


class ConfigLoadError(ValueError):
    """Raised when tablewatch.yaml cannot be read or interpolated."""


def expand_env_refs(value: Any) -> Any:
    """Replace ``${NAME}`` / ``${NAME:-default}`` references inside string values.

    Database URLs usually carry credentials, so source definitions are written
    as ``database_url: ${ORDERS_DB_URL}`` and resolved at load time.
    """
    if isinstance(value, dict):
        return {key: expand_env_refs(item) for key, item in value.items()}
    if isinstance(value, list):
        return [expand_env_refs(item) for item in value]
    if not isinstance(value, str) or "${" not in value:
        return value

    def _substitute(match: re.Match[str]) -> str:
        name, default = match.group(1), match.group(2)
        resolved = os.environ.get(name)
        if resolved is not None:
            return resolved
        if default is not None:
            return default
        raise ConfigLoadError(f"Environment variable {name} referenced in config is not set")

    return _ENV_REF.sub(_substitute, value)


class YAMLConfigLoader:
    """Locate and parse tablewatch.yaml."""

    DEFAULT_FILENAME = "tablewatch.yaml"

    @classmethod
    def resolve_path(cls, cli_path: str | None = None) -> Path:
        """Pick the config file: TABLEWATCH_CONFIG, then the CLI flag, then ./tablewatch.yaml."""
        from_env = os.environ.get("TABLEWATCH_CONFIG", "").strip()
        if from_env:
            return Path(from_env)
        if cli_path is not None and cli_path.strip():
            return Path(cli_path.strip())
        return Path.cwd() / cls.DEFAULT_FILENAME

    @classmethod
    def load_dict(cls, path: str | Path | None = None) -> dict[str, Any]:
        """Return the parsed mapping; a missing or blank file means no settings."""
        target = cls.resolve_path() if path is None else Path(path)
        if not target.is_file():
            return {}
        raw = target.read_text(encoding="utf-8")
        if not raw.strip():
            return {}
        try:
            parsed = yaml.safe_load(raw)
        except yaml.YAMLError as exc:
            mark = getattr(exc, "problem_mark", None)
            location = f"{target}:{mark.line + 1}:{mark.column + 1}" if mark is not None else str(target)
            raise ConfigLoadError(f"Invalid YAML at {location}") from exc
        if parsed is None:
            return {}
        if not isinstance(parsed, dict):
            raise ConfigLoadError(f"Top level of {target} must be a mapping")
        return expand_env_refs(parsed)
