"""Config reload: the ``tablewatch reload`` command and the SIGHUP hook used by ``serve``."""

from __future__ import annotations

import logging
import signal
from pathlib import Path
from types import FrameType

from rich.console import Console
from rich.markup import escape

from tablewatch.config import ConfigManager

logger = logging.getLogger(__name__)

console = Console()


def reload_config_command(config: str | None = None) -> tuple[dict[str, object], dict[str, object]]:
    """Reload configuration and return applied/skipped changes."""
    manager = ConfigManager.instance()
    result = manager.reload(config_path=config)
    applied = result.applied
    skipped = result.skipped

    console.print("[bold]Reload Result[/bold]")
    console.print(f"Applied: {len(applied)}")
    for key, value in applied.items():
        console.print(f"  + {key} = {escape(repr(value))}")

    console.print(f"Skipped: {len(skipped)}")
    for key, value in skipped.items():
        console.print(f"  - {key} = {escape(repr(value))} (requires restart)")

    if config is not None and not Path(config).exists():
        console.print(f"[yellow]Note:[/yellow] config file not found, defaults/env/overrides were used: {config}")
    return applied, skipped


def reload_on_signal(signum: int, frame: FrameType | None) -> None:  # noqa: ARG001
    try:
        result = ConfigManager.instance().reload()
    except ValueError as exc:
        logger.error("config reload on signal %d failed, keeping current settings: %s", signum, exc)
        return
    logger.info(
        "config reloaded on signal %d: applied %s, skipped %s",
        signum,
        sorted(result.applied),
        sorted(result.skipped),
    )


def install_reload_signal() -> bool:
    """Reload hot settings on SIGHUP; returns False where the platform has no SIGHUP."""
    sighup = getattr(signal, "SIGHUP", None)
    if sighup is None:
        return False
    signal.signal(sighup, reload_on_signal)
    return True
