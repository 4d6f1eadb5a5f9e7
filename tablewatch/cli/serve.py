"""Run the tablewatch server in the foreground."""

from __future__ import annotations

import logging
from typing import Any

import uvicorn
from rich.console import Console

from tablewatch.app import TableWatch
from tablewatch.cli.reload_config import install_reload_signal
from tablewatch.config import ConfigManager

console = Console()


def serve_command(
    config: str | None = None,
    host: str | None = None,
    port: int | None = None,
    log_level: str = "info",
) -> None:
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    transport: dict[str, Any] = {}
    if host:
        transport["host"] = host
    if port:
        transport["port"] = port
    ConfigManager.load(config_path=config, overrides={"transport": transport} if transport else None)
    watch = TableWatch()
    settings = watch.config.transport
    console.print(
        f"[bold]tablewatch[/bold] serving {len(watch.catalog.entities())} table(s) on "
        f"http://{settings.host}:{settings.port} (socket {settings.advertised_socket_url()})"
    )
    if install_reload_signal():
        console.print("Send SIGHUP to reload polling and queue settings without a restart.")
    uvicorn.run(watch.app, host=settings.host, port=settings.port, log_level=log_level.lower())
