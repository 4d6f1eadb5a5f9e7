"""CLI tools: tablewatch init, tablewatch check, tablewatch reload, tablewatch serve."""

import sys
from importlib import metadata

import typer

from tablewatch.cli.check_config import check_config_command
from tablewatch.cli.init_config import init_config_command
from tablewatch.cli.reload_config import reload_config_command
from tablewatch.cli.serve import serve_command

app = typer.Typer(
    name="tablewatch",
    help="tablewatch: real-time change feeds for relational tables.",
    no_args_is_help=True,
)


def _version_callback(value: bool) -> None:
    if not value:
        return
    try:
        version = metadata.version("tablewatch")
    except metadata.PackageNotFoundError:
        version = "unknown"
    typer.echo(f"tablewatch {version}")
    raise typer.Exit()


@app.callback()
def _root(
    version: bool = typer.Option(
        False, "--version", "-V", callback=_version_callback, is_eager=True, help="Show version and exit."
    ),
) -> None:
    """tablewatch command line."""


@app.command("init")
def init_command(
    path: str = typer.Option(".", "--path", help="Output directory"),
    force: bool = typer.Option(False, "--force", help="Overwrite existing tablewatch.yaml"),
) -> None:
    """Generate a default tablewatch.yaml in the target directory."""
    try:
        init_config_command(path=path, force=force)
    except FileExistsError as exc:
        typer.echo(f"Error: {exc} (use --force to overwrite)", err=True)
        raise typer.Exit(1) from exc


@app.command("check")
def check_command(
    config: str = typer.Option("", "--config", help="Config file path"),
    connect: bool = typer.Option(False, "--connect", help="Connect to sources and resolve watch columns"),
) -> None:
    """Validate configuration and list watched tables."""
    check_config_command(config=config or None, connect=connect)


@app.command("reload")
def reload_command(
    config: str = typer.Option("", "--config", help="Config file path"),
) -> None:
    """Reload configuration, applying hot-reloadable settings and listing the rest."""
    try:
        reload_config_command(config=config or None)
    except ValueError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(1) from exc


@app.command("serve")
def serve(
    config: str = typer.Option("", "--config", help="Config file path"),
    host: str = typer.Option("", "--host", help="Override transport.host"),
    port: int = typer.Option(0, "--port", help="Override transport.port"),
    log_level: str = typer.Option("info", "--log-level", help="Logging level"),
) -> None:
    """Run the list endpoint and real-time websocket server."""
    serve_command(config=config or None, host=host or None, port=port or None, log_level=log_level)


def main() -> None:
    """CLI entry point."""
    try:
        app()
    except KeyboardInterrupt:
        sys.exit(130)
