"""Config template initialization command."""

from __future__ import annotations

from pathlib import Path

from rich.console import Console

console = Console()

TEMPLATE = Path(__file__).resolve().parents[1] / "templates" / "tablewatch.yaml"


def init_config_command(path: str = ".", force: bool = False) -> Path:
    """Write tablewatch.yaml from the packaged template into ``path``."""
    if not TEMPLATE.exists():
        raise FileNotFoundError(f"Template not found: {TEMPLATE}")
    target_dir = Path(path).resolve()
    target_dir.mkdir(parents=True, exist_ok=True)
    output_path = target_dir / "tablewatch.yaml"
    if output_path.exists() and not force:
        raise FileExistsError(f"Config already exists: {output_path}")
    output_path.write_text(TEMPLATE.read_text(encoding="utf-8"), encoding="utf-8")
    console.print(f"[green]Created[/green] {output_path}")
    return output_path
