"""Helpers shared by the CLI commands: logging setup and error exits."""

from __future__ import annotations

import logging

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel

from lxcforge.errors import LxcforgeError, PipelineError

LOG_FORMAT = "%(message)s"


def configure_logging(level: str, *, console: Console | None = None) -> None:
    """Route every ``lxcforge`` logger through a RichHandler at *level*."""
    handler = RichHandler(
        console=console or Console(stderr=True),
        show_path=False,
        rich_tracebacks=True,
        markup=False,
    )
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt="[%X]"))
    root = logging.getLogger("lxcforge")
    root.handlers[:] = [handler]
    root.setLevel(level.upper())
    root.propagate = False


def fail(console: Console, exc: LxcforgeError) -> typer.Exit:
    """Print *exc* as an error panel and return the matching ``typer.Exit``."""
    lines = [f"[bold red]{exc}[/bold red]"]
    if isinstance(exc, PipelineError) and exc.cause is not None:
        lines.append(f"[dim]cause: {type(exc.cause).__name__}[/dim]")
    for key, value in sorted(exc.context.items()):
        lines.append(f"[bold]{key}:[/bold] {value}")
    lines.append(f"[dim]exit code {int(exc.exit_code)}[/dim]")
    console.print(
        Panel("\n".join(lines), title=f"[bold red]{exc.component} error[/bold red]", border_style="red")
    )
    return typer.Exit(code=int(exc.exit_code))
