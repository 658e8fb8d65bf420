"""``lxcforge config show``: print the resolved template configuration."""

from __future__ import annotations

import os
from pathlib import Path

import typer
import yaml
from rich.console import Console
from rich.syntax import Syntax
from rich.table import Table

from lxcforge.cli.common import fail
from lxcforge.config import BuilderSettings
from lxcforge.core.config_resolver import (
    ConfigResolver,
    describe,
    overrides_from_environ,
    parse_assignments,
)
from lxcforge.errors import LxcforgeError

console = Console()

config_app = typer.Typer(
    name="config",
    help="Inspect the template configuration.",
    no_args_is_help=True,
    add_completion=False,
)


@config_app.command(name="show", help="Resolve and print the configuration.")
def show_cmd(
    config: Path = typer.Option(None, "--config", "-c", help="Template configuration file."),
    assignments: list[str] = typer.Option([], "--set", "-s", help="Configuration override."),
    full: bool = typer.Option(False, "--full", help="Print the complete resolved document."),
) -> None:
    settings = BuilderSettings()
    try:
        overrides = {**overrides_from_environ(os.environ), **parse_assignments(assignments)}
        resolved = ConfigResolver().resolve(config or settings.config_file, overrides)
    except LxcforgeError as exc:
        raise fail(console, exc) from exc

    if full:
        document = yaml.safe_dump(resolved.to_document(), default_flow_style=False, sort_keys=False)
        console.print(Syntax(document, "yaml"))
        return

    table = Table(title=resolved.artifact_stem, show_header=False)
    table.add_column("Setting", style="bold cyan")
    table.add_column("Value")
    for label, value in describe(resolved):
        table.add_row(label, value)
    console.print(table)
