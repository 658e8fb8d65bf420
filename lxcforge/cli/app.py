"""Main Typer application: imports and registers all CLI commands.

Entry point: ``lxcforge`` (configured via pyproject.toml scripts).

Commands: build, package, validate, cache info|evict, config show.
"""

from __future__ import annotations

import typer
from pydantic import ValidationError
from rich.console import Console

from lxcforge import __version__
from lxcforge.cli.commands.build import build_cmd
from lxcforge.cli.commands.cache import cache_app
from lxcforge.cli.commands.config_cmd import config_app
from lxcforge.cli.commands.package import package_cmd
from lxcforge.cli.commands.validate import validate_cmd
from lxcforge.cli.common import configure_logging, fail
from lxcforge.config import BuilderSettings
from lxcforge.errors import ConfigError, ConfigErrorReason

console = Console()

app = typer.Typer(
    name="lxcforge",
    help="lxcforge: build, package and validate Alpine LXC templates with K3s.",
    no_args_is_help=True,
    rich_markup_mode="rich",
    add_completion=False,
)


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"lxcforge {__version__}")
        raise typer.Exit()


@app.callback()
def main_callback(
    debug: bool = typer.Option(False, "--debug", help="Log at DEBUG level."),
    log_level: str = typer.Option(
        None, "--log-level", help="Log level (defaults to LXCFORGE_LOG_LEVEL)."
    ),
    version: bool = typer.Option(
        False,
        "--version",
        callback=_version_callback,
        is_eager=True,
        help="Show the version and exit.",
    ),
) -> None:
    """Configure logging for every subcommand."""
    try:
        settings = BuilderSettings()
    except ValidationError as exc:
        first = exc.errors()[0]
        field = ".".join(str(part) for part in first["loc"])
        error = ConfigError(
            ConfigErrorReason.INVALID_FORMAT,
            f"invalid builder setting '{field}': {first['msg']}",
            field=field,
        )
        raise fail(console, error) from exc
    level = "DEBUG" if debug or settings.debug else (log_level or settings.log_level)
    configure_logging(level)


# Register subcommands
app.command(name="build", help="Build the template root filesystem.")(build_cmd)
app.command(name="package", help="Package a finished build into a template archive.")(package_cmd)
app.command(name="validate", help="Validate a packaged template.")(validate_cmd)
app.add_typer(cache_app, name="cache")
app.add_typer(config_app, name="config")


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
