"""``lxcforge package``: package a finished build into a template archive."""

from __future__ import annotations

import os
from pathlib import Path

import typer
from rich.console import Console

from lxcforge.cli.common import fail
from lxcforge.config import BuilderSettings
from lxcforge.core.config_resolver import ConfigResolver, overrides_from_environ, parse_assignments
from lxcforge.core.packager import Packager
from lxcforge.errors import LxcforgeError
from lxcforge.monitor.renderer import BuildRenderer

console = Console()


def package_cmd(
    config: Path = typer.Option(
        None, "--config", "-c", help="Template configuration file used for the build."
    ),
    build_dir: Path = typer.Option(
        None, "--build-dir", "-b", help="Build directory holding the finished rootfs."
    ),
    output_dir: Path = typer.Option(
        None, "--output-dir", "-o", help="Where to write the archive and checksums."
    ),
    assignments: list[str] = typer.Option(
        [], "--set", "-s", help="Configuration override, as for build."
    ),
) -> None:
    """Package the built rootfs as ``<name>-<version>-<arch>.tar.gz``."""
    settings = BuilderSettings()
    try:
        overrides = {**overrides_from_environ(os.environ), **parse_assignments(assignments)}
        resolved = ConfigResolver().resolve(config or settings.config_file, overrides)
        artifact = Packager(settings).package(
            build_dir or settings.build_dir,
            resolved,
            output_dir or settings.output_dir,
        )
    except LxcforgeError as exc:
        raise fail(console, exc) from exc

    BuildRenderer(console=console).print_artifact(artifact)
    # Plain path for scripting
    console.print(str(artifact.path))
