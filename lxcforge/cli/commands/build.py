"""``lxcforge build``: run the full build pipeline.

Resolves the configuration, runs every stage against the build directory
and prints the stage table.  Exits with the code of the failing error.
"""

from __future__ import annotations

import os
from pathlib import Path

import typer
from rich.console import Console
from rich.panel import Panel

from lxcforge.cli.common import fail
from lxcforge.config import BuilderSettings
from lxcforge.core.config_resolver import overrides_from_environ, parse_assignments
from lxcforge.core.pipeline import BuildPipeline
from lxcforge.errors import LxcforgeError
from lxcforge.monitor.renderer import BuildRenderer, format_bytes

console = Console()


def build_cmd(
    config: Path = typer.Option(
        None,
        "--config",
        "-c",
        help="Template configuration file (defaults to LXCFORGE_CONFIG_FILE).",
    ),
    build_dir: Path = typer.Option(
        None,
        "--build-dir",
        "-b",
        help="Build directory (defaults to LXCFORGE_BUILD_DIR).",
    ),
    assignments: list[str] = typer.Option(
        [],
        "--set",
        "-s",
        help="Override a configuration value, e.g. --set k3s.version=v1.28.4+k3s1.",
    ),
) -> None:
    """Build the template root filesystem.

    Environment overrides (``LXCFORGE_CFG__SECTION__FIELD``) apply first,
    ``--set`` values win over them.
    """
    settings = BuilderSettings()
    renderer = BuildRenderer(console=console)
    try:
        overrides = {**overrides_from_environ(os.environ), **parse_assignments(assignments)}
        pipeline = BuildPipeline(
            config or settings.config_file,
            overrides=overrides,
            settings=settings,
            build_dir=build_dir,
        )
    except LxcforgeError as exc:
        raise fail(console, exc) from exc

    console.print(f"[bold]Build[/bold] {pipeline.run_id}  [dim]{pipeline.build_root.build_dir}[/dim]")
    try:
        result = pipeline.run()
    except LxcforgeError as exc:
        renderer.print_stages(pipeline.outcomes, title=f"Build {pipeline.run_id}")
        raise fail(console, exc) from exc

    renderer.print_stages(result.outcomes, title=f"Build {result.run_id}")
    console.print(
        Panel(
            "\n".join([
                "[bold green]Build complete[/bold green]",
                "",
                f"[bold]Template:[/bold]   {result.template}",
                f"[bold]Rootfs:[/bold]     {result.rootfs}",
                f"[bold]Context:[/bold]    {result.context_kind}",
                f"[bold]Size:[/bold]       {format_bytes(result.stats.size_bytes)} "
                f"in {result.stats.file_count} files",
                f"[bold]Duration:[/bold]   {result.duration_seconds:.1f}s",
                "",
                "[dim]Next: lxcforge package[/dim]",
            ]),
            title="[bold]lxcforge[/bold]",
            border_style="green",
            padding=(1, 2),
        )
    )
