"""``lxcforge validate ARTIFACT``: run the validator against a template.

Exit code 0 when the artifact is releasable, 1 when any check failed.
"""

from __future__ import annotations

from pathlib import Path

import typer
from rich.console import Console

from lxcforge.cli.common import fail
from lxcforge.config import BuilderSettings
from lxcforge.core.validator import Validator, write_report
from lxcforge.errors import ArtifactValidationError
from lxcforge.monitor.renderer import BuildRenderer

console = Console()


def validate_cmd(
    artifact: Path = typer.Argument(..., help="The template archive to validate."),
    functional: bool = typer.Option(
        False,
        "--functional/--no-functional",
        help="Boot the template in an isolated runtime and wait for a Ready node.",
    ),
    timeout: float = typer.Option(
        None, "--timeout", "-t", min=1, help="Overall functional-check timeout in seconds."
    ),
    report: Path = typer.Option(None, "--report", "-r", help="Write the report as JSON."),
) -> None:
    """Validate a packaged template."""
    settings = BuilderSettings()
    result = Validator(settings).validate(artifact, functional=functional, timeout=timeout)
    BuildRenderer(console=console).print_validation(result)

    if report is not None:
        write_report(result, report)
        console.print(f"[dim]Report written to {report}[/dim]")

    try:
        result.require_releasable()
    except ArtifactValidationError as exc:
        raise fail(console, exc) from exc
