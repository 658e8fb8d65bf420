"""Rich terminal renderer for build outcomes and validation reports.

Color scheme
------------
- green     : PASSED
- red       : FAILED
- yellow    : RUNNING / SKIPPED
- dim       : NOT_STARTED
- bold red  : BLOCKED
- cyan      : INFO
"""

from __future__ import annotations

from rich.console import Console, Group
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from lxcforge.models.artifacts import Artifact
from lxcforge.models.reports import CheckStatus, ValidationReport
from lxcforge.models.stages import StageOutcome, StageState

# ---------------------------------------------------------------------------
# State -> Rich style mapping
# ---------------------------------------------------------------------------

_STATE_STYLES: dict[StageState, str] = {
    StageState.PASSED: "bold green",
    StageState.FAILED: "bold red",
    StageState.RUNNING: "bold yellow",
    StageState.NOT_STARTED: "dim",
    StageState.BLOCKED: "bold red",
}

_STATE_ICONS: dict[StageState, str] = {
    StageState.PASSED: "[green]PASSED[/green]",
    StageState.FAILED: "[bold red]FAILED[/bold red]",
    StageState.RUNNING: "[yellow]RUNNING[/yellow]",
    StageState.NOT_STARTED: "[dim]NOT STARTED[/dim]",
    StageState.BLOCKED: "[bold red]BLOCKED[/bold red]",
}

_CHECK_ICONS: dict[CheckStatus, str] = {
    CheckStatus.PASSED: "[green]PASSED[/green]",
    CheckStatus.FAILED: "[bold red]FAILED[/bold red]",
    CheckStatus.SKIPPED: "[yellow]SKIPPED[/yellow]",
    CheckStatus.INFO: "[cyan]INFO[/cyan]",
}


def format_bytes(size: int) -> str:
    if size < 1024:
        return f"{size} B"
    value = size / 1024
    for unit in ("KiB", "MiB"):
        if value < 1024:
            return f"{value:.1f} {unit}"
        value /= 1024
    return f"{value:.1f} GiB"


class BuildRenderer:
    """Renders pipeline and validator results as Rich terminal output.

    Parameters
    ----------
    console:
        Rich Console instance.  A new one is created if not provided.
    """

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console()

    # ------------------------------------------------------------------
    # Build
    # ------------------------------------------------------------------

    def render_stages(self, outcomes: list[StageOutcome], *, title: str = "Build") -> Panel:
        """Render stage outcomes as a Panel containing a Table."""
        table = Table(show_header=True, header_style="bold cyan", expand=True)
        table.add_column("#", style="dim", width=4, justify="right")
        table.add_column("Stage", min_width=25)
        table.add_column("State", min_width=12, justify="center")
        table.add_column("Time", justify="right", width=8)
        table.add_column("Details", min_width=20)

        for i, outcome in enumerate(outcomes, start=1):
            style = _STATE_STYLES.get(outcome.state, "")
            if outcome.error:
                details = f"[red]{outcome.error}[/red]"
            elif outcome.output_hash:
                details = f"[dim]{outcome.output_hash[:12]}[/dim]"
            else:
                details = "[dim]-[/dim]"
            duration = f"{outcome.duration_seconds:.1f}s" if outcome.state in (
                StageState.PASSED,
                StageState.FAILED,
            ) else "[dim]-[/dim]"
            table.add_row(
                str(i),
                f"[{style}]{outcome.display_name}[/{style}]",
                _STATE_ICONS.get(outcome.state, outcome.state.value),
                duration,
                details,
            )

        passed = sum(1 for o in outcomes if o.state is StageState.PASSED)
        summary = f"[bold]Progress:[/bold] {passed}/{len(outcomes)}"
        return Panel(
            Group(table, Text(""), Text.from_markup(summary)),
            title=f"[bold]{title}[/bold]",
            border_style="blue",
            padding=(1, 2),
        )

    def render_artifact(self, artifact: Artifact) -> Panel:
        m = artifact.manifest
        lines = [
            f"[bold]Artifact:[/bold]     {artifact.path}",
            f"[bold]Template:[/bold]     {m.template.name} {m.template.version} "
            f"({m.template.architecture})",
            f"[bold]K3s:[/bold]          {m.runtime.version}",
            f"[bold]Size:[/bold]         {format_bytes(artifact.packed_size)} "
            f"(unpacked {format_bytes(artifact.unpacked_size)}, "
            f"ratio {artifact.compression_ratio:.0%})",
        ]
        for algorithm, digest in sorted(artifact.checksums.digests.items()):
            lines.append(f"[bold]{algorithm}:[/bold]{' ' * (13 - len(algorithm))}{digest}")
        for warning in artifact.warnings:
            lines.append(f"[yellow]warning:[/yellow] {warning}")
        return Panel(
            "\n".join(lines),
            title="[bold]Package[/bold]",
            border_style="yellow" if artifact.warnings else "green",
            padding=(1, 2),
        )

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def render_validation(self, report: ValidationReport) -> Panel:
        table = Table(show_header=True, header_style="bold cyan", expand=True)
        table.add_column("Check", min_width=18)
        table.add_column("Category", min_width=11)
        table.add_column("Result", justify="center", min_width=9)
        table.add_column("Time", justify="right", width=8)
        table.add_column("Details")

        for check in report.checks:
            table.add_row(
                check.name,
                check.category.value,
                _CHECK_ICONS[check.status],
                f"{check.duration_seconds:.2f}s",
                check.detail or "[dim]-[/dim]",
            )

        verdict = (
            "[bold green]releasable[/bold green]"
            if report.releasable
            else "[bold red]NOT releasable[/bold red]"
        )
        summary = (
            f"[bold]Passed:[/bold] {report.passed}  |  [bold]Failed:[/bold] {report.failed}  |  "
            f"[bold]Skipped:[/bold] {report.skipped}  |  {verdict}"
        )
        return Panel(
            Group(table, Text(""), Text.from_markup(summary)),
            title=f"[bold]Validation: {report.artifact.name}[/bold]",
            border_style="green" if report.releasable else "red",
            padding=(1, 2),
        )

    # ------------------------------------------------------------------
    # Printing
    # ------------------------------------------------------------------

    def print_stages(self, outcomes: list[StageOutcome], *, title: str = "Build") -> None:
        self.console.print(self.render_stages(outcomes, title=title))

    def print_artifact(self, artifact: Artifact) -> None:
        self.console.print(self.render_artifact(artifact))

    def print_validation(self, report: ValidationReport) -> None:
        self.console.print(self.render_validation(report))
