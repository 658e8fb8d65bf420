"""``lxcforge cache``: inspect and prune the image cache."""

from __future__ import annotations

import typer
from rich.console import Console
from rich.table import Table

from lxcforge.config import BuilderSettings
from lxcforge.core.image_cache import ImageCache
from lxcforge.monitor.renderer import format_bytes

console = Console()

cache_app = typer.Typer(
    name="cache",
    help="Inspect and prune the image cache.",
    no_args_is_help=True,
    add_completion=False,
)


@cache_app.command(name="info", help="List cached images and binaries.")
def info_cmd() -> None:
    settings = BuilderSettings()
    cache = ImageCache(settings.cache_dir, settings=settings)
    entries = cache.entries()
    stats = cache.stats()

    if not entries:
        console.print(f"[dim]Cache {stats.cache_dir} is empty.[/dim]")
        return

    table = Table(title=f"Image cache: {stats.cache_dir}")
    table.add_column("Key", style="cyan")
    table.add_column("File")
    table.add_column("Size", justify="right")
    table.add_column("Digest")
    table.add_column("Fetched")
    for entry in entries:
        source = "" if entry.digest_source == "published" else " [yellow](local)[/yellow]"
        table.add_row(
            entry.key.slug,
            entry.filename,
            format_bytes(entry.size_bytes),
            f"{entry.digest[:16]}{source}",
            entry.fetched_at.strftime("%Y-%m-%d %H:%M"),
        )
    console.print(table)
    console.print(
        f"[bold]{stats.entry_count}[/bold] entries, [bold]{format_bytes(stats.total_bytes)}[/bold]"
    )


@cache_app.command(name="evict", help="Remove stale, old or excess cache entries.")
def evict_cmd(
    max_age_days: int = typer.Option(
        None, "--max-age-days", min=0, help="Evict entries older than this."
    ),
    max_size_bytes: int = typer.Option(
        None, "--max-size-bytes", min=0, help="Evict oldest entries until the cache fits."
    ),
) -> None:
    settings = BuilderSettings()
    cache = ImageCache(settings.cache_dir, settings=settings)
    evicted = cache.evict(
        max_age_days=max_age_days if max_age_days is not None else settings.cache_max_age_days,
        max_size_bytes=(
            max_size_bytes if max_size_bytes is not None else settings.cache_max_size_bytes
        ),
    )
    for entry in evicted:
        console.print(f"[yellow]evicted[/yellow] {entry.key.slug} ({format_bytes(entry.size_bytes)})")
    stats = cache.stats()
    console.print(
        f"Evicted [bold]{len(evicted)}[/bold] entries; "
        f"{stats.entry_count} remain ({format_bytes(stats.total_bytes)})."
    )
