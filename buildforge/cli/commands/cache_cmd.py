"""``buildforge cache`` — inspect and evict BuildCache entries."""

from __future__ import annotations

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from buildforge.config import config
from buildforge.core.build_cache import BuildCache
from buildforge.errors import CacheCorruption
from buildforge.models.cache import CacheKey, CacheStatus

console = Console()

cache_app = typer.Typer(help="Inspect and evict build cache entries.", no_args_is_help=True)


@cache_app.command(name="show", help="Show one cache entry and verify its artifacts.")
def show_cmd(
    version: str = typer.Argument(..., help="Version tag."),
    patch_hash: str = typer.Argument(..., help="Combined patch hash (sha256:...)."),
) -> None:
    cache = BuildCache.from_config(config)
    key = CacheKey(version=version, patch_hash=patch_hash)
    try:
        entry = cache.lookup(key)
    except CacheCorruption as exc:
        console.print(f"[bold red]caching:[/bold red] {escape(str(exc))}")
        raise typer.Exit(code=1)
    if entry is None:
        console.print(f"[dim]No cache entry for {key}.[/dim]")
        raise typer.Exit(code=1)

    status_style = {
        CacheStatus.COMPLETE: "green",
        CacheStatus.PENDING: "yellow",
        CacheStatus.FAILED: "red",
    }[entry.status]
    console.print(f"[bold]Entry:[/bold]   {key}")
    console.print(f"[bold]Status:[/bold]  [{status_style}]{entry.status.value}[/{status_style}]")
    if entry.directory is not None:
        console.print(f"[bold]Created:[/bold] {entry.created_at.isoformat()}")
        console.print(f"[bold]Path:[/bold]    {entry.directory}")
    if entry.reason:
        console.print(f"[bold]Reason:[/bold]  {entry.reason}")

    if entry.artifacts:
        table = Table(title="Artifacts")
        table.add_column("Name", style="cyan")
        table.add_column("sha256", style="dim")
        for name, digest in sorted(entry.artifacts.items()):
            table.add_row(name, digest)
        console.print(table)

    if entry.status == CacheStatus.COMPLETE:
        try:
            cache.verify(entry)
        except CacheCorruption as exc:
            console.print(f"[bold red]Integrity check failed:[/bold red] {escape(exc.detail)}")
            raise typer.Exit(code=1)
        console.print("[green]Integrity check passed.[/green]")


@cache_app.command(name="evict", help="Remove one cache entry.")
def evict_cmd(
    version: str = typer.Argument(..., help="Version tag."),
    patch_hash: str = typer.Argument(..., help="Combined patch hash (sha256:...)."),
) -> None:
    key = CacheKey(version=version, patch_hash=patch_hash)
    if BuildCache.from_config(config).invalidate(key):
        console.print(f"[green]Evicted {key}.[/green]")
    else:
        console.print(f"[dim]No cache entry for {key}.[/dim]")
