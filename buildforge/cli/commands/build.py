"""``buildforge build VERSION`` — run the whole pipeline for one version.

Resolves the manifest, fetches and verifies artifacts, reconstructs the
patched source tree and compiles it, or returns the cached artifacts when
the (version, patch hash) key is already built.
"""

from __future__ import annotations

import asyncio

import httpx
import typer
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from buildforge.config import config
from buildforge.core.coordinator import PipelineCoordinator
from buildforge.errors import CompileFailed, PatchConflict, PipelineFailed
from buildforge.models.pipeline import PipelineResult

console = Console()


async def run_build(version: str, *, refresh: bool = False) -> PipelineResult:
    async with httpx.AsyncClient(follow_redirects=True) as client:
        coordinator = PipelineCoordinator.from_config(config, client)
        return await coordinator.build(version, refresh=refresh)


def build_cmd(
    version: str = typer.Argument(..., help="Version tag to build."),
    refresh: bool = typer.Option(
        False,
        "--refresh",
        help="Re-fetch the manifest and rebuild even if a cached entry exists.",
    ),
) -> None:
    """Build the server artifact for VERSION."""
    console.print(f"[bold cyan]Building {version}...[/bold cyan]")
    try:
        result = asyncio.run(run_build(version, refresh=refresh))
    except PipelineFailed as exc:
        print_failure(exc)
        raise typer.Exit(code=1)

    table = Table(title="Stages")
    table.add_column("From", style="dim")
    table.add_column("To", style="cyan")
    table.add_column("Detail")
    for t in result.transitions:
        table.add_row(t.from_state.value, t.to_state.value, t.detail)
    console.print(table)

    console.print()
    console.print(
        Panel(
            "\n".join([
                "[bold green]Build complete![/bold green]"
                + (" [dim](cache hit)[/dim]" if result.cache_hit else ""),
                "",
                f"[bold]Run ID:[/bold]     {result.run_id}",
                f"[bold]Version:[/bold]    {result.version}",
                f"[bold]Patch hash:[/bold] {result.patch_hash}",
                "",
                *(f"  {path}" for path in result.artifacts),
            ]),
            title="[bold]buildforge[/bold]",
            border_style="green",
            padding=(1, 2),
        )
    )


def print_failure(exc: PipelineFailed) -> None:
    """Render a failure as ``stage: reason`` plus whatever detail the cause carries."""
    console.print(f"[bold red]{exc.state}:[/bold red] {escape(str(exc.cause))}")
    cause = exc.cause
    if isinstance(cause, PatchConflict):
        console.print(
            Panel(Text(cause.report()), title="[bold]Patch conflicts[/bold]", border_style="red")
        )
    elif isinstance(cause, CompileFailed) and cause.diagnostics:
        console.print(
            Panel(Text(cause.diagnostics), title="[bold]Toolchain output[/bold]", border_style="red")
        )
