"""``buildforge resolve VERSION`` — show what a version needs, without building."""

from __future__ import annotations

import asyncio

import httpx
import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from buildforge.config import config
from buildforge.core.build_cache import BuildCache
from buildforge.core.resolver import VersionResolver
from buildforge.errors import BuildforgeError
from buildforge.models.manifest import VersionManifest

console = Console()


async def fetch_manifest(version: str) -> VersionManifest:
    async with httpx.AsyncClient(follow_redirects=True) as client:
        return await VersionResolver(config, client).resolve(version)


def resolve_cmd(
    version: str = typer.Argument(..., help="Version tag to resolve."),
) -> None:
    """Fetch and validate the manifest for VERSION."""
    try:
        manifest = asyncio.run(fetch_manifest(version))
    except BuildforgeError as exc:
        console.print(f"[bold red]{exc.stage}:[/bold red] {escape(str(exc))}")
        raise typer.Exit(code=1)

    table = Table(title=f"Artifacts for {manifest.version}")
    table.add_column("Name", style="cyan")
    table.add_column("Kind")
    table.add_column("Digests", style="dim")
    table.add_column("URL", overflow="fold")
    for ref in manifest.artifacts:
        digests = "\n".join(f"{a.value}:{d[:16]}..." for a, d in sorted(ref.digests.items()))
        table.add_row(ref.name, ref.kind.value, digests, ref.url)
    console.print(table)

    console.print(f"[bold]Patch repository:[/bold] {manifest.patch_repository or '[dim]none[/dim]'}")
    console.print(f"[bold]Patch revision:[/bold]   {manifest.patch_revision}")
    console.print(f"[bold]Layers:[/bold]           {', '.join(manifest.patch_layers)}")

    known = BuildCache.from_config(config).last_resolution(version)
    if known:
        console.print(f"[bold]Last patch hash:[/bold]  {known}")
