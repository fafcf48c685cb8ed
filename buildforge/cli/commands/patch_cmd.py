"""``buildforge patch apply TREE_DIR PATCH_DIR`` — apply a patch directory by hand.

Useful when regenerating patches: run with ``--dry-run`` to see where each
hunk would land and which ones conflict, without touching the tree.
"""

from __future__ import annotations

from pathlib import Path

import typer
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from buildforge.config import FuzzStrategy, config
from buildforge.core.patch_engine import PatchEngine
from buildforge.core.patch_repository import load_patch_set
from buildforge.errors import PatchConflict, PatchParseError

console = Console()

patch_app = typer.Typer(help="Work with patch directories.", no_args_is_help=True)


@patch_app.command(name="apply", help="Apply every *.patch under PATCH_DIR to TREE_DIR.")
def apply_cmd(
    tree_dir: Path = typer.Argument(..., exists=True, file_okay=False, help="Tree to patch."),
    patch_dir: Path = typer.Argument(..., exists=True, file_okay=False, help="Patch directory."),
    fuzz: int = typer.Option(
        None, "--fuzz", "-f", min=0, help="Fuzz tolerance (defaults to configuration)."
    ),
    strategy: FuzzStrategy = typer.Option(
        None, "--strategy", help="Search order for drifted hunks."
    ),
    dry_run: bool = typer.Option(
        False, "--dry-run", help="Report placements and conflicts without writing."
    ),
) -> None:
    """Apply a patch directory to a plain directory (no commit)."""
    try:
        patch_set = load_patch_set(patch_dir)
    except PatchParseError as exc:
        console.print(f"[bold red]patching:[/bold red] {escape(str(exc))}")
        raise typer.Exit(code=1)

    engine = PatchEngine(
        fuzz_tolerance=config.fuzz_tolerance if fuzz is None else fuzz,
        strategy=strategy or config.fuzz_strategy,
    )
    try:
        result = engine.apply_directory(tree_dir, patch_set, dry_run=dry_run)
    except PatchConflict as exc:
        console.print(
            Panel(Text(exc.report()), title="[bold]Patch conflicts[/bold]", border_style="red")
        )
        raise typer.Exit(code=1)

    table = Table(title=f"{patch_set.name} ({'dry run' if dry_run else 'applied'})")
    table.add_column("File", style="cyan")
    table.add_column("Hunk", justify="right")
    table.add_column("Line", justify="right")
    table.add_column("Offset", justify="right")
    for path in result.files:
        for placement in result.placements.get(path, []):
            offset = placement.offset
            style = "yellow" if offset else "green"
            table.add_row(
                path,
                str(placement.hunk_index),
                str(placement.applied_line),
                f"[{style}]{offset:+d}[/{style}]",
            )
    console.print(table)
    console.print(f"[dim]patch hash {result.content_hash}[/dim]")
