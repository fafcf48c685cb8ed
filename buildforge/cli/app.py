"""Main Typer application — imports and registers all CLI commands.

Entry point: ``buildforge`` (configured via pyproject.toml console_scripts).

Commands: build, resolve, cache show/evict, patch apply.
"""

from __future__ import annotations

import logging

import typer
from rich.console import Console
from rich.logging import RichHandler

from buildforge.cli.commands.build import build_cmd
from buildforge.cli.commands.cache_cmd import cache_app
from buildforge.cli.commands.patch_cmd import patch_app
from buildforge.cli.commands.resolve import resolve_cmd
from buildforge.config import config

app = typer.Typer(
    name="buildforge",
    help="buildforge: resolve, verify and rebuild patched server artifacts.",
    no_args_is_help=True,
    rich_markup_mode="rich",
    add_completion=False,
)

# Register subcommands
app.command(name="build", help="Build the server artifact for a version.")(build_cmd)
app.command(name="resolve", help="Fetch and show the manifest for a version.")(resolve_cmd)
app.add_typer(cache_app, name="cache")
app.add_typer(patch_app, name="patch")


def configure_logging(level: str | int = "INFO") -> None:
    """Route log records through rich on stderr."""
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="%H:%M:%S",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )
    # Quiet noisy libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


@app.callback()
def main_callback(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log at DEBUG level."),
) -> None:
    """Set up logging before any subcommand runs."""
    configure_logging("DEBUG" if verbose else config.log_level)


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
