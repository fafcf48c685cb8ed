"""buildforge CLI — Typer-based command-line interface.

Provides the ``buildforge`` command with subcommands for building a
version, resolving its manifest, inspecting the build cache and applying
patch directories by hand.

All output uses Rich for formatted terminal display.
"""
