"""Decompiler capability — produces the vanilla baseline sources."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Protocol, runtime_checkable

from buildforge.core.command import expand_template, run_command
from buildforge.core.fs import create_directory
from buildforge.errors import CompileFailed

logger = logging.getLogger(__name__)


@runtime_checkable
class Decompiler(Protocol):
    """Turns a verified server binary into a directory of sources."""

    async def decompile(self, binary: Path, output: Path) -> None: ...


class ExternalDecompiler:
    """Runs a decompiler command line built from a ``{input}``/``{output}`` template.

    Parameters
    ----------
    template:
        Command line with ``{input}`` (the binary) and ``{output}`` (the
        destination directory) placeholders.
    timeout:
        Seconds before the process is killed; None waits forever.
    """

    def __init__(self, template: str, *, timeout: float | None = None) -> None:
        self._template = template
        self._timeout = timeout

    async def decompile(self, binary: Path, output: Path) -> None:
        create_directory(output)
        args = expand_template(self._template, {"input": binary, "output": output})
        outcome = await run_command(args, timeout=self._timeout, log=logger)
        if not outcome.ok:
            raise CompileFailed(outcome.diagnostics, outcome.exit_code)
        if not any(output.iterdir()):
            raise CompileFailed(
                f"decompiler exited 0 but wrote nothing to {output}\n{outcome.diagnostics}",
                outcome.exit_code,
            )
