"""RemapCompileOrchestrator — hands the final tree to the external toolchain.

The toolchain contract: it is given source roots, classpath entries, the
mapping file and an output directory; exit code 0 means the artifact is in
the output directory. Anything else is a failure whose diagnostics are the
captured output, passed through untouched.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol, runtime_checkable

from buildforge.core.command import CommandOutcome, expand_template, run_command
from buildforge.core.fs import create_directory, remove_existing
from buildforge.errors import CompileFailed
from buildforge.models.manifest import ArtifactKind, VerifiedArtifact
from buildforge.models.trees import WorkingTree

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CompileRequest:
    """Everything the toolchain is invoked with."""

    sources: list[Path]
    classpath: list[Path]
    mappings: Path
    output: Path
    extra: dict[str, Path] = field(default_factory=dict)


@runtime_checkable
class Compiler(Protocol):
    """Remap/compile capability."""

    async def invoke(self, request: CompileRequest) -> CommandOutcome: ...


class ExternalCompiler:
    """Compiler backed by a command-line template.

    Recognized placeholders: ``{sources}``, ``{classpath}``, ``{mappings}``,
    ``{output}`` plus any key of ``CompileRequest.extra`` (for example
    ``{access_transforms}``).
    """

    def __init__(self, template: str, *, timeout: float | None = None) -> None:
        self._template = template
        self._timeout = timeout

    async def invoke(self, request: CompileRequest) -> CommandOutcome:
        values = {
            "sources": request.sources,
            "classpath": request.classpath,
            "mappings": request.mappings,
            "output": request.output,
            **request.extra,
        }
        args = expand_template(self._template, values)
        return await run_command(args, timeout=self._timeout, log=logger)


class RemapCompileOrchestrator:
    """Builds the CompileRequest for a tree and interprets the outcome.

    Parameters
    ----------
    compiler:
        The toolchain capability.
    """

    def __init__(self, compiler: Compiler) -> None:
        self._compiler = compiler

    @staticmethod
    def build_request(
        tree: WorkingTree,
        artifacts: list[VerifiedArtifact],
        mappings: VerifiedArtifact,
        output: Path,
    ) -> CompileRequest:
        classpath = [
            a.path
            for a in artifacts
            if a.kind in (ArtifactKind.SERVER, ArtifactKind.LIBRARY)
        ]
        extra = {
            a.kind.value: a.path
            for a in artifacts
            if a.kind == ArtifactKind.ACCESS_TRANSFORMS
        }
        return CompileRequest(
            sources=[tree.root],
            classpath=classpath,
            mappings=mappings.path,
            output=output,
            extra=extra,
        )

    async def compile(
        self,
        tree: WorkingTree,
        artifacts: list[VerifiedArtifact],
        mappings: VerifiedArtifact,
        output: Path,
    ) -> list[Path]:
        """Run the toolchain into a fresh ``output`` and return what it wrote.

        Raises CompileFailed with the verbatim diagnostics on a non-zero
        exit, or when the toolchain claims success but writes nothing.
        """
        remove_existing(output)
        create_directory(output)
        request = self.build_request(tree, artifacts, mappings, output)

        outcome = await self._compiler.invoke(request)
        if not outcome.ok:
            logger.error("toolchain exited with %d", outcome.exit_code)
            raise CompileFailed(outcome.diagnostics, outcome.exit_code)

        produced = sorted(p for p in output.rglob("*") if p.is_file())
        if not produced:
            raise CompileFailed(
                f"toolchain exited 0 but wrote nothing to {output}\n{outcome.diagnostics}",
                outcome.exit_code,
            )
        logger.info("toolchain produced %d file(s) in %s", len(produced), output)
        return produced
