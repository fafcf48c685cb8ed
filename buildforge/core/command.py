"""Async runner for external tools (decompiler, remapper, compiler).

Output is captured verbatim and also piped line-by-line into logging,
using any level marker the tool prints (``[WARN]``, ``[main/ERROR]``, ...).
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
import shlex
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from buildforge.errors import CommandError

logger = logging.getLogger(__name__)

_PLACEHOLDER = re.compile(r"\{(\w+)\}")
_LEVEL_MARKER = re.compile(
    r"\[(?:[^\]]*[/ ])?(TRACE|DEBUG|INFO|WARN|WARNING|ERROR|FATAL|SEVERE)\]"
)
_LEVELS = {
    "TRACE": logging.DEBUG,
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "FATAL": logging.ERROR,
    "SEVERE": logging.ERROR,
}

# Defaults applied only when the variable is not already set.
_DEFAULT_ENV = {
    "_JAVA_OPTIONS": "-Djdk.net.URLClassPath.disableClassPathURLCheck=true",
    "MAVEN_OPTS": "-Xmx1024M",
}


@dataclass(frozen=True)
class CommandOutcome:
    """Exit status plus everything the process printed."""

    args: list[str]
    exit_code: int
    stdout: str
    stderr: str
    transcript: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    @property
    def diagnostics(self) -> str:
        """Combined output in arrival order."""
        return "\n".join(self.transcript)


def expand_template(
    template: str, values: Mapping[str, str | Path | Sequence[str | Path]]
) -> list[str]:
    """Split a command template and substitute ``{name}`` placeholders.

    A token that is exactly ``{name}`` bound to a sequence expands into one
    argument per element; a sequence embedded in a longer token is joined
    with ``os.pathsep`` (classpath style).
    """
    args: list[str] = []
    for token in shlex.split(template):
        whole = _PLACEHOLDER.fullmatch(token)
        if whole:
            value = _lookup(values, whole.group(1))
            if isinstance(value, (str, Path)):
                args.append(str(value))
            else:
                args.extend(str(v) for v in value)
            continue

        def _sub(match: re.Match[str]) -> str:
            value = _lookup(values, match.group(1))
            if isinstance(value, (str, Path)):
                return str(value)
            return os.pathsep.join(str(v) for v in value)

        args.append(_PLACEHOLDER.sub(_sub, token))
    if not args:
        raise CommandError("command template is empty")
    return args


def _lookup(values: Mapping[str, object], name: str):
    try:
        return values[name]
    except KeyError:
        raise CommandError(
            f"command template uses unknown placeholder {{{name}}}; "
            f"available: {sorted(values)}"
        ) from None


def command_env(extra: Mapping[str, str] | None = None) -> dict[str, str]:
    """The process environment plus tool defaults that are not already set."""
    env = dict(os.environ)
    for key, value in _DEFAULT_ENV.items():
        env.setdefault(key, value)
    if extra:
        env.update(extra)
    return env


def classify_line(line: str) -> int:
    """Pick a logging level for one line of tool output."""
    marker = _LEVEL_MARKER.search(line)
    if marker:
        return _LEVELS[marker.group(1)]
    if line.startswith("Exception in thread") or "Error" in line:
        return logging.ERROR
    return logging.INFO


async def run_command(
    args: Sequence[str],
    *,
    cwd: Path | None = None,
    env: Mapping[str, str] | None = None,
    timeout: float | None = None,
    log: logging.Logger | None = None,
) -> CommandOutcome:
    """Run ``args`` to completion, capturing and logging its output.

    A non-zero exit is reported in the outcome, not raised; callers decide
    what a failure means. Raises ``CommandError`` when the process cannot
    be started or exceeds ``timeout``.
    """
    log = log or logger
    argv = [str(a) for a in args]
    log.info("running %s", shlex.join(argv))
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            cwd=str(cwd) if cwd else None,
            env=command_env(env),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            limit=1 << 20,
        )
    except OSError as exc:
        raise CommandError(f"cannot start {argv[0]}: {exc}") from exc

    stdout: list[str] = []
    stderr: list[str] = []
    transcript: list[str] = []

    async def pump(stream: asyncio.StreamReader | None, sink: list[str]) -> None:
        if stream is None:
            return
        async for raw in stream:
            line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            sink.append(line)
            transcript.append(line)
            log.log(classify_line(line), "%s", line)

    try:
        await asyncio.wait_for(
            asyncio.gather(pump(proc.stdout, stdout), pump(proc.stderr, stderr), proc.wait()),
            timeout,
        )
    except asyncio.TimeoutError:
        await _terminate(proc)
        raise CommandError(f"{argv[0]} timed out after {timeout}s") from None
    except BaseException:
        await _terminate(proc)
        raise

    return CommandOutcome(
        args=argv,
        exit_code=proc.returncode if proc.returncode is not None else -1,
        stdout="\n".join(stdout),
        stderr="\n".join(stderr),
        transcript=transcript,
    )


async def _terminate(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is None:
        proc.kill()
        await proc.wait()
