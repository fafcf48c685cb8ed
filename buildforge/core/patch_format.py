"""Unified-diff reading and writing.

Accepts plain ``diff -u`` output as well as ``git diff``/``format-patch``
text: anything before a ``---``/``+++`` header pair (commit headers,
``diff --git``, ``index`` and mode lines) is preamble and skipped. A
preamble line ``X-Fuzz-Tolerance: N`` sets the fuzz tolerance for the
files that follow it.
"""

from __future__ import annotations

import difflib
import re
from pathlib import PurePosixPath

from buildforge.errors import PatchParseError
from buildforge.models.patches import Hunk, PatchFile

DEV_NULL = "/dev/null"
NO_NEWLINE = "\\ No newline at end of file"

_HUNK_HEADER = re.compile(r"^@@ -(\d+)(?:,(\d+))? \+(\d+)(?:,(\d+))? @@ ?(.*)$")
_FUZZ_HEADER = re.compile(r"^X-Fuzz-Tolerance:\s*(\d+)\s*$", re.IGNORECASE)


def _header_path(raw: str) -> str:
    # "--- a/src/Foo.java\t2024-01-01 00:00:00" -> "a/src/Foo.java"
    return raw.split("\t", 1)[0].rstrip("\r").strip()


def normalize_target(raw: str, *, source: str = "") -> str:
    """Strip the ``a/``/``b/`` prefix and reject paths escaping the tree."""
    path = raw
    if path.startswith(("a/", "b/")):
        path = path[2:]
    pure = PurePosixPath(path)
    if not path or pure.is_absolute() or ".." in pure.parts:
        raise PatchParseError(f"{source or '<patch>'}: unsafe target path {raw!r}")
    return str(pure)


def parse_patch(text: str, *, source: str = "", fuzz: int | None = None) -> list[PatchFile]:
    """Parse unified-diff text into PatchFiles, in the order they appear."""
    lines = text.split("\n")
    if lines and lines[-1] == "":
        lines.pop()

    files: list[PatchFile] = []
    section_start = 0
    i = 0
    while i < len(lines):
        line = lines[i]
        fuzz_match = _FUZZ_HEADER.match(line.rstrip("\r"))
        if fuzz_match:
            fuzz = int(fuzz_match.group(1))
            i += 1
            continue
        if not (line.startswith("--- ") and i + 1 < len(lines) and lines[i + 1].startswith("+++ ")):
            if line.startswith("diff "):
                section_start = i
            i += 1
            continue

        old_path = _header_path(line[4:])
        new_path = _header_path(lines[i + 1][4:])
        if section_start > i or not lines[section_start].startswith("diff "):
            section_start = i
        is_new = old_path == DEV_NULL
        is_deleted = new_path == DEV_NULL
        if is_new and is_deleted:
            raise PatchParseError(f"{source}: both sides of a diff are {DEV_NULL}")
        target = normalize_target(old_path if is_deleted else new_path, source=source)

        i += 2
        hunks: list[Hunk] = []
        while i < len(lines) and lines[i].startswith("@@"):
            hunk, i = _parse_hunk(lines, i, source=source, target=target)
            hunks.append(hunk)
        if not hunks and not (is_new or is_deleted):
            raise PatchParseError(f"{source}: {target} has a header but no hunks")

        raw = "\n".join(lines[section_start:i]) + "\n"
        files.append(
            PatchFile(
                path=target,
                hunks=hunks,
                fuzz=fuzz,
                is_new=is_new,
                is_deleted=is_deleted,
                source=source,
                raw=raw,
            )
        )
        section_start = i

    return files


def _parse_hunk(lines: list[str], i: int, *, source: str, target: str) -> tuple[Hunk, int]:
    header = lines[i].rstrip("\r")
    match = _HUNK_HEADER.match(header)
    if not match:
        raise PatchParseError(f"{source}: {target}: malformed hunk header {header!r}")
    old_start = int(match.group(1))
    old_len = int(match.group(2)) if match.group(2) is not None else 1
    new_start = int(match.group(3))
    new_len = int(match.group(4)) if match.group(4) is not None else 1
    section = match.group(5).strip()

    body: list[str] = []
    old_seen = new_seen = 0
    old_eof_newline = new_eof_newline = True
    i += 1
    while old_seen < old_len or new_seen < new_len:
        if i >= len(lines):
            raise PatchParseError(f"{source}: {target}: truncated hunk {header!r}")
        line = lines[i]
        if line.startswith("\\"):
            old_eof_newline, new_eof_newline = _no_newline(body, old_eof_newline, new_eof_newline)
            i += 1
            continue
        if line == "":
            line = " "  # context line whose trailing space was stripped
        tag = line[0]
        if tag == " ":
            old_seen += 1
            new_seen += 1
        elif tag == "-":
            old_seen += 1
        elif tag == "+":
            new_seen += 1
        else:
            raise PatchParseError(f"{source}: {target}: unexpected line in hunk: {line!r}")
        if old_seen > old_len or new_seen > new_len:
            raise PatchParseError(f"{source}: {target}: hunk {header!r} is longer than declared")
        body.append(line)
        i += 1

    if i < len(lines) and lines[i].startswith("\\"):
        old_eof_newline, new_eof_newline = _no_newline(body, old_eof_newline, new_eof_newline)
        i += 1

    hunk = Hunk(
        old_start=old_start,
        old_len=old_len,
        new_start=new_start,
        new_len=new_len,
        lines=body,
        section=section,
        old_eof_newline=old_eof_newline,
        new_eof_newline=new_eof_newline,
    )
    return hunk, i


def _no_newline(body: list[str], old_eol: bool, new_eol: bool) -> tuple[bool, bool]:
    if not body:
        return old_eol, new_eol
    tag = body[-1][0]
    if tag in " -":
        old_eol = False
    if tag in " +":
        new_eol = False
    return old_eol, new_eol


def make_patch(
    path: str, old_text: str | None, new_text: str | None, *, context: int = 3
) -> str:
    """Render a unified diff turning ``old_text`` into ``new_text``.

    ``None`` on either side means the file does not exist there. Returns
    an empty string when nothing changed.
    """
    old_lines = _split_keepends(old_text or "")
    new_lines = _split_keepends(new_text or "")
    fromfile = DEV_NULL if old_text is None else f"a/{path}"
    tofile = DEV_NULL if new_text is None else f"b/{path}"
    out: list[str] = []
    for line in difflib.unified_diff(
        old_lines, new_lines, fromfile=fromfile, tofile=tofile, n=context
    ):
        if line.endswith("\n"):
            out.append(line)
        else:
            out.append(line + "\n")
            out.append(NO_NEWLINE + "\n")
    if not out and old_text is None and new_text is not None:
        # empty new file
        return f"--- {DEV_NULL}\n+++ b/{path}\n"
    return "".join(out)


def _split_keepends(text: str) -> list[str]:
    # Only "\n" separates lines; "\r" stays part of the line content.
    return re.findall(r"[^\n]*\n|[^\n]+", text)
