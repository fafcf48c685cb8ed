"""PatchEngine — applies an ordered PatchSet onto a working tree.

Hunk location
-------------
Each hunk's "before" lines (context + removed) are compared against the
file at its nominal position, then at offsets ``±1 .. ±fuzz`` in the order
given by the FuzzStrategy. The first match wins. Once a hunk lands, the
drift it needed and the line-count change it made are carried into the
nominal position of the next hunk of the same PatchFile.

Atomicity
---------
All PatchFiles are first applied to an in-memory overlay of the tree, in
PatchSet order, so a later PatchFile sees the edits of an earlier one to
the same file. A PatchFile with any failing hunk is rejected whole. If
anything was rejected nothing touches the disk and PatchConflict lists
every rejected file; otherwise the overlay is written and committed.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path

from buildforge.config import BuildforgeConfig, FuzzStrategy
from buildforge.core.source_tree import SourceTreeManager
from buildforge.errors import PatchConflict
from buildforge.models.patches import (
    ApplyResult,
    FileConflict,
    Hunk,
    HunkFailure,
    HunkPlacement,
    PatchFile,
    PatchSet,
)
from buildforge.models.trees import WorkingTree

logger = logging.getLogger(__name__)

_ENCODING = "utf-8"
_ERRORS = "surrogateescape"


def applied_marker(patch_set: PatchSet) -> str:
    """Commit trailer identifying a PatchSet by name and content."""
    return f"Patch-Set: {patch_set.name} {patch_set.content_hash}"


def candidate_offsets(fuzz: int, strategy: FuzzStrategy) -> Iterator[int]:
    """Offsets to try, nearest first, within ``±fuzz``."""
    yield 0
    if strategy == FuzzStrategy.FORWARD_FIRST:
        yield from range(1, fuzz + 1)
        yield from range(-1, -fuzz - 1, -1)
        return
    forward_first = strategy == FuzzStrategy.NEAREST_FORWARD
    for distance in range(1, fuzz + 1):
        if forward_first:
            yield distance
            yield -distance
        else:
            yield -distance
            yield distance


@dataclass
class _FileState:
    """In-memory content of one file: lines without separators."""

    lines: list[str]
    eof_newline: bool = True
    exists: bool = True

    @classmethod
    def read(cls, path: Path) -> _FileState:
        if not path.is_file():
            return cls(lines=[], exists=False)
        text = path.read_bytes().decode(_ENCODING, errors=_ERRORS)
        if text == "":
            return cls(lines=[])
        eof_newline = text.endswith("\n")
        lines = text.split("\n")
        if eof_newline:
            lines.pop()
        return cls(lines=lines, eof_newline=eof_newline)

    def render(self) -> bytes:
        text = "\n".join(self.lines)
        if self.lines and self.eof_newline:
            text += "\n"
        return text.encode(_ENCODING, errors=_ERRORS)


class _Rejected(Exception):
    def __init__(self, conflict: FileConflict) -> None:
        super().__init__(conflict.path)
        self.conflict = conflict


class PatchEngine:
    """Fuzzy, all-or-nothing application of PatchSets.

    Parameters
    ----------
    tree_manager:
        Used to verify and commit working trees. Optional for plain
        directory application (``apply_directory``).
    fuzz_tolerance:
        Default maximum line drift; a PatchFile's own ``fuzz`` overrides it.
    strategy:
        Search order for drifted hunks.
    """

    def __init__(
        self,
        tree_manager: SourceTreeManager | None = None,
        *,
        fuzz_tolerance: int = 3,
        strategy: FuzzStrategy = FuzzStrategy.NEAREST_FORWARD,
    ) -> None:
        if fuzz_tolerance < 0:
            raise ValueError("fuzz_tolerance must be >= 0")
        self._trees = tree_manager
        self.fuzz_tolerance = fuzz_tolerance
        self.strategy = strategy

    @classmethod
    def from_config(
        cls, config: BuildforgeConfig, tree_manager: SourceTreeManager | None = None
    ) -> PatchEngine:
        return cls(
            tree_manager,
            fuzz_tolerance=config.fuzz_tolerance,
            strategy=config.fuzz_strategy,
        )

    # ------------------------------------------------------------------
    # Working tree
    # ------------------------------------------------------------------

    def apply(self, tree: WorkingTree, patch_set: PatchSet, *, marker: str | None = None) -> ApplyResult:
        """Apply ``patch_set`` to ``tree`` and commit the result.

        If the tree's current commit already records this exact PatchSet,
        nothing is done. Raises PatchConflict (tree left at its pre-patch
        revision) or TreeCorrupted.
        """
        if self._trees is None:
            raise RuntimeError("PatchEngine.apply needs a SourceTreeManager")
        self._trees.verify(tree)

        trailer = applied_marker(patch_set)
        if tree.revision is not None:
            head_message = self._trees.provider.message(tree.root, tree.revision)
            if trailer in head_message:
                logger.info(
                    "%s already applied at %s; nothing to do", patch_set.name, tree.revision[:12]
                )
                return ApplyResult(
                    patch_set=patch_set.name,
                    content_hash=patch_set.content_hash,
                    revision=tree.revision,
                    applied=False,
                )

        try:
            result = self.apply_directory(tree.root, patch_set)
        except PatchConflict:
            raise
        except BaseException:
            logger.error("writing %s failed; restoring %s", patch_set.name, tree.name.value)
            self._trees.discard(tree)
            raise

        message = f"Apply {patch_set.name} ({len(result.files)} files) at {patch_set.revision}"
        trailers = trailer if marker is None else f"{trailer}\n{marker}"
        revision = self._trees.commit(tree, message, marker=trailers)
        return result.model_copy(update={"revision": revision})

    # ------------------------------------------------------------------
    # Plain directory
    # ------------------------------------------------------------------

    def apply_directory(
        self, root: Path, patch_set: PatchSet, *, dry_run: bool = False
    ) -> ApplyResult:
        """Apply to a directory without committing; ``dry_run`` writes nothing."""
        root = Path(root)
        staged, placements = self.plan(root, patch_set)
        if not dry_run:
            for relative, state in staged.items():
                target = root / relative
                if not state.exists:
                    target.unlink(missing_ok=True)
                    continue
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_bytes(state.render())
        logger.info(
            "%s %s: %d file(s)",
            "checked" if dry_run else "applied",
            patch_set.name,
            len(staged),
        )
        return ApplyResult(
            patch_set=patch_set.name,
            content_hash=patch_set.content_hash,
            revision="",
            applied=not dry_run,
            files=sorted(staged),
            placements=placements,
        )

    def plan(
        self, root: Path, patch_set: PatchSet
    ) -> tuple[dict[str, _FileState], dict[str, list[HunkPlacement]]]:
        """Apply every PatchFile in memory; raise PatchConflict if any is rejected."""
        overlay: dict[str, _FileState] = {}
        placements: dict[str, list[HunkPlacement]] = {}
        conflicts: list[FileConflict] = []

        for patch_file in patch_set.files:
            current = overlay.get(patch_file.path)
            if current is None:
                target = self._resolve(root, patch_file)
                current = _FileState.read(target) if target is not None else None
            if current is None:
                conflicts.append(
                    FileConflict(
                        path=patch_file.path,
                        source=patch_file.source,
                        reason="target path escapes the tree",
                    )
                )
                continue
            try:
                updated, landed = self.apply_file(current, patch_file)
            except _Rejected as rejected:
                conflicts.append(rejected.conflict)
                continue
            overlay[patch_file.path] = updated
            placements.setdefault(patch_file.path, []).extend(landed)

        if conflicts:
            error = PatchConflict(patch_set.name, conflicts)
            logger.error("%s", error.report())
            raise error
        return overlay, placements

    @staticmethod
    def _resolve(root: Path, patch_file: PatchFile) -> Path | None:
        target = (root / patch_file.path).resolve()
        try:
            target.relative_to(root.resolve())
        except ValueError:
            return None
        return target

    # ------------------------------------------------------------------
    # One file
    # ------------------------------------------------------------------

    def apply_file(
        self, state: _FileState, patch_file: PatchFile
    ) -> tuple[_FileState, list[HunkPlacement]]:
        """Apply all hunks of ``patch_file`` to a copy of ``state``."""
        fuzz = self.fuzz_tolerance if patch_file.fuzz is None else patch_file.fuzz

        if patch_file.is_new and state.exists and state.lines:
            after = [line for hunk in patch_file.hunks for line in hunk.after]
            raise _Rejected(
                FileConflict(
                    path=patch_file.path,
                    source=patch_file.source,
                    reason="patch creates the file but it already exists"
                    + (" with the patched content" if after == state.lines else ""),
                )
            )
        if not patch_file.is_new and not state.exists:
            raise _Rejected(
                FileConflict(
                    path=patch_file.path,
                    source=patch_file.source,
                    reason="file to patch does not exist",
                )
            )

        lines = list(state.lines)
        eof_newline = state.eof_newline
        delta = 0
        failures: list[HunkFailure] = []
        landed: list[HunkPlacement] = []

        for index, hunk in enumerate(patch_file.hunks, start=1):
            nominal = self._nominal_index(hunk) + delta
            before = hunk.before
            found = self.locate(lines, before, nominal, fuzz)
            if found is None:
                failures.append(self._failure(patch_file, index, hunk, lines, nominal, fuzz))
                continue

            after = hunk.after
            reaches_eof = found + len(before) >= len(lines)
            lines[found:found + len(before)] = after
            if reaches_eof:
                eof_newline = hunk.new_eof_newline
            delta += (found - nominal) + (len(after) - len(before))
            landed.append(
                HunkPlacement(hunk_index=index, nominal_line=nominal + 1, applied_line=found + 1)
            )
            if found != nominal:
                logger.debug(
                    "%s hunk #%d applied with offset %+d", patch_file.path, index, found - nominal
                )

        if failures:
            raise _Rejected(
                FileConflict(path=patch_file.path, source=patch_file.source, failures=failures)
            )

        if patch_file.is_deleted:
            if lines:
                raise _Rejected(
                    FileConflict(
                        path=patch_file.path,
                        source=patch_file.source,
                        reason=f"file to delete still has {len(lines)} line(s) after patching",
                    )
                )
            return _FileState(lines=[], exists=False), landed

        return _FileState(lines=lines, eof_newline=eof_newline), landed

    @staticmethod
    def _nominal_index(hunk: Hunk) -> int:
        # "-N,0" inserts after line N; otherwise the hunk starts at line N.
        if hunk.old_len == 0:
            return hunk.old_start
        return max(hunk.old_start - 1, 0)

    def locate(self, lines: list[str], before: list[str], nominal: int, fuzz: int) -> int | None:
        """0-based index where ``before`` matches within ``±fuzz`` of ``nominal``."""
        size = len(before)
        for offset in candidate_offsets(fuzz, self.strategy):
            position = nominal + offset
            if position < 0 or position + size > len(lines):
                continue
            if lines[position:position + size] == before:
                return position
        return None

    def _failure(
        self,
        patch_file: PatchFile,
        index: int,
        hunk: Hunk,
        lines: list[str],
        nominal: int,
        fuzz: int,
    ) -> HunkFailure:
        before = hunk.before
        after = hunk.after
        start = min(max(nominal, 0), len(lines))
        found = lines[start:start + max(len(before), 1)]
        # an empty "after" (a deletion) matches anywhere, so it says nothing
        appears_applied = (
            bool(after) and after != before and self.locate(lines, after, nominal, fuzz) is not None
        )
        return HunkFailure(
            path=patch_file.path,
            hunk_index=index,
            header=hunk.header,
            nominal_line=nominal + 1,
            fuzz=fuzz,
            expected=before,
            found=found,
            appears_applied=appears_applied,
        )
