"""Patch models — PatchSet, PatchFile, Hunk and application outcomes."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, computed_field, model_validator

from buildforge.core.hasher import content_address


class Hunk(BaseModel):
    """One ``@@ -a,b +c,d @@`` block.

    ``lines`` keeps the unified-diff tag as the first character of every
    line: ``" "`` for context, ``"-"`` for removed and ``"+"`` for added.
    """

    model_config = ConfigDict(frozen=True)

    old_start: int
    old_len: int
    new_start: int
    new_len: int
    lines: list[str]
    section: str = ""
    old_eof_newline: bool = True
    new_eof_newline: bool = True

    @model_validator(mode="after")
    def _counts_match(self) -> Hunk:
        if any(not line or line[0] not in " -+" for line in self.lines):
            raise ValueError("hunk lines must start with ' ', '-' or '+'")
        if len(self.before) != self.old_len:
            raise ValueError(
                f"hunk declares {self.old_len} old lines but carries {len(self.before)}"
            )
        if len(self.after) != self.new_len:
            raise ValueError(
                f"hunk declares {self.new_len} new lines but carries {len(self.after)}"
            )
        return self

    @property
    def before(self) -> list[str]:
        """Lines the hunk expects to find (context + removed)."""
        return [line[1:] for line in self.lines if line[0] in " -"]

    @property
    def after(self) -> list[str]:
        """Lines the hunk leaves behind (context + added)."""
        return [line[1:] for line in self.lines if line[0] in " +"]

    @property
    def header(self) -> str:
        text = f"@@ -{self.old_start},{self.old_len} +{self.new_start},{self.new_len} @@"
        return f"{text} {self.section}" if self.section else text


class PatchFile(BaseModel):
    """All hunks targeting one file, applied all-or-nothing."""

    model_config = ConfigDict(frozen=True)

    path: str
    hunks: list[Hunk] = Field(default_factory=list)
    fuzz: int | None = None  # overrides the engine tolerance when set
    is_new: bool = False
    is_deleted: bool = False
    source: str = ""  # patch file this came from, for reporting
    raw: str = ""


class PatchSet(BaseModel):
    """Ordered PatchFiles for one layer at one patch-repository revision."""

    model_config = ConfigDict(frozen=True)

    name: str
    revision: str
    files: list[PatchFile] = Field(default_factory=list)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def content_hash(self) -> str:
        """Content address over every PatchFile, order included."""
        return content_address(
            [
                {"path": f.path, "fuzz": f.fuzz, "raw": f.raw}
                for f in self.files
            ]
        )


def combined_patch_hash(patch_sets: list[PatchSet]) -> str:
    """Hash of the fully-resolved, layered patch input."""
    return content_address([ps.content_hash for ps in patch_sets])


class HunkFailure(BaseModel):
    """A hunk whose anchor could not be found within tolerance."""

    model_config = ConfigDict(frozen=True)

    path: str
    hunk_index: int  # 1-based within the PatchFile
    header: str
    nominal_line: int  # 1-based
    fuzz: int
    expected: list[str]
    found: list[str]
    appears_applied: bool = False

    def describe(self) -> str:
        lines = [
            f"{self.path}: hunk #{self.hunk_index} {self.header} "
            f"failed near line {self.nominal_line} (fuzz {self.fuzz})"
        ]
        if self.appears_applied:
            lines.append("  replacement text already present; patch looks applied")
        lines.append("  expected:")
        lines.extend(f"    |{line}" for line in self.expected)
        lines.append("  found:")
        lines.extend(f"    |{line}" for line in self.found)
        return "\n".join(lines)


class FileConflict(BaseModel):
    """A rejected PatchFile and every hunk that failed in it."""

    model_config = ConfigDict(frozen=True)

    path: str
    source: str = ""
    reason: str = ""
    failures: list[HunkFailure] = Field(default_factory=list)


class HunkPlacement(BaseModel):
    """Where a hunk actually landed."""

    model_config = ConfigDict(frozen=True)

    hunk_index: int
    nominal_line: int
    applied_line: int

    @property
    def offset(self) -> int:
        return self.applied_line - self.nominal_line


class ApplyResult(BaseModel):
    """Outcome of applying one PatchSet to a working tree."""

    model_config = ConfigDict(frozen=True)

    patch_set: str
    content_hash: str
    revision: str
    applied: bool  # False when the tree already carried this PatchSet
    files: list[str] = Field(default_factory=list)
    placements: dict[str, list[HunkPlacement]] = Field(default_factory=dict)
