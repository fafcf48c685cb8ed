"""Patch repository — turns a checked-out patch tree into ordered PatchSets.

Layout at a revision::

    <layer>/0001-First-change.patch
    <layer>/0002-Second-change.patch
    ...

Files are applied in lexical order of their relative path, which is the
numbering convention patch series are published with.
"""

from __future__ import annotations

import logging
from pathlib import Path

from buildforge.core.patch_format import parse_patch
from buildforge.core.source_tree import SourceTreeManager
from buildforge.errors import PatchParseError
from buildforge.models.manifest import VersionManifest
from buildforge.models.patches import PatchFile, PatchSet
from buildforge.models.trees import TreeName, WorkingTree

logger = logging.getLogger(__name__)

PATCH_SUFFIX = ".patch"


def load_patch_set(directory: Path, *, name: str | None = None, revision: str = "") -> PatchSet:
    """Parse every ``*.patch`` below ``directory`` into one PatchSet."""
    directory = Path(directory)
    if not directory.is_dir():
        raise PatchParseError(f"patch directory {directory} does not exist")

    files: list[PatchFile] = []
    sources = sorted(
        (p for p in directory.rglob(f"*{PATCH_SUFFIX}") if p.is_file()),
        key=lambda p: p.relative_to(directory).as_posix(),
    )
    for source in sources:
        relative = source.relative_to(directory).as_posix()
        text = source.read_bytes().decode("utf-8", errors="surrogateescape")
        parsed = parse_patch(text, source=relative)
        if not parsed:
            logger.warning("%s contains no file sections; skipping", relative)
        files.extend(parsed)

    patch_set = PatchSet(name=name or directory.name, revision=revision, files=files)
    logger.info(
        "loaded %s: %d patch file(s), %d target(s), hash %s",
        patch_set.name,
        len(sources),
        len(files),
        patch_set.content_hash[:19],
    )
    return patch_set


class PatchRepository:
    """Checks out the patch repository and loads its layers.

    Parameters
    ----------
    trees:
        Used to keep the ``patches`` tree at the manifest's revision.
    """

    def __init__(self, trees: SourceTreeManager) -> None:
        self._trees = trees

    def checkout(self, manifest: VersionManifest) -> WorkingTree:
        if not manifest.patch_repository:
            raise PatchParseError(
                f"manifest for {manifest.version} names no patch repository"
            )
        return self._trees.ensure(
            TreeName.PATCHES,
            manifest.patch_revision,
            source=manifest.patch_repository,
        )

    def load(self, manifest: VersionManifest) -> list[PatchSet]:
        """One PatchSet per declared layer, in layer order."""
        tree = self.checkout(manifest)
        return [
            load_patch_set(tree.root / layer, name=layer, revision=manifest.patch_revision)
            for layer in manifest.patch_layers
        ]
