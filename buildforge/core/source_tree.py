"""SourceTreeManager — the three chained working trees.

Layout under ``work_dir``::

    vanilla/        decompiled baseline
    intermediate/   vanilla + first PatchSet layer
    final/          intermediate + second PatchSet layer
    patches/        checkout of the patch repository

Each chained tree fetches its base revision from the tree before it, so
history only ever grows: a layer commit sits on top of its base commit and
is tagged so a later run can find and reuse it.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from pathlib import Path

from buildforge.core.fs import create_directory, remove_existing
from buildforge.core.hasher import sha256_hex
from buildforge.core.vcs import TreeProvider
from buildforge.errors import BuildforgeError, TreeCorrupted, VcsError
from buildforge.models.trees import TreeName, WorkingTree

logger = logging.getLogger(__name__)


def marker_tag(name: TreeName, marker: str) -> str:
    """Stable tag name for a marker line."""
    return f"buildforge/{name.value}/{sha256_hex(marker.encode('utf-8'))[:20]}"


class SourceTreeManager:
    """Ensures working trees exist at the revisions a run needs.

    Parameters
    ----------
    work_dir:
        Root directory holding one subdirectory per tree.
    provider:
        Version-control capability used for every checkout and commit.
    """

    def __init__(self, work_dir: Path, provider: TreeProvider) -> None:
        self._work_dir = Path(work_dir)
        self._provider = provider

    @property
    def provider(self) -> TreeProvider:
        return self._provider

    def path_for(self, name: TreeName) -> Path:
        return self._work_dir / name.value

    # ------------------------------------------------------------------
    # ensure / verify
    # ------------------------------------------------------------------

    def ensure(
        self,
        name: TreeName,
        target_revision: str | None = None,
        *,
        source: WorkingTree | str | None = None,
    ) -> WorkingTree:
        """Create or check out ``name`` at ``target_revision``.

        ``source`` is where missing history comes from: a repository URL
        (cloned on first use) or the upstream WorkingTree in the chain.
        A tree whose tracked state has drifted is force-checked-out again;
        if that fails too, TreeCorrupted propagates.
        """
        path = self.path_for(name)
        try:
            return self._ensure(name, path, target_revision, source)
        except TreeCorrupted as exc:
            logger.warning("%s; forcing a clean re-checkout", exc)
            try:
                self._reset(name, path, target_revision)
                return self._ensure(name, path, target_revision, source)
            except BuildforgeError as again:
                raise TreeCorrupted(f"{name.value}: re-checkout failed: {again}") from again

    def _reset(self, name: TreeName, path: Path, target_revision: str | None) -> None:
        """Drop local drift in place, or the whole directory when its history is unusable."""
        provider = self._provider
        if provider.is_repository(path):
            revision = target_revision or provider.head(path)
            if revision is not None:
                try:
                    provider.checkout(path, revision)
                    return
                except VcsError as exc:
                    logger.warning("in-place checkout of %s failed: %s", name.value, exc)
        remove_existing(path)

    def _ensure(
        self,
        name: TreeName,
        path: Path,
        target_revision: str | None,
        source: WorkingTree | str | None,
    ) -> WorkingTree:
        provider = self._provider
        if path.exists() and not provider.is_repository(path):
            raise TreeCorrupted(f"{name.value}: {path} is not a repository")

        if not path.exists():
            if isinstance(source, str) and source:
                provider.clone(source, path)
            else:
                create_directory(path)
                provider.init(path)

        if not provider.is_clean(path):
            raise TreeCorrupted(f"{name.value}: uncommitted changes in {path}")

        if target_revision is not None:
            if provider.head(path) != target_revision:
                if source is not None:
                    location = str(source.root) if isinstance(source, WorkingTree) else source
                    provider.fetch(path, location, target_revision)
                provider.checkout(path, target_revision)

        tree = WorkingTree(name=name, root=path, revision=provider.head(path))
        if target_revision is not None and tree.revision != target_revision:
            raise TreeCorrupted(
                f"{name.value}: expected {target_revision}, checked out {tree.revision}"
            )
        logger.debug("tree %s ready at %s", name.value, tree.revision)
        return tree

    def verify(self, tree: WorkingTree) -> None:
        """Raise TreeCorrupted if the directory disagrees with ``tree``."""
        head = self._provider.head(tree.root)
        if head != tree.revision:
            raise TreeCorrupted(
                f"{tree.name.value}: expected revision {tree.revision}, found {head}"
            )
        if not self._provider.is_clean(tree.root):
            raise TreeCorrupted(f"{tree.name.value}: uncommitted changes in {tree.root}")

    # ------------------------------------------------------------------
    # Layers
    # ------------------------------------------------------------------

    def find(self, name: TreeName, marker: str) -> str | None:
        """Revision previously committed with ``marker`` in tree ``name``."""
        path = self.path_for(name)
        if not self._provider.is_repository(path):
            return None
        return self._provider.find_commit(path, marker)

    def derive(
        self, name: TreeName, base: WorkingTree, marker: str
    ) -> tuple[WorkingTree, bool]:
        """Position ``name`` for a layer on top of ``base``.

        Returns ``(tree, reused)``: when a commit carrying ``marker`` already
        exists the tree is checked out there and ``reused`` is True;
        otherwise the tree sits at ``base.revision`` ready for patching.
        """
        if base.revision is None:
            raise TreeCorrupted(f"{base.name.value} has no commits to derive {name.value} from")
        self.ensure(name)
        existing = self.find(name, marker)
        if existing is not None:
            logger.info("reusing %s at %s", name.value, existing[:12])
            return self.ensure(name, existing), True
        return self.ensure(name, base.revision, source=base), False

    def replace_contents(self, tree: WorkingTree, populate: Callable[[Path], None]) -> None:
        """Empty ``tree`` (keeping its history) and let ``populate`` refill it."""
        for child in tree.root.iterdir():
            if child.name != ".git":
                remove_existing(child)
        populate(tree.root)

    # ------------------------------------------------------------------
    # Commit / rollback
    # ------------------------------------------------------------------

    def commit(self, tree: WorkingTree, message: str, *, marker: str | None = None) -> str:
        """Append a commit on top of ``tree.revision`` and return its id."""
        head = self._provider.head(tree.root)
        if head != tree.revision:
            raise TreeCorrupted(
                f"{tree.name.value}: refusing to commit, HEAD is {head}, expected {tree.revision}"
            )
        if marker:
            message = f"{message}\n\n{marker}"
        revision = self._provider.commit(tree.root, message)
        if marker:
            self._provider.tag(tree.root, marker_tag(tree.name, marker), revision)
        logger.info("committed %s at %s", tree.name.value, revision[:12])
        return revision

    def discard(self, tree: WorkingTree) -> None:
        """Throw away uncommitted changes, returning to ``tree.revision``."""
        if tree.revision is not None:
            self._provider.checkout(tree.root, tree.revision)
        else:
            for child in tree.root.iterdir():
                if child.name != ".git":
                    remove_existing(child)
