"""Working tree handles — three named layers in a fixed order."""

from __future__ import annotations

from enum import Enum
from pathlib import Path

from pydantic import BaseModel, ConfigDict


class TreeName(str, Enum):
    """The reconstruction chain: baseline -> intermediate -> final.

    ``PATCHES`` is the checkout of the patch repository itself; it is not
    part of the chain.
    """

    VANILLA = "vanilla"
    INTERMEDIATE = "intermediate"
    FINAL = "final"
    PATCHES = "patches"


# Each chained tree is derived from the one before it.
TREE_CHAIN: list[TreeName] = [TreeName.VANILLA, TreeName.INTERMEDIATE, TreeName.FINAL]


class WorkingTree(BaseModel):
    """A checked-out directory and the revision it is expected to be at."""

    model_config = ConfigDict(frozen=True)

    name: TreeName
    root: Path
    revision: str | None = None  # None until the first commit

    def at(self, revision: str) -> WorkingTree:
        return self.model_copy(update={"revision": revision})
