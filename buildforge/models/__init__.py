"""buildforge data models — all Pydantic v2, all frozen (immutable)."""

from buildforge.models.cache import CacheBusy, CacheEntry, CacheKey, CacheStatus, Reservation
from buildforge.models.manifest import (
    ArtifactKind,
    ArtifactRef,
    DigestAlgorithm,
    VerifiedArtifact,
    VersionManifest,
)
from buildforge.models.patches import (
    ApplyResult,
    FileConflict,
    Hunk,
    HunkFailure,
    HunkPlacement,
    PatchFile,
    PatchSet,
    combined_patch_hash,
)
from buildforge.models.pipeline import (
    VALID_TRANSITIONS,
    BuildContext,
    PipelineResult,
    PipelineState,
    StageTransition,
)
from buildforge.models.trees import TREE_CHAIN, TreeName, WorkingTree

__all__ = [
    "ApplyResult",
    "ArtifactKind",
    "ArtifactRef",
    "BuildContext",
    "CacheBusy",
    "CacheEntry",
    "CacheKey",
    "CacheStatus",
    "DigestAlgorithm",
    "FileConflict",
    "Hunk",
    "HunkFailure",
    "HunkPlacement",
    "PatchFile",
    "PatchSet",
    "PipelineResult",
    "PipelineState",
    "Reservation",
    "StageTransition",
    "TREE_CHAIN",
    "TreeName",
    "VALID_TRANSITIONS",
    "VerifiedArtifact",
    "VersionManifest",
    "WorkingTree",
    "combined_patch_hash",
]
