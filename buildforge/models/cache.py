"""Build cache models — keys, entries, reservations."""

from __future__ import annotations

import re
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

from buildforge.core.hasher import sha256_hex

_UNSAFE = re.compile(r"[^A-Za-z0-9._-]")


def safe_name(value: str) -> str:
    """Replace characters that are not safe in a single path segment."""
    return _UNSAFE.sub("_", value)


class CacheStatus(str, Enum):
    PENDING = "pending"
    COMPLETE = "complete"
    FAILED = "failed"


class CacheKey(BaseModel):
    """(version tag, combined PatchSet content hash)."""

    model_config = ConfigDict(frozen=True)

    version: str
    patch_hash: str

    @property
    def directory_name(self) -> str:
        """Filesystem-safe, collision-free directory name for this key."""
        readable = safe_name(self.version)[:48]
        digest = sha256_hex(f"{self.version}\0{self.patch_hash}".encode("utf-8"))
        return f"{readable}-{digest[:24]}"

    def __str__(self) -> str:
        return f"{self.version}@{self.patch_hash.removeprefix('sha256:')[:12]}"


class CacheEntry(BaseModel):
    """Metadata record stored beside the cached artifacts."""

    model_config = ConfigDict(frozen=True)

    key: CacheKey
    status: CacheStatus
    artifacts: dict[str, str] = Field(default_factory=dict)  # file name -> sha256
    source_hashes: dict[str, str] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    reason: str = ""
    directory: Path | None = None

    def artifact_paths(self) -> list[Path]:
        if self.directory is None:
            return []
        return [self.directory / "artifacts" / name for name in sorted(self.artifacts)]


class Reservation(BaseModel):
    """Proof that this caller is the single writer for a key."""

    model_config = ConfigDict(frozen=True)

    key: CacheKey
    token: str
    lock_path: Path


class CacheBusy(BaseModel):
    """Another caller holds the reservation for a key."""

    model_config = ConfigDict(frozen=True)

    key: CacheKey
    holder: str = ""
