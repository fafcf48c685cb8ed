"""Version manifest models — what one upstream version needs.

A manifest is immutable once fetched. Every ArtifactRef names one or more
expected digests; downstream stages only ever see artifacts whose bytes
matched all of them.
"""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class DigestAlgorithm(str, Enum):
    """Supported digest families."""

    MD5 = "md5"
    SHA1 = "sha1"
    SHA256 = "sha256"
    SHA512 = "sha512"


class ArtifactKind(str, Enum):
    """Role an artifact plays in the build."""

    SERVER = "server"
    MAPPINGS = "mappings"
    ACCESS_TRANSFORMS = "access_transforms"
    LIBRARY = "library"


class ArtifactRef(BaseModel):
    """A single upstream artifact and the digests it must satisfy.

    The manifest document may spell a digest either as an
    ``algorithm``/``digest`` pair or as a ``digests`` mapping; both forms
    normalize to ``digests``.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    url: str
    kind: ArtifactKind = ArtifactKind.LIBRARY
    digests: dict[DigestAlgorithm, str]
    size_bytes: int | None = None
    local_path: Path | None = None

    @model_validator(mode="before")
    @classmethod
    def _fold_single_digest(cls, data: Any) -> Any:
        if isinstance(data, dict) and "algorithm" in data and "digest" in data:
            data = dict(data)
            algorithm = data.pop("algorithm")
            digest = data.pop("digest")
            digests = dict(data.get("digests") or {})
            digests[algorithm] = digest
            data["digests"] = digests
        return data

    @field_validator("name")
    @classmethod
    def _plain_file_name(cls, value: str) -> str:
        if not value or "/" in value or "\\" in value or value in (".", ".."):
            raise ValueError(f"artifact name must be a plain file name, got {value!r}")
        return value

    @field_validator("url")
    @classmethod
    def _http_url(cls, value: str) -> str:
        if not value.startswith(("http://", "https://")):
            raise ValueError(f"artifact url must be http(s), got {value!r}")
        return value

    @field_validator("digests")
    @classmethod
    def _normalize_digests(cls, value: dict[DigestAlgorithm, str]) -> dict[DigestAlgorithm, str]:
        if not value:
            raise ValueError("artifact must declare at least one digest")
        normalized: dict[DigestAlgorithm, str] = {}
        for algorithm, digest in value.items():
            digest = digest.strip().lower()
            if not digest or any(c not in "0123456789abcdef" for c in digest):
                raise ValueError(f"{algorithm.value} digest is not hex: {digest!r}")
            normalized[algorithm] = digest
        return normalized

    def with_local_path(self, path: Path) -> ArtifactRef:
        """Return a copy bound to a local storage path."""
        return self.model_copy(update={"local_path": Path(path)})


class VersionManifest(BaseModel):
    """Everything required to build one version tag."""

    model_config = ConfigDict(frozen=True)

    version: str
    artifacts: list[ArtifactRef]
    patch_revision: str
    mappings: str  # name of the artifact holding the mapping table
    patch_repository: str = ""
    patch_layers: list[str] = Field(
        default_factory=lambda: ["intermediate-patches", "final-patches"]
    )

    @model_validator(mode="after")
    def _check_references(self) -> VersionManifest:
        names = [a.name for a in self.artifacts]
        if len(names) != len(set(names)):
            raise ValueError("artifact names must be unique")
        if self.mappings not in names:
            raise ValueError(f"mappings artifact {self.mappings!r} is not declared")
        if not any(a.kind == ArtifactKind.SERVER for a in self.artifacts):
            raise ValueError("manifest declares no server artifact")
        if len(self.patch_layers) != 2:
            raise ValueError("manifest must declare exactly two patch layers")
        if not self.patch_revision.strip():
            raise ValueError("patch_revision is empty")
        return self

    def artifact(self, name: str) -> ArtifactRef:
        """Look up an artifact by name."""
        for ref in self.artifacts:
            if ref.name == name:
                return ref
        raise KeyError(name)

    @property
    def server(self) -> ArtifactRef:
        return next(a for a in self.artifacts if a.kind == ArtifactKind.SERVER)

    @property
    def mapping_artifact(self) -> ArtifactRef:
        return self.artifact(self.mappings)


class VerifiedArtifact(BaseModel):
    """An artifact whose local bytes matched every expected digest."""

    model_config = ConfigDict(frozen=True)

    ref: ArtifactRef
    path: Path
    digests: dict[str, str]
    size_bytes: int
    reused: bool = False

    @property
    def name(self) -> str:
        return self.ref.name

    @property
    def kind(self) -> ArtifactKind:
        return self.ref.kind
