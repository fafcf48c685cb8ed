"""Canonical hashing helpers for content addressing and artifact digests.

Two concerns live here:

- canonical JSON + SHA-256 for content addresses (cache keys, PatchSet hashes)
- incremental multi-family digests for streamed artifact bytes
"""

from __future__ import annotations

import hashlib
import json
from pathlib import Path
from typing import Any, Iterable

_CHUNK_SIZE = 1 << 16


def canonical_json_bytes(obj: Any) -> bytes:
    """Produce canonical JSON bytes — deterministic, sorted, compact.

    - sorted keys
    - no whitespace separators (",", ":")
    - ensure_ascii=True
    - UTF-8 encoding
    """
    return json.dumps(
        obj, sort_keys=True, separators=(",", ":"), ensure_ascii=True
    ).encode("utf-8")


def sha256_hex(data: bytes) -> str:
    """Return the SHA-256 hex digest of raw bytes."""
    return hashlib.sha256(data).hexdigest()


def content_address(obj: Any) -> str:
    """Content-address a JSON-serializable object.

    Returns "sha256:<hex>".
    """
    return f"sha256:{sha256_hex(canonical_json_bytes(obj))}"


class DigestAccumulator:
    """Feeds the same byte stream into several digest families at once.

    Parameters
    ----------
    algorithms:
        hashlib names (``"md5"``, ``"sha1"``, ``"sha256"``, ``"sha512"``).
    """

    def __init__(self, algorithms: Iterable[str]) -> None:
        self._hashers = {name: hashlib.new(name) for name in algorithms}
        if not self._hashers:
            raise ValueError("at least one digest algorithm is required")
        self.size = 0

    def update(self, chunk: bytes) -> None:
        for hasher in self._hashers.values():
            hasher.update(chunk)
        self.size += len(chunk)

    def hexdigests(self) -> dict[str, str]:
        return {name: h.hexdigest() for name, h in self._hashers.items()}


def file_digests(path: Path, algorithms: Iterable[str]) -> dict[str, str]:
    """Digest a file on disk in chunks, never loading it whole."""
    accumulator = DigestAccumulator(algorithms)
    with open(path, "rb") as fh:
        for chunk in iter(lambda: fh.read(_CHUNK_SIZE), b""):
            accumulator.update(chunk)
    return accumulator.hexdigests()


def file_sha256(path: Path) -> str:
    return file_digests(path, ["sha256"])["sha256"]
