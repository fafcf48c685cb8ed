"""BuildCache — content-addressed store of finished artifacts.

Layout under ``cache_dir``::

    <key dir>/metadata.json       CacheEntry (status, timestamp, hashes)
    <key dir>/artifacts/<name>    produced files
    .locks/<key dir>.lock         single-writer reservation
    .resolutions/<version>.json   patch hash last resolved for a version
    .staging-<uuid>/              entry being assembled

An entry is assembled under a staging directory and published with a
rename, so a reader sees either no entry or a complete one. A key only
ever maps to one artifact content: republishing identical bytes keeps the
existing entry, different bytes replace it whole.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import shutil
import socket
import time
import uuid
from collections.abc import Mapping, Sequence
from pathlib import Path

from pydantic import ValidationError

from buildforge.config import BuildforgeConfig
from buildforge.core.fs import atomic_write_bytes, remove_existing
from buildforge.core.hasher import canonical_json_bytes, file_sha256
from buildforge.errors import CacheCorruption, ReservationLost
from buildforge.models.cache import (
    CacheBusy,
    CacheEntry,
    CacheKey,
    CacheStatus,
    Reservation,
    safe_name,
)

logger = logging.getLogger(__name__)

METADATA_FILE = "metadata.json"
ARTIFACTS_DIR = "artifacts"


class BuildCache:
    """Filesystem-backed BuildCache.

    Parameters
    ----------
    root:
        Cache directory.
    poll_seconds:
        Interval at which ``wait_for`` re-checks a busy key.
    stale_seconds:
        Age after which a reservation is considered abandoned and broken.
    """

    def __init__(
        self,
        root: Path,
        *,
        poll_seconds: float = 0.5,
        stale_seconds: float = 3600.0,
    ) -> None:
        self._root = Path(root)
        self._root.mkdir(parents=True, exist_ok=True)
        self._poll = poll_seconds
        self._stale = stale_seconds

    @classmethod
    def from_config(cls, config: BuildforgeConfig) -> BuildCache:
        return cls(
            config.cache_dir,
            poll_seconds=config.reservation_poll_seconds,
            stale_seconds=config.reservation_stale_seconds,
        )

    @property
    def root(self) -> Path:
        return self._root

    def entry_dir(self, key: CacheKey) -> Path:
        return self._root / key.directory_name

    def _lock_path(self, key: CacheKey) -> Path:
        return self._root / ".locks" / f"{key.directory_name}.lock"

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def lookup(self, key: CacheKey) -> CacheEntry | None:
        """Return the entry for ``key``, if any.

        A published entry is COMPLETE or FAILED. With nothing published but
        a live reservation, a PENDING placeholder is returned. Raises
        CacheCorruption when the published metadata cannot be read back.
        """
        directory = self.entry_dir(key)
        metadata = directory / METADATA_FILE
        if metadata.is_file():
            try:
                entry = CacheEntry.model_validate_json(metadata.read_bytes())
            except ValidationError as exc:
                raise CacheCorruption(key, f"unreadable metadata: {exc}") from exc
            if entry.key != key:
                raise CacheCorruption(key, f"metadata belongs to {entry.key}")
            return entry.model_copy(update={"directory": directory})
        if directory.exists():
            raise CacheCorruption(key, f"{directory} has no {METADATA_FILE}")
        if self._holder(key) is not None:
            return CacheEntry(key=key, status=CacheStatus.PENDING)
        return None

    def verify(self, entry: CacheEntry) -> None:
        """Re-hash every published artifact; raise CacheCorruption on any difference."""
        if entry.status != CacheStatus.COMPLETE or entry.directory is None:
            raise CacheCorruption(entry.key, f"entry is {entry.status.value}, not complete")
        if not entry.artifacts:
            raise CacheCorruption(entry.key, "entry lists no artifacts")
        for name, expected in sorted(entry.artifacts.items()):
            path = entry.directory / ARTIFACTS_DIR / name
            if not path.is_file():
                raise CacheCorruption(entry.key, f"{name} is missing")
            actual = file_sha256(path)
            if actual != expected:
                raise CacheCorruption(
                    entry.key, f"{name} sha256 {actual} does not match {expected}"
                )

    # ------------------------------------------------------------------
    # Reservation
    # ------------------------------------------------------------------

    def reserve(self, key: CacheKey) -> Reservation | CacheBusy:
        """Claim the single-writer reservation for ``key``.

        Exactly one concurrent caller gets a Reservation; the others get
        CacheBusy and should ``wait_for`` the key. A reservation older than
        ``stale_seconds`` is broken once.
        """
        lock = self._lock_path(key)
        lock.parent.mkdir(parents=True, exist_ok=True)
        token = uuid.uuid4().hex
        record = canonical_json_bytes(
            {
                "token": token,
                "pid": os.getpid(),
                "host": socket.gethostname(),
                "created": time.time(),
            }
        )
        for attempt in range(2):
            try:
                fd = os.open(lock, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                if attempt == 0:
                    seen = self._read_lock(lock)
                    if self._is_stale(lock) and self._break_stale(lock, seen):
                        logger.warning("broke stale reservation for %s", key)
                        continue
                return CacheBusy(key=key, holder=self._holder(key) or "")
            with os.fdopen(fd, "wb") as fh:
                fh.write(record)
            logger.debug("reserved %s", key)
            return Reservation(key=key, token=token, lock_path=lock)
        return CacheBusy(key=key, holder=self._holder(key) or "")

    def release(self, reservation: Reservation) -> None:
        """Drop the reservation if this caller still holds it."""
        if self._holds(reservation):
            reservation.lock_path.unlink(missing_ok=True)
            logger.debug("released %s", reservation.key)

    def _holds(self, reservation: Reservation) -> bool:
        try:
            data = json.loads(reservation.lock_path.read_bytes())
        except (OSError, ValueError):
            return False
        return data.get("token") == reservation.token

    def _holder(self, key: CacheKey) -> str | None:
        lock = self._lock_path(key)
        try:
            data = json.loads(lock.read_bytes())
        except FileNotFoundError:
            return None
        except (OSError, ValueError):
            return "unknown"
        return f"pid {data.get('pid')} on {data.get('host')}"

    @staticmethod
    def _read_lock(lock: Path) -> bytes | None:
        try:
            return lock.read_bytes()
        except FileNotFoundError:
            return None

    def _break_stale(self, lock: Path, seen: bytes | None) -> bool:
        """Remove ``lock`` only if it still holds the stale record ``seen``.

        The lock is first renamed to a private name, so two callers can
        never both delete it. If what was moved is not the stale record, a
        newer holder got there first and its lock is linked back.
        """
        if seen is None:
            return True
        broken = lock.with_name(f"{lock.name}.broken-{uuid.uuid4().hex}")
        try:
            os.replace(lock, broken)
        except FileNotFoundError:
            return True
        try:
            if broken.read_bytes() == seen:
                return True
            try:
                os.link(broken, lock)
            except FileExistsError:
                logger.warning("reservation %s was replaced while it was being restored", lock.name)
            return False
        finally:
            broken.unlink(missing_ok=True)

    def _is_stale(self, lock: Path) -> bool:
        try:
            age = time.time() - lock.stat().st_mtime
        except FileNotFoundError:
            return True
        return age > self._stale

    async def wait_for(self, key: CacheKey, *, timeout: float | None = None) -> CacheEntry | None:
        """Poll until nobody holds ``key``'s reservation, then look it up again."""
        lock = self._lock_path(key)
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while lock.exists() and not self._is_stale(lock):
            if deadline is not None and loop.time() >= deadline:
                raise asyncio.TimeoutError(f"{key} still reserved after {timeout}s")
            await asyncio.sleep(self._poll)
        return await asyncio.to_thread(self.lookup, key)

    # ------------------------------------------------------------------
    # Publish
    # ------------------------------------------------------------------

    def commit(
        self,
        reservation: Reservation,
        artifact_paths: Sequence[Path],
        *,
        base: Path | None = None,
        source_hashes: Mapping[str, str] | None = None,
    ) -> CacheEntry:
        """Publish ``artifact_paths`` as the COMPLETE entry for the reserved key.

        Artifact names are paths relative to ``base`` (file names when
        ``base`` is None).
        """
        key = reservation.key
        if not self._holds(reservation):
            raise ReservationLost(f"reservation for {key} is no longer held")
        if not artifact_paths:
            raise ValueError("cannot publish an entry without artifacts")

        staging = self._root / f".staging-{uuid.uuid4().hex}"
        try:
            hashes: dict[str, str] = {}
            for source in artifact_paths:
                source = Path(source)
                name = source.relative_to(base).as_posix() if base else source.name
                target = staging / ARTIFACTS_DIR / name
                target.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(source, target)
                hashes[name] = file_sha256(target)

            entry = CacheEntry(
                key=key,
                status=CacheStatus.COMPLETE,
                artifacts=hashes,
                source_hashes=dict(source_hashes or {}),
            )
            atomic_write_bytes(
                staging / METADATA_FILE, entry.model_dump_json(exclude={"directory"}).encode()
            )
            return self._publish(key, staging, entry)
        finally:
            remove_existing(staging)

    def fail(self, reservation: Reservation, reason: str) -> CacheEntry:
        """Record a FAILED entry, unless a COMPLETE one is already published."""
        key = reservation.key
        try:
            existing = self.lookup(key)
        except CacheCorruption:
            existing = None
        if existing is not None and existing.status == CacheStatus.COMPLETE:
            return existing
        entry = CacheEntry(key=key, status=CacheStatus.FAILED, reason=reason)
        staging = self._root / f".staging-{uuid.uuid4().hex}"
        try:
            atomic_write_bytes(
                staging / METADATA_FILE, entry.model_dump_json(exclude={"directory"}).encode()
            )
            return self._publish(key, staging, entry)
        finally:
            remove_existing(staging)

    def _publish(self, key: CacheKey, staging: Path, entry: CacheEntry) -> CacheEntry:
        final = self.entry_dir(key)
        try:
            existing = self.lookup(key)
        except CacheCorruption as exc:
            logger.warning("%s; replacing", exc)
            existing = None

        if (
            existing is not None
            and existing.status == CacheStatus.COMPLETE
            and entry.status == CacheStatus.COMPLETE
            and existing.artifacts == entry.artifacts
        ):
            logger.info("cache entry %s already holds identical artifacts", key)
            return existing

        if final.exists():
            # Move the old entry aside first; readers see no entry, never a mix.
            retired = self._root / f".retired-{uuid.uuid4().hex}"
            os.replace(final, retired)
            try:
                os.replace(staging, final)
            finally:
                remove_existing(retired)
            logger.warning("replaced cache entry %s", key)
        else:
            os.replace(staging, final)
            logger.info("published cache entry %s", key)
        return entry.model_copy(update={"directory": final})

    def invalidate(self, key: CacheKey) -> bool:
        """Remove the entry for ``key``; returns whether one existed."""
        final = self.entry_dir(key)
        if not final.exists():
            return False
        retired = self._root / f".retired-{uuid.uuid4().hex}"
        os.replace(final, retired)
        remove_existing(retired)
        logger.warning("invalidated cache entry %s", key)
        return True

    # ------------------------------------------------------------------
    # Resolutions
    # ------------------------------------------------------------------

    def _resolution_path(self, version: str) -> Path:
        return self._root / ".resolutions" / f"{safe_name(version)}.json"

    def remember_resolution(self, version: str, patch_hash: str, patch_revision: str = "") -> None:
        """Record which patch hash ``version`` last resolved to."""
        atomic_write_bytes(
            self._resolution_path(version),
            canonical_json_bytes(
                {"version": version, "patch_hash": patch_hash, "patch_revision": patch_revision}
            ),
        )

    def last_resolution(self, version: str) -> str | None:
        """Patch hash remembered for ``version``, if any."""
        path = self._resolution_path(version)
        try:
            data = json.loads(path.read_bytes())
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as exc:
            logger.warning("ignoring unreadable resolution record %s: %s", path, exc)
            return None
        if data.get("version") != version:
            return None
        return data.get("patch_hash") or None
