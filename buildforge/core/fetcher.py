"""ArtifactFetcher — bounded concurrent streaming downloads with digest checks.

Every download streams straight to ``<name>.part`` while the same chunks
feed the digest accumulator; nothing is buffered whole in memory. Only a
fully verified file is renamed to its final name. A mismatch, an error or
a cancellation deletes the partial file.
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import AsyncIterator, Iterable, Sequence
from contextlib import asynccontextmanager
from pathlib import Path
from typing import IO, Any

import httpx

from buildforge.config import BuildforgeConfig
from buildforge.core.fs import remove_existing
from buildforge.core.hasher import DigestAccumulator, file_digests
from buildforge.core.resolver import is_retryable_status, is_transient
from buildforge.core.retry import RetryExhausted, with_retry
from buildforge.errors import ArtifactUnavailable, DigestMismatch, FetchExhausted, NetworkError
from buildforge.models.manifest import ArtifactRef, VerifiedArtifact

logger = logging.getLogger(__name__)


def check_digests(ref: ArtifactRef, actual: dict[str, str]) -> None:
    """Raise DigestMismatch unless every expected digest matches."""
    for algorithm, expected in ref.digests.items():
        got = actual.get(algorithm.value, "")
        if got != expected:
            raise DigestMismatch(ref.name, algorithm.value, expected, got)


@asynccontextmanager
async def open_download(
    client: httpx.AsyncClient,
    ref: ArtifactRef,
    part_path: Path,
    *,
    timeout: float,
) -> AsyncIterator[tuple[httpx.Response, IO[bytes], DigestAccumulator]]:
    """Acquire the response stream, the part file and the digest accumulator together.

    All three are released on every exit path; on any exception the part
    file is removed as well.
    """
    accumulator = DigestAccumulator(a.value for a in ref.digests)
    async with client.stream("GET", ref.url, timeout=timeout) as response:
        if is_retryable_status(response.status_code):
            raise NetworkError(f"HTTP {response.status_code} from {ref.url}")
        if response.status_code >= 400:
            raise ArtifactUnavailable(ref.name, ref.url, response.status_code)

        await asyncio.to_thread(part_path.parent.mkdir, parents=True, exist_ok=True)
        fh = await asyncio.to_thread(open, part_path, "wb")
        try:
            yield response, fh, accumulator
        except BaseException:
            fh.close()
            part_path.unlink(missing_ok=True)
            raise
        finally:
            fh.close()


class ArtifactFetcher:
    """Downloads and verifies the artifacts named by a manifest.

    Parameters
    ----------
    config:
        Supplies concurrency limit, retry policy, timeout and refetch policy.
    client:
        Shared async HTTP client.
    """

    def __init__(self, config: BuildforgeConfig, client: httpx.AsyncClient) -> None:
        self._config = config
        self._client = client

    # ------------------------------------------------------------------
    # Batch
    # ------------------------------------------------------------------

    async def fetch_all(self, refs: Sequence[ArtifactRef]) -> list[VerifiedArtifact]:
        """Fetch every ref concurrently, bounded by ``download_concurrency``.

        The first definitive failure cancels the rest of the batch and is
        re-raised; results are returned in input order.
        """
        if not refs:
            return []
        semaphore = asyncio.Semaphore(self._config.download_concurrency)
        tasks = [
            asyncio.create_task(self._fetch_bounded(ref, semaphore), name=f"fetch:{ref.name}")
            for ref in refs
        ]
        try:
            done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
        except asyncio.CancelledError:
            await _cancel_all(tasks)
            raise

        if pending:
            logger.warning("cancelling %d in-flight download(s) after a failure", len(pending))
            await _cancel_all(pending)

        for task in tasks:
            if task in done and not task.cancelled() and task.exception() is not None:
                raise task.exception()  # type: ignore[misc]
        return [task.result() for task in tasks]

    async def _fetch_bounded(
        self, ref: ArtifactRef, semaphore: asyncio.Semaphore
    ) -> VerifiedArtifact:
        async with semaphore:
            return await self.fetch(ref)

    # ------------------------------------------------------------------
    # Single artifact
    # ------------------------------------------------------------------

    async def fetch(self, ref: ArtifactRef) -> VerifiedArtifact:
        """Fetch and verify one artifact.

        Transient failures are retried with backoff. A digest mismatch is
        never retried with the same bytes: if allowed, one fresh download
        is made, and a second mismatch is final.
        """
        if ref.local_path is None:
            raise ValueError(f"{ref.name} has no local path bound")
        destination = ref.local_path

        existing = await self._reuse_existing(ref, destination)
        if existing is not None:
            return existing

        mismatches = 0
        while True:
            try:
                return await with_retry(
                    lambda: self._download(ref, destination),
                    policy=self._config.retry_policy,
                    is_transient=is_transient,
                    what=f"download {ref.name}",
                )
            except RetryExhausted as exc:
                raise FetchExhausted(ref.name, exc.attempts, exc.last_error) from exc
            except DigestMismatch as exc:
                mismatches += 1
                if mismatches == 1 and self._config.refetch_on_digest_mismatch:
                    logger.warning("%s; discarding bytes and fetching a fresh copy", exc)
                    continue
                logger.error("%s; integrity failure, giving up", exc)
                raise

    async def _download(self, ref: ArtifactRef, destination: Path) -> VerifiedArtifact:
        part_path = destination.with_name(destination.name + ".part")
        logger.info("downloading %s from %s", ref.name, ref.url)
        async with open_download(
            self._client, ref, part_path, timeout=self._config.request_timeout_seconds
        ) as (response, fh, accumulator):
            async for chunk in response.aiter_bytes():
                accumulator.update(chunk)
                await asyncio.to_thread(fh.write, chunk)
            await asyncio.to_thread(_flush_to_disk, fh)
            actual = accumulator.hexdigests()
            check_digests(ref, actual)
            if ref.size_bytes is not None and accumulator.size != ref.size_bytes:
                raise DigestMismatch(
                    ref.name, "size", str(ref.size_bytes), str(accumulator.size)
                )
            size = accumulator.size

        await asyncio.to_thread(os.replace, part_path, destination)
        logger.info("verified %s (%d bytes)", ref.name, size)
        return VerifiedArtifact(ref=ref, path=destination, digests=actual, size_bytes=size)

    async def _reuse_existing(
        self, ref: ArtifactRef, destination: Path
    ) -> VerifiedArtifact | None:
        """Return the on-disk copy if it still verifies; otherwise remove it."""
        if not destination.is_file():
            return None
        actual = await asyncio.to_thread(
            file_digests, destination, [a.value for a in ref.digests]
        )
        try:
            check_digests(ref, actual)
        except DigestMismatch as exc:
            logger.warning("discarding stale local copy: %s", exc)
            await asyncio.to_thread(remove_existing, destination)
            return None
        size = destination.stat().st_size
        if ref.size_bytes is not None and size != ref.size_bytes:
            await asyncio.to_thread(remove_existing, destination)
            return None
        logger.info("reusing verified %s", destination)
        return VerifiedArtifact(
            ref=ref, path=destination, digests=actual, size_bytes=size, reused=True
        )


async def _cancel_all(tasks: Iterable[asyncio.Task[Any]]) -> None:
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)


def _flush_to_disk(fh: IO[bytes]) -> None:
    fh.flush()
    os.fsync(fh.fileno())
