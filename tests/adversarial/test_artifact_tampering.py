"""Adversarial tests — tampered artifact bytes from upstream.

A mirror or man-in-the-middle serving altered bytes must never get those
bytes past FETCHING:
1. A digest mismatch is retried once with a fresh download, then fatal
2. No partial or unverified file is left in the download directory
3. Nothing downstream (decompile, patching, cache) runs on bad bytes
"""

from __future__ import annotations

import httpx
import pytest

from buildforge.core.fetcher import ArtifactFetcher
from buildforge.errors import DigestMismatch, PipelineFailed
from buildforge.models.cache import CacheKey, CacheStatus
from buildforge.models.manifest import ArtifactRef

from fakes import ARTIFACT_BASE, DEMO_VERSION, FakeDecompiler, artifact_entry

SERVER_URL = f"{ARTIFACT_BASE}/server.jar"


def server_ref(config, data: bytes, **extra) -> ArtifactRef:
    entry = artifact_entry("server.jar", "server", data, **extra)
    return ArtifactRef.model_validate(entry).with_local_path(config.download_dir / "server.jar")


def flip_one_byte(data: bytes) -> bytes:
    middle = len(data) // 2
    return data[:middle] + bytes([data[middle] ^ 0x01]) + data[middle + 1 :]


class TestTamperedDownload:
    @pytest.mark.asyncio
    async def test_single_flipped_byte_is_detected(self, config, upstream):
        genuine = b"genuine server bytes" * 100
        ref = server_ref(config, genuine)
        upstream.routes[SERVER_URL] = flip_one_byte(genuine)

        async with upstream.client() as client:
            with pytest.raises(DigestMismatch) as info:
                await ArtifactFetcher(config, client).fetch(ref)

        assert info.value.artifact == "server.jar"
        assert info.value.algorithm == "sha256"
        assert upstream.count(SERVER_URL) == 2
        assert list(config.download_dir.glob("*")) == []

    @pytest.mark.asyncio
    async def test_transient_corruption_heals_on_refetch(self, config, upstream):
        genuine = b"genuine server bytes" * 100
        ref = server_ref(config, genuine)
        served = iter([flip_one_byte(genuine), genuine])
        upstream.routes[SERVER_URL] = lambda request: httpx.Response(200, content=next(served))

        async with upstream.client() as client:
            artifact = await ArtifactFetcher(config, client).fetch(ref)

        assert artifact.path.read_bytes() == genuine
        assert not artifact.path.with_name("server.jar.part").exists()

    @pytest.mark.asyncio
    async def test_truncated_body_fails_the_size_check(self, config, upstream):
        genuine = b"0123456789" * 50
        ref = server_ref(config, genuine, size_bytes=len(genuine))
        # digest also differs, so the mismatch is reported on the first check
        upstream.routes[SERVER_URL] = genuine[:-10]

        async with upstream.client() as client:
            with pytest.raises(DigestMismatch):
                await ArtifactFetcher(config, client).fetch(ref)
        assert not (config.download_dir / "server.jar").exists()

    @pytest.mark.asyncio
    async def test_poisoned_local_copy_is_not_trusted(self, config, upstream):
        genuine = b"genuine server bytes" * 100
        ref = server_ref(config, genuine)
        upstream.routes[SERVER_URL] = genuine
        config.download_dir.mkdir(parents=True)
        (config.download_dir / "server.jar").write_bytes(flip_one_byte(genuine))

        async with upstream.client() as client:
            artifact = await ArtifactFetcher(config, client).fetch(ref)

        assert artifact.reused is False
        assert artifact.path.read_bytes() == genuine


class TestTamperedPipeline:
    @pytest.mark.asyncio
    async def test_bad_bytes_stop_the_run_at_fetching(
        self, make_coordinator, upstream, demo_upstream, provider, build_cache, config
    ):
        upstream.routes[SERVER_URL] = flip_one_byte(demo_upstream["server"])
        decompiler = FakeDecompiler()
        commits = provider.count("commit")

        async with upstream.client() as client:
            with pytest.raises(PipelineFailed) as info:
                await make_coordinator(client, decompiler=decompiler).build(DEMO_VERSION)

        assert info.value.state == "fetching"
        assert isinstance(info.value.cause, DigestMismatch)
        assert decompiler.calls == []
        assert provider.count("commit") == commits
        assert not list(config.download_dir.glob("*.part"))
        assert not (config.download_dir / "server.jar").exists()

        patch_hash = build_cache.last_resolution(DEMO_VERSION)
        entry = build_cache.lookup(CacheKey(version=DEMO_VERSION, patch_hash=patch_hash))
        assert entry.status == CacheStatus.FAILED
        assert entry.reason.startswith("fetching:")
        assert entry.artifacts == {}
