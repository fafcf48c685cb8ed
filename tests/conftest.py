"""Shared test fixtures for buildforge."""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from typing import Any

import httpx
import pytest

from buildforge.config import BuildforgeConfig
from buildforge.core.build_cache import BuildCache
from buildforge.core.coordinator import PipelineCoordinator
from buildforge.core.fs import remove_existing
from buildforge.core.source_tree import SourceTreeManager

from fakes import (
    ARTIFACT_BASE,
    DEMO_VERSION,
    FINAL_SOURCES,
    INTERMEDIATE_SOURCES,
    MANIFEST_ENDPOINT,
    VANILLA_SOURCES,
    FakeCompiler,
    FakeDecompiler,
    FakeTreeProvider,
    MockUpstream,
    artifact_entry,
    diff_trees,
    manifest_document,
)

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def tmp_dir(tmp_path: Path) -> Path:
    """Provide a temporary directory for test artifacts."""
    return tmp_path


@pytest.fixture
def config(tmp_dir: Path) -> BuildforgeConfig:
    """Configuration rooted in the temp directory, with instant backoff."""
    return BuildforgeConfig(
        _env_file=None,
        manifest_endpoint=MANIFEST_ENDPOINT,
        cache_dir=tmp_dir / "cache",
        work_dir=tmp_dir / "work",
        download_dir=tmp_dir / "downloads",
        retry_attempts=3,
        backoff_base_seconds=0,
        backoff_max_seconds=0,
        reservation_poll_seconds=0.01,
        fuzz_tolerance=3,
    )


@pytest.fixture
def upstream() -> MockUpstream:
    return MockUpstream()


@pytest.fixture
def provider() -> FakeTreeProvider:
    return FakeTreeProvider()


@pytest.fixture
def trees(config: BuildforgeConfig, provider: FakeTreeProvider) -> SourceTreeManager:
    return SourceTreeManager(config.work_dir, provider)


@pytest.fixture
def build_cache(config: BuildforgeConfig) -> BuildCache:
    return BuildCache.from_config(config)


@pytest.fixture
def make_patch_repository(
    tmp_dir: Path, provider: FakeTreeProvider
) -> Callable[..., tuple[str, str]]:
    """Factory fixture: a fake patch repository; returns (location, revision)."""

    def _factory(
        intermediate: str | None = None,
        final: str | None = None,
        *,
        name: str = "patch-repo",
    ) -> tuple[str, str]:
        root = tmp_dir / name
        if not provider.is_repository(root):
            provider.init(root)
        for child in root.iterdir():
            if child.name != ".git":
                remove_existing(child)
        layers = {
            "intermediate-patches": intermediate
            if intermediate is not None
            else diff_trees(VANILLA_SOURCES, INTERMEDIATE_SOURCES),
            "final-patches": final
            if final is not None
            else diff_trees(INTERMEDIATE_SOURCES, FINAL_SOURCES),
        }
        for layer, text in layers.items():
            (root / layer).mkdir(parents=True, exist_ok=True)
            (root / layer / "0001-changes.patch").write_text(text)
        revision = provider.commit(root, "patches")
        return str(root), revision

    return _factory


@pytest.fixture
def demo_upstream(
    upstream: MockUpstream, make_patch_repository: Callable[..., tuple[str, str]]
) -> dict[str, Any]:
    """Serve a complete ``1.0.0-demo`` manifest plus its artifacts."""
    server = b"PK\x03\x04 obfuscated server bytes " * 64
    mappings = b"a -> net.example.Server\nb -> net.example.World\n"
    repository, revision = make_patch_repository()
    artifacts = [
        artifact_entry("server.jar", "server", server),
        artifact_entry("mappings.txt", "mappings", mappings),
    ]
    upstream.routes[f"{MANIFEST_ENDPOINT}/{DEMO_VERSION}.json"] = manifest_document(
        DEMO_VERSION, artifacts, patch_repository=repository, patch_revision=revision
    )
    upstream.routes[f"{ARTIFACT_BASE}/server.jar"] = server
    upstream.routes[f"{ARTIFACT_BASE}/mappings.txt"] = mappings
    return {
        "server": server,
        "mappings": mappings,
        "repository": repository,
        "revision": revision,
        "artifacts": artifacts,
    }


@pytest.fixture
def make_coordinator(
    config: BuildforgeConfig, trees: SourceTreeManager, build_cache: BuildCache
) -> Callable[..., PipelineCoordinator]:
    """Factory fixture: a PipelineCoordinator wired to in-memory doubles."""

    def _factory(
        client: httpx.AsyncClient,
        *,
        decompiler: FakeDecompiler | None = None,
        compiler: FakeCompiler | None = None,
        tree_manager: SourceTreeManager | None = None,
        cache: BuildCache | None = None,
        settings: BuildforgeConfig | None = None,
    ) -> PipelineCoordinator:
        return PipelineCoordinator(
            settings or config,
            client=client,
            trees=tree_manager or trees,
            decompiler=decompiler or FakeDecompiler(),
            compiler=compiler or FakeCompiler(),
            cache=cache or build_cache,
        )

    return _factory
