"""PipelineCoordinator — sequences the stages of one build.

States move strictly forward::

    PENDING -> RESOLVING -> FETCHING -> PATCHING (x3) -> COMPILING -> CACHING -> DONE

The first PATCHING step produces the decompiled baseline; the other two
apply the intermediate and final patch sets. FAILED is reachable from any
non-terminal state and carries the error that caused it. A cache hit
short-circuits to DONE, either before RESOLVING (when the patch hash for
the version is already known) or right after it.

The coordinator keeps no "current version" state of its own: everything a
run needs travels in its BuildContext and _Run, so several runs may share
one coordinator. The working trees are shared by all of them, so every
step that reads or moves a tree holds the coordinator's tree lock.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
from pathlib import Path

import httpx

from buildforge.config import BuildforgeConfig
from buildforge.core.build_cache import BuildCache
from buildforge.core.compiler import Compiler, ExternalCompiler, RemapCompileOrchestrator
from buildforge.core.decompiler import Decompiler, ExternalDecompiler
from buildforge.core.fetcher import ArtifactFetcher
from buildforge.core.fs import create_directory, remove_existing
from buildforge.core.hasher import content_address
from buildforge.core.patch_engine import PatchEngine
from buildforge.core.patch_repository import PatchRepository
from buildforge.core.resolver import VersionResolver
from buildforge.core.source_tree import SourceTreeManager
from buildforge.core.vcs import GitTreeProvider, TreeProvider
from buildforge.errors import CacheCorruption, InvalidTransitionError, PipelineFailed
from buildforge.models.cache import CacheBusy, CacheEntry, CacheKey, CacheStatus, Reservation
from buildforge.models.manifest import VerifiedArtifact, VersionManifest
from buildforge.models.patches import PatchSet, combined_patch_hash
from buildforge.models.pipeline import (
    VALID_TRANSITIONS,
    BuildContext,
    PipelineResult,
    PipelineState,
    StageTransition,
)
from buildforge.models.trees import TREE_CHAIN, TreeName, WorkingTree

logger = logging.getLogger(__name__)


class _Run:
    """State machine and transition history for one pipeline run."""

    def __init__(self, ctx: BuildContext) -> None:
        self.ctx = ctx
        self.state = PipelineState.PENDING
        self.transitions: list[StageTransition] = []

    def transition(self, target: PipelineState, detail: str = "") -> None:
        allowed = VALID_TRANSITIONS.get(self.state, set())
        if target not in allowed:
            raise InvalidTransitionError(
                f"Cannot transition run {self.ctx.run_id} from {self.state.value} "
                f"to {target.value}. Allowed: {sorted(s.value for s in allowed)}"
            )
        self.transitions.append(
            StageTransition(from_state=self.state, to_state=target, detail=detail)
        )
        logger.info("[%s] %s -> %s %s", self.ctx.run_id, self.state.value, target.value, detail)
        self.state = target

    def result(self, key: CacheKey, entry: CacheEntry, *, cache_hit: bool) -> PipelineResult:
        return PipelineResult(
            run_id=self.ctx.run_id,
            version=self.ctx.version,
            patch_hash=key.patch_hash,
            artifacts=[str(p) for p in entry.artifact_paths()],
            cache_hit=cache_hit,
            transitions=list(self.transitions),
        )


class PipelineCoordinator:
    """Runs a build for a version tag, end to end.

    Parameters
    ----------
    config:
        Explicit configuration; nothing is read from module globals.
    client:
        Shared async HTTP client for manifests and artifacts.
    trees:
        Manager of the vanilla/intermediate/final/patches working trees.
    decompiler:
        Produces the vanilla baseline from the verified server binary.
    compiler:
        Remap/compile toolchain capability.
    cache:
        BuildCache; built from ``config`` when omitted.
    """

    def __init__(
        self,
        config: BuildforgeConfig,
        *,
        client: httpx.AsyncClient,
        trees: SourceTreeManager,
        decompiler: Decompiler,
        compiler: Compiler,
        cache: BuildCache | None = None,
    ) -> None:
        self.config = config
        self.resolver = VersionResolver(config, client)
        self.fetcher = ArtifactFetcher(config, client)
        self.trees = trees
        self.patches = PatchRepository(trees)
        self.engine = PatchEngine.from_config(config, trees)
        self.decompiler = decompiler
        self.orchestrator = RemapCompileOrchestrator(compiler)
        self.cache = cache or BuildCache.from_config(config)
        self._tree_lock = asyncio.Lock()

    @classmethod
    def from_config(
        cls,
        config: BuildforgeConfig,
        client: httpx.AsyncClient,
        *,
        provider: TreeProvider | None = None,
    ) -> PipelineCoordinator:
        """Wire the real collaborators: git, the decompiler and compiler commands."""
        return cls(
            config,
            client=client,
            trees=SourceTreeManager(config.work_dir, provider or GitTreeProvider()),
            decompiler=ExternalDecompiler(config.decompiler_command),
            compiler=ExternalCompiler(config.compiler_command),
        )

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def build(self, version: str, *, refresh: bool = False) -> PipelineResult:
        """Build ``version`` or return the cached artifacts for it.

        A corrupt cache entry is invalidated and the whole pipeline runs
        once more for that key. Every other failure is raised as
        PipelineFailed naming the stage it happened in.
        """
        ctx = BuildContext(version=version, refresh=refresh)
        try:
            return await self.run(ctx)
        except CacheCorruption as exc:
            logger.warning("%s; invalidating and rebuilding", exc)
            self.cache.invalidate(exc.key)
            retry_ctx = BuildContext(version=version, refresh=True)
            try:
                return await self.run(retry_ctx)
            except CacheCorruption as again:
                raise PipelineFailed(PipelineState.CACHING.value, again) from again

    async def run(self, ctx: BuildContext) -> PipelineResult:
        """Execute one run. CacheCorruption propagates so the caller can rebuild."""
        run = _Run(ctx)
        try:
            return await self._execute(run)
        except CacheCorruption as exc:
            stage = run.state
            run.transition(PipelineState.FAILED, str(exc))
            logger.debug("[%s] corrupt cache entry seen while %s", ctx.run_id, stage.value)
            raise
        except Exception as exc:
            stage = run.state
            if stage not in (PipelineState.DONE, PipelineState.FAILED):
                run.transition(PipelineState.FAILED, f"{type(exc).__name__}: {exc}")
            logger.error("[%s] %s failed: %s", ctx.run_id, stage.value, exc)
            raise PipelineFailed(stage.value, exc) from exc

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    async def _execute(self, run: _Run) -> PipelineResult:
        ctx = run.ctx

        if not ctx.refresh:
            known_hash = await asyncio.to_thread(self.cache.last_resolution, ctx.version)
            if known_hash is not None:
                key = CacheKey(version=ctx.version, patch_hash=known_hash)
                entry = await self._complete_entry(key)
                if entry is not None:
                    run.transition(PipelineState.DONE, f"cache hit {key}")
                    return run.result(key, entry, cache_hit=True)

        run.transition(PipelineState.RESOLVING, ctx.version)
        manifest = await self.resolver.resolve(ctx.version, refresh=ctx.refresh)
        async with self._tree_lock:
            patch_sets = await asyncio.to_thread(self.patches.load, manifest)
        key = CacheKey(version=ctx.version, patch_hash=combined_patch_hash(patch_sets))
        await asyncio.to_thread(
            self.cache.remember_resolution, ctx.version, key.patch_hash, manifest.patch_revision
        )

        reservation: Reservation | None = None
        try:
            while reservation is None:
                if not ctx.refresh:
                    entry = await self._complete_entry(key)
                    if entry is not None:
                        run.transition(PipelineState.DONE, f"cache hit {key}")
                        return run.result(key, entry, cache_hit=True)
                claim = await asyncio.to_thread(self.cache.reserve, key)
                if isinstance(claim, CacheBusy):
                    logger.info("%s is being built by %s; waiting", key, claim.holder or "another run")
                    await self.cache.wait_for(key)
                    continue
                reservation = claim

            entry = await self._build(run, manifest, patch_sets, reservation)
            run.transition(PipelineState.DONE, f"published {key}")
            return run.result(key, entry, cache_hit=False)
        except BaseException as exc:
            if reservation is not None and run.state != PipelineState.DONE:
                await asyncio.to_thread(self.cache.fail, reservation, f"{run.state.value}: {exc}")
            raise
        finally:
            if reservation is not None:
                self.cache.release(reservation)

    async def _complete_entry(self, key: CacheKey) -> CacheEntry | None:
        """The verified COMPLETE entry for ``key``; hashing runs off the event loop."""
        entry = await asyncio.to_thread(self.cache.lookup, key)
        if entry is None or entry.status != CacheStatus.COMPLETE:
            return None
        await asyncio.to_thread(self.cache.verify, entry)
        return entry

    async def _build(
        self,
        run: _Run,
        manifest: VersionManifest,
        patch_sets: list[PatchSet],
        reservation: Reservation,
    ) -> CacheEntry:
        run.transition(PipelineState.FETCHING, f"{len(manifest.artifacts)} artifact(s)")
        verified = await self.fetcher.fetch_all(manifest.artifacts)
        by_name = {a.name: a for a in verified}
        server = by_name[manifest.server.name]

        output = Path(self.config.work_dir) / "output" / run.ctx.run_id
        try:
            async with self._tree_lock:
                run.transition(PipelineState.PATCHING, f"layer 0: baseline {server.name}")
                tree = await self._baseline(run, server)
                for layer, (name, patch_set) in enumerate(zip(TREE_CHAIN[1:], patch_sets), start=1):
                    run.transition(PipelineState.PATCHING, f"layer {layer}: {patch_set.name}")
                    tree = await self._layer(name, tree, patch_set)

                run.transition(
                    PipelineState.COMPILING, f"{tree.name.value}@{(tree.revision or '')[:12]}"
                )
                produced = await self.orchestrator.compile(
                    tree, verified, by_name[manifest.mappings], output
                )

            run.transition(PipelineState.CACHING, str(reservation.key))
            source_hashes = {a.name: _strongest_digest(a) for a in verified}
            source_hashes["patches"] = reservation.key.patch_hash
            source_hashes["tree"] = tree.revision or ""
            entry = await asyncio.to_thread(
                self.cache.commit,
                reservation,
                produced,
                base=output,
                source_hashes=source_hashes,
            )
            await asyncio.to_thread(self.cache.verify, entry)
            return entry
        finally:
            await asyncio.to_thread(remove_existing, output)

    async def _baseline(self, run: _Run, server: VerifiedArtifact) -> WorkingTree:
        """The vanilla tree for ``server``, decompiling only when no commit records it."""
        marker = f"Baseline: {server.name} {_strongest_digest(server)}"
        existing = await asyncio.to_thread(self.trees.find, TreeName.VANILLA, marker)
        if existing is not None:
            logger.info("[%s] reusing decompiled baseline %s", run.ctx.run_id, existing[:12])
            return await asyncio.to_thread(self.trees.ensure, TreeName.VANILLA, existing)

        tree = await asyncio.to_thread(self.trees.ensure, TreeName.VANILLA)
        scratch = Path(self.config.work_dir) / f".decompile-{run.ctx.run_id}"
        await asyncio.to_thread(remove_existing, scratch)
        try:
            await self.decompiler.decompile(
                server.path, await asyncio.to_thread(create_directory, scratch)
            )

            def populate(root: Path) -> None:
                for child in scratch.iterdir():
                    shutil.move(str(child), str(root / child.name))

            await asyncio.to_thread(self.trees.replace_contents, tree, populate)
        except BaseException:
            await asyncio.to_thread(self.trees.discard, tree)
            raise
        finally:
            await asyncio.to_thread(remove_existing, scratch)

        revision = await asyncio.to_thread(
            self.trees.commit, tree, f"Decompile {server.name}", marker=marker
        )
        return tree.at(revision)

    async def _layer(self, name: TreeName, base: WorkingTree, patch_set: PatchSet) -> WorkingTree:
        """Derive ``name`` from ``base`` and apply ``patch_set``, reusing an earlier result."""
        marker = f"Layer: {name.value} {content_address([base.revision, patch_set.content_hash])}"
        tree, reused = await asyncio.to_thread(self.trees.derive, name, base, marker)
        if reused:
            return tree
        result = await asyncio.to_thread(self.engine.apply, tree, patch_set, marker=marker)
        return tree.at(result.revision)


def _strongest_digest(artifact: VerifiedArtifact) -> str:
    for algorithm in ("sha512", "sha256", "sha1", "md5"):
        if algorithm in artifact.digests:
            return f"{algorithm}:{artifact.digests[algorithm]}"
    return ""
