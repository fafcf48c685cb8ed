"""Adversarial tests — working trees edited behind the pipeline's back.

Someone (or a crashed run) leaves stray or modified files in a working
tree. The next run must not build from, or commit on top of, that state.
"""

from __future__ import annotations

import pytest

from buildforge.core.fs import remove_existing
from buildforge.errors import TreeCorrupted
from buildforge.models.trees import TreeName

from fakes import (
    DEMO_VERSION,
    FINAL_SOURCES,
    INTERMEDIATE_SOURCES,
    FakeCompiler,
    FakeDecompiler,
    read_tree,
    write_tree,
)


class TestDriftIsRepaired:
    @pytest.mark.asyncio
    async def test_stray_file_in_intermediate(self, make_coordinator, upstream, demo_upstream, trees):
        async with upstream.client() as client:
            await make_coordinator(client).build(DEMO_VERSION)
            intermediate = trees.path_for(TreeName.INTERMEDIATE)
            write_tree(intermediate, {"src/Backdoor.java": "class Backdoor {}\n"})

            compiler = FakeCompiler()
            await make_coordinator(client, compiler=compiler).build(DEMO_VERSION, refresh=True)

        assert read_tree(intermediate) == INTERMEDIATE_SOURCES
        (request,) = compiler.requests
        assert "src/Backdoor.java" not in read_tree(request.sources[0])

    @pytest.mark.asyncio
    async def test_modified_tracked_file_in_final(self, make_coordinator, upstream, demo_upstream, trees, provider):
        async with upstream.client() as client:
            first = await make_coordinator(client).build(DEMO_VERSION)
            final = trees.path_for(TreeName.FINAL)
            head = provider.head(final)
            (final / "src" / "World.java").write_text("hijacked\n")

            second = await make_coordinator(client).build(DEMO_VERSION, refresh=True)

        assert read_tree(final) == FINAL_SOURCES
        assert provider.head(final) == head
        assert second.artifacts == first.artifacts

    @pytest.mark.asyncio
    async def test_deleted_vanilla_tree_is_decompiled_again(
        self, make_coordinator, upstream, demo_upstream, trees
    ):
        decompiler = FakeDecompiler()
        async with upstream.client() as client:
            await make_coordinator(client, decompiler=decompiler).build(DEMO_VERSION)
            remove_existing(trees.path_for(TreeName.VANILLA))

            result = await make_coordinator(client, decompiler=decompiler).build(
                DEMO_VERSION, refresh=True
            )

        assert read_tree(trees.path_for(TreeName.FINAL)) == FINAL_SOURCES
        assert result.cache_hit is False
        assert len(decompiler.calls) == 2


class TestCommitsRefuseStaleState:
    def test_commit_on_moved_head_is_refused(self, trees):
        tree = trees.ensure(TreeName.VANILLA)
        write_tree(tree.root, {"a.txt": "one\n"})
        first = trees.commit(tree, "first")
        write_tree(tree.root, {"a.txt": "two\n"})
        trees.commit(tree.at(first), "second")

        write_tree(tree.root, {"a.txt": "three\n"})
        with pytest.raises(TreeCorrupted, match="refusing to commit"):
            trees.commit(tree.at(first), "third")

    def test_verify_catches_untracked_files(self, trees):
        tree = trees.ensure(TreeName.VANILLA)
        write_tree(tree.root, {"a.txt": "one\n"})
        tree = tree.at(trees.commit(tree, "first"))
        trees.verify(tree)

        write_tree(tree.root, {"b.txt": "stray\n"})
        with pytest.raises(TreeCorrupted, match="uncommitted"):
            trees.verify(tree)
