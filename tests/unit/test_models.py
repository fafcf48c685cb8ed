"""Unit tests for buildforge Pydantic models — validation and immutability."""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from buildforge.errors import PatchConflict
from buildforge.models.cache import CacheEntry, CacheKey, CacheStatus, safe_name
from buildforge.models.manifest import ArtifactKind, ArtifactRef, DigestAlgorithm, VersionManifest
from buildforge.models.patches import (
    FileConflict,
    Hunk,
    HunkFailure,
    HunkPlacement,
    PatchFile,
    PatchSet,
    combined_patch_hash,
)
from buildforge.models.pipeline import VALID_TRANSITIONS, BuildContext, PipelineState
from buildforge.models.trees import TREE_CHAIN, TreeName, WorkingTree

SHA = "a" * 64


def ref(name="server.jar", kind="server", **extra):
    data = {"name": name, "kind": kind, "url": f"https://cdn.test/{name}", "digests": {"sha256": SHA}}
    data.update(extra)
    return data


# ---------------------------------------------------------------------------
# Manifest
# ---------------------------------------------------------------------------


class TestArtifactRef:
    def test_single_digest_form_folds_into_digests(self):
        artifact = ArtifactRef.model_validate(
            {"name": "a.jar", "url": "https://x/a.jar", "algorithm": "sha1", "digest": "AB12"}
        )
        assert artifact.digests == {DigestAlgorithm.SHA1: "ab12"}

    def test_frozen(self):
        artifact = ArtifactRef.model_validate(ref())
        with pytest.raises(ValidationError):
            artifact.name = "other.jar"  # type: ignore[misc]

    @pytest.mark.parametrize("name", ["", "../evil.jar", "dir/a.jar", ".."])
    def test_name_must_be_plain(self, name):
        with pytest.raises(ValidationError):
            ArtifactRef.model_validate(ref(name=name))

    def test_url_must_be_http(self):
        with pytest.raises(ValidationError):
            ArtifactRef.model_validate(ref(url="file:///etc/passwd"))

    def test_requires_a_digest(self):
        with pytest.raises(ValidationError):
            ArtifactRef.model_validate(ref(digests={}))

    def test_digest_must_be_hex(self):
        with pytest.raises(ValidationError):
            ArtifactRef.model_validate(ref(digests={"sha256": "not-hex"}))

    def test_unknown_algorithm_rejected(self):
        with pytest.raises(ValidationError):
            ArtifactRef.model_validate(ref(digests={"crc32": "abcd"}))

    def test_with_local_path_copies(self, tmp_dir):
        artifact = ArtifactRef.model_validate(ref())
        bound = artifact.with_local_path(tmp_dir / "server.jar")
        assert bound.local_path == tmp_dir / "server.jar"
        assert artifact.local_path is None


class TestVersionManifest:
    def manifest(self, **overrides):
        data = {
            "version": "1.0",
            "artifacts": [ref(), ref("mappings.txt", "mappings")],
            "patch_revision": "abc",
            "mappings": "mappings.txt",
        }
        data.update(overrides)
        return VersionManifest.model_validate(data)

    def test_valid(self):
        manifest = self.manifest()
        assert manifest.server.name == "server.jar"
        assert manifest.mapping_artifact.kind == ArtifactKind.MAPPINGS
        assert manifest.patch_layers == ["intermediate-patches", "final-patches"]

    def test_duplicate_names(self):
        with pytest.raises(ValidationError, match="unique"):
            self.manifest(artifacts=[ref(), ref(), ref("mappings.txt", "mappings")])

    def test_undeclared_mappings(self):
        with pytest.raises(ValidationError, match="mappings"):
            self.manifest(mappings="nope.txt")

    def test_needs_a_server(self):
        with pytest.raises(ValidationError, match="server"):
            self.manifest(artifacts=[ref("lib.jar", "library"), ref("mappings.txt", "mappings")])

    def test_exactly_two_layers(self):
        with pytest.raises(ValidationError, match="two patch layers"):
            self.manifest(patch_layers=["only"])

    def test_blank_revision(self):
        with pytest.raises(ValidationError):
            self.manifest(patch_revision="  ")

    def test_artifact_lookup(self):
        manifest = self.manifest()
        assert manifest.artifact("mappings.txt").kind == ArtifactKind.MAPPINGS
        with pytest.raises(KeyError):
            manifest.artifact("missing")


# ---------------------------------------------------------------------------
# Patches
# ---------------------------------------------------------------------------


class TestHunk:
    def test_before_and_after(self):
        hunk = Hunk(old_start=1, old_len=2, new_start=1, new_len=2, lines=[" a", "-b", "+c"])
        assert hunk.before == ["a", "b"]
        assert hunk.after == ["a", "c"]
        assert hunk.header == "@@ -1,2 +1,2 @@"

    def test_counts_must_match(self):
        with pytest.raises(ValidationError, match="old lines"):
            Hunk(old_start=1, old_len=3, new_start=1, new_len=2, lines=[" a", "-b", "+c"])

    def test_tags_must_be_valid(self):
        with pytest.raises(ValidationError):
            Hunk(old_start=1, old_len=1, new_start=1, new_len=1, lines=["?a"])


class TestPatchSetHash:
    def pf(self, raw, path="a.txt"):
        return PatchFile(path=path, raw=raw)

    def test_hash_is_stable(self):
        a = PatchSet(name="x", revision="r1", files=[self.pf("1"), self.pf("2")])
        b = PatchSet(name="x", revision="r2", files=[self.pf("1"), self.pf("2")])
        assert a.content_hash == b.content_hash

    def test_order_changes_hash(self):
        a = PatchSet(name="x", revision="r", files=[self.pf("1"), self.pf("2")])
        b = PatchSet(name="x", revision="r", files=[self.pf("2"), self.pf("1")])
        assert a.content_hash != b.content_hash

    def test_combined_hash_depends_on_layer_order(self):
        a = PatchSet(name="a", revision="r", files=[self.pf("1")])
        b = PatchSet(name="b", revision="r", files=[self.pf("2")])
        assert combined_patch_hash([a, b]) != combined_patch_hash([b, a])


class TestConflictReport:
    def test_report_lists_expected_and_found(self):
        failure = HunkFailure(
            path="src/A.java",
            hunk_index=2,
            header="@@ -9,3 +9,3 @@",
            nominal_line=9,
            fuzz=0,
            expected=["line 9"],
            found=["line 6"],
            appears_applied=True,
        )
        error = PatchConflict("final", [FileConflict(path="src/A.java", failures=[failure])])
        report = error.report()
        assert "src/A.java: hunk #2" in report
        assert "|line 9" in report
        assert "|line 6" in report
        assert "looks applied" in report

    def test_placement_offset(self):
        assert HunkPlacement(hunk_index=1, nominal_line=9, applied_line=12).offset == 3


# ---------------------------------------------------------------------------
# Cache, trees, pipeline
# ---------------------------------------------------------------------------


class TestCacheKey:
    def test_directory_name_is_safe_and_distinct(self):
        a = CacheKey(version="1.0/../x", patch_hash="sha256:1")
        b = CacheKey(version="1.0/../x", patch_hash="sha256:2")
        assert "/" not in a.directory_name
        assert a.directory_name != b.directory_name

    def test_safe_name(self):
        assert safe_name("1.0 rc/1") == "1.0_rc_1"

    def test_artifact_paths(self, tmp_dir):
        entry = CacheEntry(
            key=CacheKey(version="1", patch_hash="h"),
            status=CacheStatus.COMPLETE,
            artifacts={"b.jar": "x", "a.jar": "y"},
            directory=tmp_dir,
        )
        assert entry.artifact_paths() == [
            tmp_dir / "artifacts" / "a.jar",
            tmp_dir / "artifacts" / "b.jar",
        ]


class TestTrees:
    def test_chain_order(self):
        assert TREE_CHAIN == [TreeName.VANILLA, TreeName.INTERMEDIATE, TreeName.FINAL]

    def test_at_returns_copy(self):
        tree = WorkingTree(name=TreeName.FINAL, root=Path("final"))
        moved = tree.at("abc")
        assert moved.revision == "abc"
        assert tree.revision is None


class TestPipelineStates:
    def test_terminal_states(self):
        assert VALID_TRANSITIONS[PipelineState.DONE] == set()
        assert VALID_TRANSITIONS[PipelineState.FAILED] == set()

    def test_failed_reachable_from_every_live_state(self):
        for state, targets in VALID_TRANSITIONS.items():
            if state not in (PipelineState.DONE, PipelineState.FAILED):
                assert PipelineState.FAILED in targets

    def test_no_backward_edges(self):
        order = list(PipelineState)
        for state, targets in VALID_TRANSITIONS.items():
            for target in targets:
                assert order.index(target) >= order.index(state)

    def test_context_run_ids_are_unique(self):
        assert BuildContext(version="1").run_id != BuildContext(version="1").run_id
