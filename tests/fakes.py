"""Test doubles and source fixtures shared by the buildforge test suite."""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import httpx

from buildforge.core.command import CommandOutcome
from buildforge.core.compiler import CompileRequest
from buildforge.core.fs import remove_existing
from buildforge.core.hasher import canonical_json_bytes
from buildforge.core.patch_format import make_patch
from buildforge.errors import VcsError

MANIFEST_ENDPOINT = "https://hub.test/versions"
ARTIFACT_BASE = "https://cdn.test/artifacts"
DEMO_VERSION = "1.0.0-demo"


# ---------------------------------------------------------------------------
# Source fixtures: vanilla -> intermediate -> final
# ---------------------------------------------------------------------------


def numbered_lines(prefix: str, count: int) -> str:
    return "".join(f"{prefix} line {n}\n" for n in range(1, count + 1))


VANILLA_SOURCES: dict[str, str] = {
    "src/Server.java": numbered_lines("server", 30),
    "src/World.java": numbered_lines("world", 12),
}


def _edit(text: str, old: str, new: str) -> str:
    assert old in text
    return text.replace(old, new, 1)


INTERMEDIATE_SOURCES: dict[str, str] = {
    "src/Server.java": _edit(
        VANILLA_SOURCES["src/Server.java"],
        "server line 5\n",
        "server line 5\n// intermediate: tick hook\n",
    ),
    "src/World.java": VANILLA_SOURCES["src/World.java"],
    "src/Plugin.java": "public interface Plugin {\n}\n",
}

FINAL_SOURCES: dict[str, str] = {
    **INTERMEDIATE_SOURCES,
    "src/World.java": _edit(
        INTERMEDIATE_SOURCES["src/World.java"],
        "world line 10\n",
        "world line 10 (patched)\n",
    ),
}


def diff_trees(old: dict[str, str], new: dict[str, str]) -> str:
    """Unified diff from one {path: text} snapshot to another."""
    parts = []
    for path in sorted(set(old) | set(new)):
        parts.append(make_patch(path, old.get(path), new.get(path)))
    return "".join(parts)


def write_tree(root: Path, files: dict[str, str]) -> None:
    for rel, text in files.items():
        target = root / rel
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(text)


def read_tree(root: Path) -> dict[str, str]:
    return {
        p.relative_to(root).as_posix(): p.read_text()
        for p in sorted(root.rglob("*"))
        if p.is_file() and ".git" not in p.relative_to(root).parts
    }


# ---------------------------------------------------------------------------
# In-memory tree provider
# ---------------------------------------------------------------------------


@dataclass
class _Commit:
    snapshot: dict[str, bytes]
    message: str
    parent: str | None


@dataclass
class _Repo:
    commits: dict[str, _Commit] = field(default_factory=dict)
    head: str | None = None
    tags: dict[str, str] = field(default_factory=dict)


class FakeTreeProvider:
    """TreeProvider double: commits are full snapshots held in memory.

    A ``.git`` directory marks a repository on disk so that tree removal
    and re-creation behave as they do with real git.
    """

    def __init__(self) -> None:
        self.repos: dict[Path, _Repo] = {}
        self.calls: list[tuple[str, str]] = []

    @staticmethod
    def _key(path: Path | str) -> Path:
        return Path(path).resolve()

    def _repo(self, path: Path | str) -> _Repo:
        key = self._key(path)
        repo = self.repos.get(key)
        if repo is None or not (key / ".git").is_dir():
            raise VcsError(f"{path} is not a repository")
        return repo

    @staticmethod
    def _snapshot(path: Path) -> dict[str, bytes]:
        return {
            p.relative_to(path).as_posix(): p.read_bytes()
            for p in Path(path).rglob("*")
            if p.is_file() and ".git" not in p.relative_to(path).parts
        }

    @staticmethod
    def _write(path: Path, snapshot: dict[str, bytes]) -> None:
        for child in Path(path).iterdir():
            if child.name != ".git":
                remove_existing(child)
        for rel, data in snapshot.items():
            target = Path(path) / rel
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)

    # TreeProvider ------------------------------------------------------

    def is_repository(self, path: Path) -> bool:
        key = self._key(path)
        return key in self.repos and (key / ".git").is_dir()

    def init(self, path: Path) -> None:
        self.calls.append(("init", str(path)))
        key = self._key(path)
        key.mkdir(parents=True, exist_ok=True)
        (key / ".git").mkdir(exist_ok=True)
        self.repos[key] = _Repo()

    def clone(self, source: str, path: Path) -> None:
        self.calls.append(("clone", source))
        origin = self._repo(source)
        self.init(path)
        repo = self._repo(path)
        repo.commits = dict(origin.commits)
        repo.head = origin.head
        if origin.head is not None:
            self._write(path, origin.commits[origin.head].snapshot)

    def fetch(self, path: Path, source: str, revision: str) -> None:
        self.calls.append(("fetch", revision))
        origin = self._repo(source)
        if revision not in origin.commits:
            raise VcsError(f"revision {revision} not found in {source}")
        repo = self._repo(path)
        for rev, commit in origin.commits.items():
            repo.commits.setdefault(rev, commit)

    def checkout(self, path: Path, revision: str) -> None:
        self.calls.append(("checkout", revision))
        repo = self._repo(path)
        revision = repo.tags.get(revision, revision)
        if revision not in repo.commits:
            raise VcsError(f"unknown revision {revision}")
        self._write(path, repo.commits[revision].snapshot)
        repo.head = revision

    def head(self, path: Path) -> str | None:
        return self._repo(path).head

    def is_clean(self, path: Path) -> bool:
        repo = self._repo(path)
        expected = repo.commits[repo.head].snapshot if repo.head else {}
        return self._snapshot(path) == expected

    def commit(self, path: Path, message: str) -> str:
        self.calls.append(("commit", message.splitlines()[0] if message else ""))
        repo = self._repo(path)
        snapshot = self._snapshot(path)
        body = {
            "parent": repo.head,
            "message": message,
            "files": {k: hashlib.sha1(v).hexdigest() for k, v in sorted(snapshot.items())},
            "seq": len(repo.commits),
        }
        revision = hashlib.sha1(canonical_json_bytes(body)).hexdigest()
        repo.commits[revision] = _Commit(snapshot=snapshot, message=message, parent=repo.head)
        repo.head = revision
        return revision

    def find_commit(self, path: Path, marker: str) -> str | None:
        repo = self._repo(path)
        for revision, commit in reversed(list(repo.commits.items())):
            if marker in commit.message:
                return revision
        return None

    def message(self, path: Path, revision: str) -> str:
        return self._repo(path).commits[revision].message

    def tag(self, path: Path, name: str, revision: str) -> None:
        self._repo(path).tags[name] = revision

    # Helpers -------------------------------------------------------------

    def history(self, path: Path) -> list[str]:
        """Revisions reachable from HEAD, oldest first."""
        repo = self._repo(path)
        chain = []
        revision = repo.head
        while revision is not None:
            chain.append(revision)
            revision = repo.commits[revision].parent
        return list(reversed(chain))

    def count(self, op: str) -> int:
        return sum(1 for name, _ in self.calls if name == op)


# ---------------------------------------------------------------------------
# Toolchain doubles
# ---------------------------------------------------------------------------


class FakeDecompiler:
    """Writes a fixed set of sources; counts invocations."""

    def __init__(self, sources: dict[str, str] | None = None) -> None:
        self.sources = sources if sources is not None else VANILLA_SOURCES
        self.calls: list[Path] = []

    async def decompile(self, binary: Path, output: Path) -> None:
        self.calls.append(Path(binary))
        write_tree(output, self.sources)


class FakeCompiler:
    """Writes one jar whose bytes are a digest of the source tree."""

    def __init__(self, *, exit_code: int = 0, diagnostics: str = "") -> None:
        self.exit_code = exit_code
        self.diagnostics = diagnostics
        self.requests: list[CompileRequest] = []

    async def invoke(self, request: CompileRequest) -> CommandOutcome:
        self.requests.append(request)
        if self.exit_code == 0:
            sources = read_tree(request.sources[0])
            payload = canonical_json_bytes(sources)
            (request.output / "server-remapped.jar").write_bytes(b"JAR\0" + payload)
        lines = self.diagnostics.splitlines()
        return CommandOutcome(
            args=["fake-compiler"],
            exit_code=self.exit_code,
            stdout="",
            stderr=self.diagnostics,
            transcript=lines,
        )


# ---------------------------------------------------------------------------
# HTTP doubles
# ---------------------------------------------------------------------------


class MockUpstream:
    """Serves manifests and artifact bytes through ``httpx.MockTransport``.

    ``routes`` maps a URL to bytes, an int status code, or a callable
    taking the request and returning an ``httpx.Response``.
    """

    def __init__(self) -> None:
        self.routes: dict[str, Any] = {}
        self.requests: list[str] = []
        self.offline = False

    def handler(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        self.requests.append(url)
        if self.offline:
            raise httpx.ConnectError("network disabled", request=request)
        route = self.routes.get(url)
        if route is None:
            return httpx.Response(404)
        if isinstance(route, int):
            return httpx.Response(route)
        if callable(route):
            return route(request)
        return httpx.Response(200, content=route)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))

    def count(self, url: str) -> int:
        return sum(1 for u in self.requests if u == url)


def artifact_entry(name: str, kind: str, data: bytes, **extra: Any) -> dict[str, Any]:
    entry = {
        "name": name,
        "kind": kind,
        "url": f"{ARTIFACT_BASE}/{name}",
        "algorithm": "sha256",
        "digest": hashlib.sha256(data).hexdigest(),
    }
    entry.update(extra)
    return entry


def manifest_document(
    version: str,
    artifacts: list[dict[str, Any]],
    *,
    patch_repository: str = "",
    patch_revision: str = "rev-1",
    mappings: str = "mappings.txt",
) -> bytes:
    return json.dumps(
        {
            "version": version,
            "artifacts": artifacts,
            "patch_repository": patch_repository,
            "patch_revision": patch_revision,
            "mappings": mappings,
        }
    ).encode()

