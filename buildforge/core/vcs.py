"""Tree provider capability — checkout/commit mechanics of a working tree.

The rest of the pipeline only talks to ``TreeProvider``; ``GitTreeProvider``
binds it to the ``git`` executable. Tests substitute an in-memory double.
"""

from __future__ import annotations

import logging
import subprocess
from collections.abc import Sequence
from pathlib import Path
from typing import Protocol, runtime_checkable

from buildforge.errors import VcsError

logger = logging.getLogger(__name__)

COMMIT_IDENTITY = ("buildforge", "buildforge@localhost")
WORK_BRANCH = "buildforge"


@runtime_checkable
class TreeProvider(Protocol):
    """What the source tree layer needs from a version-control tool."""

    def is_repository(self, path: Path) -> bool: ...

    def init(self, path: Path) -> None: ...

    def clone(self, source: str, path: Path) -> None: ...

    def fetch(self, path: Path, source: str, revision: str) -> None: ...

    def checkout(self, path: Path, revision: str) -> None: ...

    def head(self, path: Path) -> str | None: ...

    def is_clean(self, path: Path) -> bool: ...

    def commit(self, path: Path, message: str) -> str: ...

    def find_commit(self, path: Path, marker: str) -> str | None: ...

    def message(self, path: Path, revision: str) -> str: ...

    def tag(self, path: Path, name: str, revision: str) -> None: ...


class GitTreeProvider:
    """TreeProvider backed by the ``git`` command line."""

    def __init__(self, executable: str = "git", timeout: float | None = 600) -> None:
        self._git = executable
        self._timeout = timeout

    def _run(
        self, args: Sequence[str], *, cwd: Path, check: bool = True
    ) -> subprocess.CompletedProcess[str]:
        name, email = COMMIT_IDENTITY
        command = [
            self._git,
            "-c", f"user.name={name}",
            "-c", f"user.email={email}",
            "-c", "commit.gpgsign=false",
            *args,
        ]
        try:
            process = subprocess.run(
                command,
                cwd=cwd,
                capture_output=True,
                text=False,
                check=False,
                timeout=self._timeout,
            )
        except (OSError, subprocess.SubprocessError) as exc:
            raise VcsError(f"git {' '.join(args)} could not run: {exc}") from exc
        stdout = process.stdout.decode("utf-8", errors="replace") if process.stdout else ""
        stderr = process.stderr.decode("utf-8", errors="replace") if process.stderr else ""
        result = subprocess.CompletedProcess(process.args, process.returncode, stdout, stderr)
        if check and result.returncode != 0:
            message = result.stderr.strip() or result.stdout.strip() or "unknown git error"
            raise VcsError(f"git {' '.join(args)} failed in {cwd}: {message}")
        return result

    def is_repository(self, path: Path) -> bool:
        git_dir = Path(path) / ".git"
        return git_dir.exists() and git_dir.is_dir()

    def init(self, path: Path) -> None:
        Path(path).mkdir(parents=True, exist_ok=True)
        self._run(["init", "--quiet", "-b", WORK_BRANCH], cwd=path)

    def clone(self, source: str, path: Path) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        logger.info("cloning %s into %s", source, path)
        self._run(["clone", "--quiet", source, path.name], cwd=path.parent)

    def fetch(self, path: Path, source: str, revision: str) -> None:
        if self._has_revision(path, revision):
            return
        self._run(["fetch", "--quiet", source, revision], cwd=path, check=False)
        if not self._has_revision(path, revision):
            self._run(["fetch", "--quiet", source], cwd=path)
        if not self._has_revision(path, revision):
            raise VcsError(f"revision {revision} not found in {source}")

    def _has_revision(self, path: Path, revision: str) -> bool:
        result = self._run(
            ["cat-file", "-e", f"{revision}^{{commit}}"], cwd=path, check=False
        )
        return result.returncode == 0

    def checkout(self, path: Path, revision: str) -> None:
        self._run(["checkout", "--quiet", "--force", "-B", WORK_BRANCH, revision], cwd=path)
        self._run(["clean", "-fdxq"], cwd=path)

    def head(self, path: Path) -> str | None:
        result = self._run(["rev-parse", "--verify", "--quiet", "HEAD"], cwd=path, check=False)
        if result.returncode != 0:
            return None
        return result.stdout.strip() or None

    def is_clean(self, path: Path) -> bool:
        result = self._run(["status", "--porcelain", "--untracked-files=all"], cwd=path)
        return not result.stdout.strip()

    def commit(self, path: Path, message: str) -> str:
        self._run(["add", "--all"], cwd=path)
        self._run(["commit", "--quiet", "--allow-empty", "-m", message], cwd=path)
        revision = self.head(path)
        if revision is None:
            raise VcsError(f"commit in {path} produced no HEAD")
        return revision

    def find_commit(self, path: Path, marker: str) -> str | None:
        result = self._run(
            ["log", "--all", "--format=%H", "--fixed-strings", f"--grep={marker}", "-n", "1"],
            cwd=path,
            check=False,
        )
        return result.stdout.strip() or None

    def message(self, path: Path, revision: str) -> str:
        return self._run(["log", "-1", "--format=%B", revision], cwd=path).stdout

    def tag(self, path: Path, name: str, revision: str) -> None:
        self._run(["tag", "--force", name, revision], cwd=path)
