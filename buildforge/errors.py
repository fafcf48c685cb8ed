"""Error taxonomy.

Every error names the pipeline stage that raised it so a failure is
always reported as "<stage>: <reason>", never just "build failed".
"""

from __future__ import annotations

from typing import TYPE_CHECKING, ClassVar

if TYPE_CHECKING:
    from buildforge.models.cache import CacheKey
    from buildforge.models.patches import FileConflict


class BuildforgeError(RuntimeError):
    """Base class for all pipeline errors."""

    stage: ClassVar[str] = "pipeline"
    transient: ClassVar[bool] = False


# ---------------------------------------------------------------------------
# Resolving
# ---------------------------------------------------------------------------


class ManifestNotFound(BuildforgeError):
    """The version tag is unknown upstream."""

    stage = "resolving"

    def __init__(self, version: str, url: str) -> None:
        self.version = version
        self.url = url
        super().__init__(f"no manifest for version {version!r} at {url}")


class ManifestUnavailable(BuildforgeError):
    """The manifest endpoint refused the request (auth, bad request, ...)."""

    stage = "resolving"

    def __init__(self, version: str, url: str, status_code: int) -> None:
        self.version = version
        self.url = url
        self.status_code = status_code
        super().__init__(f"manifest for {version!r}: HTTP {status_code} from {url}")


class ManifestParseError(BuildforgeError):
    """The manifest document is malformed or missing required fields."""

    stage = "resolving"


# ---------------------------------------------------------------------------
# Fetching
# ---------------------------------------------------------------------------


class NetworkError(BuildforgeError):
    """A transient network failure; retried by the caller's policy."""

    stage = "fetching"
    transient = True


class FetchExhausted(BuildforgeError):
    """Transient failures persisted through every retry."""

    stage = "fetching"

    def __init__(self, artifact: str, attempts: int, last_error: BaseException) -> None:
        self.artifact = artifact
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"{artifact}: gave up after {attempts} attempts, last error: {last_error}"
        )


class ArtifactUnavailable(BuildforgeError):
    """The server answered with a status that retrying will not change."""

    stage = "fetching"

    def __init__(self, artifact: str, url: str, status_code: int) -> None:
        self.artifact = artifact
        self.url = url
        self.status_code = status_code
        super().__init__(f"{artifact}: HTTP {status_code} from {url}")


class DigestMismatch(BuildforgeError):
    """Downloaded bytes do not match the manifest's expected digest."""

    stage = "fetching"

    def __init__(self, artifact: str, algorithm: str, expected: str, actual: str) -> None:
        self.artifact = artifact
        self.algorithm = algorithm
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"{artifact}: {algorithm} mismatch, expected {expected}, got {actual}"
        )


# ---------------------------------------------------------------------------
# Trees and patches
# ---------------------------------------------------------------------------


class TreeCorrupted(BuildforgeError):
    """A working tree disagrees with its expected revision pointer."""

    stage = "patching"


class VcsError(BuildforgeError):
    """The version-control collaborator rejected a command."""

    stage = "patching"


class PatchParseError(BuildforgeError):
    """A patch file is not valid unified-diff text."""

    stage = "patching"


class PatchConflict(BuildforgeError):
    """One or more PatchFiles of a PatchSet could not be applied."""

    stage = "patching"

    def __init__(self, patch_set: str, conflicts: list[FileConflict]) -> None:
        self.patch_set = patch_set
        self.conflicts = conflicts
        files = ", ".join(c.path for c in conflicts)
        super().__init__(f"{patch_set}: {len(conflicts)} file(s) rejected: {files}")

    def report(self) -> str:
        """Human-readable detail for regenerating the failing patches."""
        blocks = [str(self)]
        for conflict in self.conflicts:
            if conflict.reason:
                blocks.append(f"{conflict.path}: {conflict.reason}")
            blocks.extend(failure.describe() for failure in conflict.failures)
        return "\n".join(blocks)


# ---------------------------------------------------------------------------
# Compiling
# ---------------------------------------------------------------------------


class CommandError(BuildforgeError):
    """An external command could not be started."""

    stage = "compiling"


class CompileFailed(BuildforgeError):
    """The remap/compile toolchain exited non-zero; diagnostics are verbatim."""

    stage = "compiling"

    def __init__(self, diagnostics: str, exit_code: int | None = None) -> None:
        self.diagnostics = diagnostics
        self.exit_code = exit_code
        head = f"toolchain exited with code {exit_code}" if exit_code is not None else "toolchain failed"
        super().__init__(head)


# ---------------------------------------------------------------------------
# Caching
# ---------------------------------------------------------------------------


class CacheCorruption(BuildforgeError):
    """A published cache entry failed its self-check."""

    stage = "caching"

    def __init__(self, key: CacheKey, detail: str) -> None:
        self.key = key
        self.detail = detail
        super().__init__(f"cache entry {key} is corrupt: {detail}")


class ReservationLost(BuildforgeError):
    """The caller no longer holds the reservation it is trying to publish under."""

    stage = "caching"


# ---------------------------------------------------------------------------
# Coordinator
# ---------------------------------------------------------------------------


class InvalidTransitionError(BuildforgeError):
    """A requested pipeline state transition is not allowed."""


class PipelineFailed(BuildforgeError):
    """Terminal failure, carrying the originating error and its stage."""

    def __init__(self, state: str, cause: BaseException) -> None:
        self.state = state
        self.cause = cause
        super().__init__(f"{state}: {cause}")
