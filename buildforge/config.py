"""Runtime configuration — env-driven via pydantic-settings.

Reads from a .env file and BUILDFORGE_* environment variables. The config
object is passed explicitly into every component; the module-level
``config`` exists for the CLI entry point only.

Examples
--------
Override via environment::

    export BUILDFORGE_MANIFEST_ENDPOINT=https://mirror.example.org/versions
    export BUILDFORGE_FUZZ_TOLERANCE=5
    export BUILDFORGE_DOWNLOAD_CONCURRENCY=2
"""

from __future__ import annotations

from enum import Enum
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from buildforge.core.retry import RetryPolicy


class FuzzStrategy(str, Enum):
    """Order in which candidate offsets are tried when a hunk has drifted."""

    NEAREST_FORWARD = "nearest_forward"  # 0, +1, -1, +2, -2, ...
    NEAREST_BACKWARD = "nearest_backward"  # 0, -1, +1, -2, +2, ...
    FORWARD_FIRST = "forward_first"  # 0, +1, +2, ..., -1, -2, ...


class BuildforgeConfig(BaseSettings):
    """All recognized options with their defaults."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="BUILDFORGE_",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Resolving
    manifest_endpoint: str = "https://hub.example.org/versions"
    patch_repository_url: str = ""

    # Network
    download_concurrency: int = Field(default=4, ge=1)
    retry_attempts: int = Field(default=4, ge=1)
    backoff_base_seconds: float = Field(default=0.5, ge=0)
    backoff_factor: float = Field(default=2.0, ge=1)
    backoff_max_seconds: float = Field(default=30.0, ge=0)
    request_timeout_seconds: float = Field(default=30.0, gt=0)
    refetch_on_digest_mismatch: bool = True

    # Patching
    fuzz_tolerance: int = Field(default=3, ge=0)
    fuzz_strategy: FuzzStrategy = FuzzStrategy.NEAREST_FORWARD

    # Storage
    cache_dir: Path = Path(".buildforge/cache")
    work_dir: Path = Path(".buildforge/work")
    download_dir: Path = Path(".buildforge/downloads")
    reservation_poll_seconds: float = Field(default=0.5, gt=0)
    reservation_stale_seconds: float = Field(default=3600.0, gt=0)

    # External tools
    decompiler_command: str = "java -jar decompiler.jar {input} {output}"
    compiler_command: str = (
        "java -jar remapper.jar --sources {sources} --classpath {classpath} "
        "--mappings {mappings} --output {output}"
    )

    # Observability
    log_level: str = "INFO"

    @property
    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            attempts=self.retry_attempts,
            base_delay_s=self.backoff_base_seconds,
            backoff_factor=self.backoff_factor,
            max_delay_s=self.backoff_max_seconds,
        )


# Module-level singleton, import as `from buildforge.config import config`
config = BuildforgeConfig()
