"""VersionResolver — version tag -> VersionManifest.

Manifest document (JSON)::

    {
      "version": "1.0.0-demo",
      "patch_revision": "3f2c9e1",
      "patch_repository": "https://git.example.org/patches.git",
      "mappings": "mappings.txt",
      "artifacts": [
        {"name": "server.jar", "kind": "server", "url": "https://...",
         "algorithm": "sha256", "digest": "..."},
        {"name": "mappings.txt", "kind": "mappings", "url": "https://...",
         "digests": {"sha1": "...", "md5": "..."}}
      ]
    }
"""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from urllib.parse import quote

import httpx
from pydantic import ValidationError

from buildforge.config import BuildforgeConfig
from buildforge.core.retry import RetryExhausted, with_retry
from buildforge.errors import (
    FetchExhausted,
    ManifestNotFound,
    ManifestParseError,
    ManifestUnavailable,
    NetworkError,
)
from buildforge.models.manifest import VersionManifest

logger = logging.getLogger(__name__)

_SAFE_SEGMENT = re.compile(r"[^A-Za-z0-9._-]")


def is_transient(exc: BaseException) -> bool:
    """Network-level failures worth retrying."""
    return isinstance(exc, (httpx.TransportError, NetworkError))


def is_retryable_status(status_code: int) -> bool:
    return status_code == 429 or status_code >= 500


class VersionResolver:
    """Fetches and parses the manifest for a version tag.

    Parameters
    ----------
    config:
        Supplies the endpoint, retry policy, timeout and download directory.
    client:
        Shared async HTTP client.
    """

    def __init__(self, config: BuildforgeConfig, client: httpx.AsyncClient) -> None:
        self._config = config
        self._client = client
        self._manifests: dict[str, VersionManifest] = {}

    def manifest_url(self, version: str) -> str:
        return f"{self._config.manifest_endpoint.rstrip('/')}/{quote(version, safe='')}.json"

    async def resolve(self, version: str, *, refresh: bool = False) -> VersionManifest:
        """Return the manifest for ``version``, fetching it at most once unless refreshed."""
        if not refresh and version in self._manifests:
            return self._manifests[version]

        url = self.manifest_url(version)
        logger.info("resolving %s from %s", version, url)
        try:
            document = await with_retry(
                lambda: self._fetch(version, url),
                policy=self._config.retry_policy,
                is_transient=is_transient,
                what=f"manifest {version}",
            )
        except RetryExhausted as exc:
            raise FetchExhausted(f"manifest {version}", exc.attempts, exc.last_error) from exc

        manifest = self.parse(version, document)
        self._manifests[version] = manifest
        logger.info(
            "resolved %s: %d artifact(s), patch revision %s",
            version, len(manifest.artifacts), manifest.patch_revision,
        )
        return manifest

    async def _fetch(self, version: str, url: str) -> bytes:
        response = await self._client.get(url, timeout=self._config.request_timeout_seconds)
        if response.status_code in (404, 410):
            raise ManifestNotFound(version, url)
        if is_retryable_status(response.status_code):
            raise NetworkError(f"HTTP {response.status_code} from {url}")
        if response.status_code >= 400:
            raise ManifestUnavailable(version, url, response.status_code)
        return response.content

    def parse(self, version: str, document: bytes) -> VersionManifest:
        """Validate a manifest document and bind local artifact paths."""
        try:
            data = json.loads(document)
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise ManifestParseError(f"manifest for {version!r} is not valid JSON: {exc}") from exc
        if not isinstance(data, dict):
            raise ManifestParseError(f"manifest for {version!r} is not a JSON object")

        data.setdefault("patch_repository", self._config.patch_repository_url)
        try:
            manifest = VersionManifest.model_validate(data)
        except ValidationError as exc:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}"
                for err in exc.errors()
            )
            raise ManifestParseError(f"manifest for {version!r} is invalid: {problems}") from exc

        if manifest.version != version:
            raise ManifestParseError(
                f"requested {version!r} but manifest describes {manifest.version!r}"
            )

        target_dir = self.download_dir_for(version)
        return manifest.model_copy(
            update={
                "artifacts": [a.with_local_path(target_dir / a.name) for a in manifest.artifacts]
            }
        )

    def download_dir_for(self, version: str) -> Path:
        return Path(self._config.download_dir) / _SAFE_SEGMENT.sub("_", version)
