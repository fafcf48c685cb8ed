"""buildforge: rebuild a patched server artifact for an upstream version.

Given a version tag, buildforge:
  - resolves the version manifest (artifact URLs, digests, patch revision)
  - downloads every artifact concurrently, verifying digests while streaming
  - decompiles the server binary into a vanilla baseline tree
  - applies two ordered patch layers with fuzzy hunk matching
  - hands the final tree to the remap/compile toolchain
  - caches the result keyed by (version, patch content hash)
"""

__version__ = "0.1.0"
__description__ = "Artifact resolution, verification and patch reconstruction pipeline"

from buildforge.core.coordinator import PipelineCoordinator
from buildforge.cli.app import app as cli

__all__ = ["PipelineCoordinator", "cli", "__version__"]
