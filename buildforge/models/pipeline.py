"""Pipeline state machine models and the per-run context."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class PipelineState(str, Enum):
    """Strictly forward pipeline states; FAILED is reachable from any of them."""

    PENDING = "pending"
    RESOLVING = "resolving"
    FETCHING = "fetching"
    PATCHING = "patching"
    COMPILING = "compiling"
    CACHING = "caching"
    DONE = "done"
    FAILED = "failed"


# DONE is reachable early on a cache hit, before or after resolving.
VALID_TRANSITIONS: dict[PipelineState, set[PipelineState]] = {
    PipelineState.PENDING: {PipelineState.RESOLVING, PipelineState.DONE, PipelineState.FAILED},
    PipelineState.RESOLVING: {PipelineState.FETCHING, PipelineState.DONE, PipelineState.FAILED},
    PipelineState.FETCHING: {PipelineState.PATCHING, PipelineState.FAILED},
    PipelineState.PATCHING: {PipelineState.PATCHING, PipelineState.COMPILING, PipelineState.FAILED},
    PipelineState.COMPILING: {PipelineState.CACHING, PipelineState.FAILED},
    PipelineState.CACHING: {PipelineState.DONE, PipelineState.FAILED},
    PipelineState.DONE: set(),  # terminal
    PipelineState.FAILED: set(),  # terminal
}


class StageTransition(BaseModel):
    """Records a single state transition for the run history."""

    model_config = ConfigDict(frozen=True)

    from_state: PipelineState
    to_state: PipelineState
    detail: str = ""
    at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class BuildContext(BaseModel):
    """Explicit per-run context threaded through every component call."""

    model_config = ConfigDict(frozen=True)

    version: str
    run_id: str = Field(default_factory=lambda: f"bf-{uuid.uuid4().hex[:12]}")
    refresh: bool = False


class PipelineResult(BaseModel):
    """What a finished run hands back to its caller."""

    model_config = ConfigDict(frozen=True)

    run_id: str
    version: str
    patch_hash: str
    artifacts: list[str]
    cache_hit: bool
    transitions: list[StageTransition]
