"""Stage state machine models: a strict linear pipeline of build stages."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class StageState(str, Enum):
    """Strict state model for each pipeline stage."""

    NOT_STARTED = "not_started"
    RUNNING = "running"
    BLOCKED = "blocked"
    FAILED = "failed"
    PASSED = "passed"


# Valid state transitions, enforced by StageMachine.
# A run never resumes, so PASSED, FAILED and BLOCKED are all terminal.
VALID_TRANSITIONS: dict[StageState, set[StageState]] = {
    StageState.NOT_STARTED: {StageState.RUNNING, StageState.BLOCKED},
    StageState.RUNNING: {StageState.PASSED, StageState.FAILED},
    StageState.BLOCKED: set(),
    StageState.FAILED: set(),
    StageState.PASSED: set(),
}


class StageDefinition(BaseModel):
    """A pipeline stage and the single stage that must pass before it."""

    model_config = ConfigDict(frozen=True)

    stage_id: str
    display_name: str
    ordinal: int
    predecessor: str | None = None
    in_root: bool = False  # runs operations against the build root


class StageTransition(BaseModel):
    """Records a single state transition."""

    model_config = ConfigDict(frozen=True)

    stage_id: str
    from_state: StageState
    to_state: StageState
    reason: str | None = None
    upstream_ref: str | None = None  # stage that caused a block
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class StageOutcome(BaseModel):
    """Per-stage record kept by the pipeline."""

    model_config = ConfigDict(frozen=True)

    stage_id: str
    display_name: str
    state: StageState
    duration_seconds: float = 0.0
    input_hash: str = ""
    output_hash: str = ""
    summary: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None


def _linear(stages: list[tuple[str, str, bool]]) -> list[StageDefinition]:
    definitions: list[StageDefinition] = []
    previous: str | None = None
    for ordinal, (stage_id, display_name, in_root) in enumerate(stages):
        definitions.append(
            StageDefinition(
                stage_id=stage_id,
                display_name=display_name,
                ordinal=ordinal,
                predecessor=previous,
                in_root=in_root,
            )
        )
        previous = stage_id
    return definitions


# The fixed build order.  Every stage depends on the one before it.
DEFAULT_STAGE_DEFINITIONS: list[StageDefinition] = _linear(
    [
        ("load_config", "Load Configuration", False),
        ("check_environment", "Check Environment", False),
        ("prepare_build_root", "Prepare Build Root", False),
        ("fetch_base_image", "Fetch Base Image", False),
        ("extract_base_image", "Extract Base Image", False),
        ("optimize_system", "Optimize System", True),
        ("install_runtime", "Install Runtime", True),
        ("configure_runtime_service", "Configure Runtime Service", True),
        ("apply_hardening", "Apply Hardening", True),
        ("final_cleanup", "Final Cleanup", True),
        ("verify_build", "Verify Build", False),
    ]
)
