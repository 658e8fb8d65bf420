"""Deterministic stage state machine for a linear build pipeline.

Enforces:
- Valid state transitions only (VALID_TRANSITIONS table)
- A stage may only start once its predecessor has PASSED
- Cascade blocking of every later stage when one fails
- An in-memory transition history for the build report
"""

from __future__ import annotations

from lxcforge.models.stages import (
    VALID_TRANSITIONS,
    StageDefinition,
    StageState,
    StageTransition,
)


class InvalidTransitionError(RuntimeError):
    """Raised when a requested state transition is not valid."""


class PredecessorNotPassedError(RuntimeError):
    """Raised when a stage is started before its predecessor passed."""


class StageMachine:
    """Tracks the state of every stage in one build.

    Parameters
    ----------
    definitions:
        The ordered stage definitions.
    """

    def __init__(self, definitions: list[StageDefinition]) -> None:
        self._definitions = sorted(definitions, key=lambda d: d.ordinal)
        self._by_id = {d.stage_id: d for d in self._definitions}
        self._states: dict[str, StageState] = {}
        self._history: list[StageTransition] = []
        self.reset()

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def stage_ids(self) -> list[str]:
        return [d.stage_id for d in self._definitions]

    @property
    def history(self) -> list[StageTransition]:
        return list(self._history)

    def reset(self) -> dict[str, StageState]:
        """Put every stage back to NOT_STARTED and clear the history."""
        self._states = {d.stage_id: StageState.NOT_STARTED for d in self._definitions}
        self._history = []
        return dict(self._states)

    def definition(self, stage_id: str) -> StageDefinition:
        try:
            return self._by_id[stage_id]
        except KeyError:
            raise KeyError(
                f"Unknown stage_id {stage_id!r}. Known stages: {self.stage_ids}"
            ) from None

    def get_state(self, stage_id: str) -> StageState:
        self.definition(stage_id)
        return self._states[stage_id]

    def get_all_states(self) -> dict[str, StageState]:
        return dict(self._states)

    def progress(self) -> tuple[int, int]:
        """(finished stages, total stages)."""
        done = sum(1 for s in self._states.values() if s == StageState.PASSED)
        return done, len(self._definitions)

    def position(self, stage_id: str) -> tuple[int, int]:
        """1-based (index, total) of *stage_id* in the pipeline order."""
        return self.stage_ids.index(stage_id) + 1, len(self._definitions)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def can_start(self, stage_id: str) -> tuple[bool, list[str]]:
        """Check whether *stage_id* can enter RUNNING.

        Returns (can_start, blocking_reasons).
        """
        current = self.get_state(stage_id)
        if current != StageState.NOT_STARTED:
            return False, [f"Stage is currently {current.value}, not not_started"]
        predecessor = self.definition(stage_id).predecessor
        if predecessor is not None:
            pred_state = self._states[predecessor]
            if pred_state != StageState.PASSED:
                return False, [f"{predecessor} is {pred_state.value}"]
        return True, []

    def transition(
        self,
        stage_id: str,
        target_state: StageState,
        *,
        reason: str | None = None,
    ) -> StageTransition:
        """Move *stage_id* to *target_state*, cascading blocks on failure."""
        current = self.get_state(stage_id)
        allowed = VALID_TRANSITIONS.get(current, set())
        if target_state not in allowed:
            raise InvalidTransitionError(
                f"Cannot transition {stage_id} from {current.value} to {target_state.value}. "
                f"Allowed: {sorted(s.value for s in allowed)}"
            )

        if target_state == StageState.RUNNING:
            ok, reasons = self.can_start(stage_id)
            if not ok:
                raise PredecessorNotPassedError(
                    f"Cannot start {stage_id}: {'; '.join(reasons)}"
                )

        record = StageTransition(
            stage_id=stage_id,
            from_state=current,
            to_state=target_state,
            reason=reason,
        )
        self._states[stage_id] = target_state
        self._history.append(record)

        if target_state == StageState.FAILED:
            self._cascade_block(stage_id)
        return record

    def block_remaining(self, upstream: str, reason: str) -> list[str]:
        """Block every stage that has not started yet (used on interruption)."""
        blocked: list[str] = []
        for sid in self.stage_ids:
            if self._states[sid] == StageState.NOT_STARTED:
                self._block(sid, upstream, reason)
                blocked.append(sid)
        return blocked

    def _cascade_block(self, failed_id: str) -> list[str]:
        index = self.stage_ids.index(failed_id)
        blocked: list[str] = []
        for sid in self.stage_ids[index + 1:]:
            if self._states[sid] == StageState.NOT_STARTED:
                self._block(sid, failed_id, f"upstream stage {failed_id} failed")
                blocked.append(sid)
        return blocked

    def _block(self, stage_id: str, upstream: str, reason: str) -> None:
        self._history.append(
            StageTransition(
                stage_id=stage_id,
                from_state=StageState.NOT_STARTED,
                to_state=StageState.BLOCKED,
                reason=reason,
                upstream_ref=upstream,
            )
        )
        self._states[stage_id] = StageState.BLOCKED
