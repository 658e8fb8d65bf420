"""Tests for the StageMachine: state transitions, predecessor enforcement, cascades."""

from __future__ import annotations

import pytest

from lxcforge.core.stage_machine import (
    InvalidTransitionError,
    PredecessorNotPassedError,
    StageMachine,
)
from lxcforge.models.stages import DEFAULT_STAGE_DEFINITIONS, StageState


@pytest.fixture
def stage_machine() -> StageMachine:
    return StageMachine(DEFAULT_STAGE_DEFINITIONS)


def _pass(machine: StageMachine, stage_id: str) -> None:
    machine.transition(stage_id, StageState.RUNNING)
    machine.transition(stage_id, StageState.PASSED)


class TestStageMachine:
    def test_initial_states(self, stage_machine: StageMachine):
        states = stage_machine.get_all_states()
        assert all(s == StageState.NOT_STARTED for s in states.values())
        assert len(states) == 11
        assert stage_machine.stage_ids[0] == "load_config"
        assert stage_machine.stage_ids[-1] == "verify_build"

    def test_transition_to_running(self, stage_machine: StageMachine):
        record = stage_machine.transition("load_config", StageState.RUNNING)
        assert record.from_state == StageState.NOT_STARTED
        assert record.to_state == StageState.RUNNING
        assert stage_machine.get_state("load_config") == StageState.RUNNING

    def test_invalid_transition_rejected(self, stage_machine: StageMachine):
        with pytest.raises(InvalidTransitionError):
            # NOT_STARTED cannot jump straight to PASSED
            stage_machine.transition("load_config", StageState.PASSED)

    def test_terminal_states_are_final(self, stage_machine: StageMachine):
        stage_machine.transition("load_config", StageState.RUNNING)
        stage_machine.transition("load_config", StageState.FAILED)
        with pytest.raises(InvalidTransitionError):
            stage_machine.transition("load_config", StageState.NOT_STARTED)

    def test_predecessor_enforced(self, stage_machine: StageMachine):
        with pytest.raises(PredecessorNotPassedError, match="load_config"):
            stage_machine.transition("check_environment", StageState.RUNNING)

    def test_predecessor_met_after_pass(self, stage_machine: StageMachine):
        _pass(stage_machine, "load_config")
        record = stage_machine.transition("check_environment", StageState.RUNNING)
        assert record.to_state == StageState.RUNNING

    def test_can_start(self, stage_machine: StageMachine):
        assert stage_machine.can_start("load_config") == (True, [])
        ok, reasons = stage_machine.can_start("check_environment")
        assert ok is False
        assert reasons == ["load_config is not_started"]

    def test_cascade_block_on_failure(self, stage_machine: StageMachine):
        _pass(stage_machine, "load_config")
        stage_machine.transition("check_environment", StageState.RUNNING)
        stage_machine.transition("check_environment", StageState.FAILED)

        states = stage_machine.get_all_states()
        assert states["load_config"] == StageState.PASSED
        later = stage_machine.stage_ids[2:]
        assert all(states[sid] == StageState.BLOCKED for sid in later)
        blocks = [t for t in stage_machine.history if t.to_state == StageState.BLOCKED]
        assert {t.upstream_ref for t in blocks} == {"check_environment"}

    def test_block_remaining(self, stage_machine: StageMachine):
        _pass(stage_machine, "load_config")
        stage_machine.transition("check_environment", StageState.RUNNING)
        blocked = stage_machine.block_remaining("check_environment", "interrupted")
        assert "check_environment" not in blocked
        assert len(blocked) == 9
        assert stage_machine.get_state("check_environment") == StageState.RUNNING

    def test_progress_and_position(self, stage_machine: StageMachine):
        _pass(stage_machine, "load_config")
        _pass(stage_machine, "check_environment")
        assert stage_machine.progress() == (2, 11)
        assert stage_machine.position("fetch_base_image") == (4, 11)

    def test_history_and_reset(self, stage_machine: StageMachine):
        _pass(stage_machine, "load_config")
        assert len(stage_machine.history) == 2
        states = stage_machine.reset()
        assert stage_machine.history == []
        assert states["load_config"] == StageState.NOT_STARTED

    def test_unknown_stage(self, stage_machine: StageMachine):
        with pytest.raises(KeyError, match="Unknown stage_id"):
            stage_machine.get_state("s99_nope")
