"""Tests for gastown.hooks.fsm module."""

import pytest
from transitions import MachineError

from gastown.hooks.fsm import (
    HookFSM,
    STATES,
    TRANSITIONS,
    TRIGGER_FOR,
    can_transition,
)
from gastown.lib.types import Hook, HookState


def hook_in(state: HookState) -> Hook:
    return Hook(id="hook-1", rig_id="rig-x", state=state)


class TestFSMStates:
    """Tests for FSM state definitions."""

    def test_all_states_defined(self):
        assert set(STATES) == {s.value for s in HookState}

    def test_trigger_lookup(self):
        assert TRIGGER_FOR[("created", "active")] == "activate"
        assert TRIGGER_FOR[("suspended", "active")] == "activate"
        assert TRIGGER_FOR[("errored", "active")] == "repair"
        assert TRIGGER_FOR[("completed", "archived")] == "archive"

    def test_every_transition_targets_known_state(self):
        for t in TRANSITIONS:
            assert t["dest"] in STATES


class TestTerminalStates:
    """Archived and Completed never return to Active."""

    @pytest.mark.parametrize("state", [HookState.ARCHIVED, HookState.COMPLETED])
    def test_no_path_back_to_active(self, state):
        assert not can_transition(state, HookState.ACTIVE)

    def test_archived_has_no_triggers(self):
        fsm = HookFSM(hook_in(HookState.ARCHIVED))
        assert fsm.get_available_triggers() == []

    def test_active_cannot_be_archived(self):
        fsm = HookFSM(hook_in(HookState.ACTIVE))
        assert not fsm.can("archive")


class TestHookFSM:
    """Basic FSM functionality tests."""

    def test_initial_state_from_hook(self):
        fsm = HookFSM(hook_in(HookState.SUSPENDED))
        assert fsm.state == "suspended"

    def test_activate_then_suspend(self):
        fsm = HookFSM(hook_in(HookState.CREATED))
        fsm.activate()
        assert fsm.state == "active"
        fsm.suspend()
        assert fsm.state == "suspended"

    def test_invalid_trigger_raises(self):
        fsm = HookFSM(hook_in(HookState.CREATED))
        with pytest.raises(MachineError):
            fsm.complete()
        assert fsm.state == "created"

    def test_no_auto_transitions(self):
        fsm = HookFSM(hook_in(HookState.ACTIVE))
        assert not hasattr(fsm, "to_archived")

    def test_callback_receives_transition(self):
        seen = []
        fsm = HookFSM(hook_in(HookState.ERRORED), on_transition=lambda *args: seen.append(args))
        fsm.repair()
        assert seen == [("errored", "active", "repair")]

    def test_fail_from_any_live_state(self):
        for state in (HookState.CREATED, HookState.ACTIVE, HookState.SUSPENDED, HookState.COMPLETED):
            fsm = HookFSM(hook_in(state))
            fsm.fail()
            assert fsm.state == "errored"
