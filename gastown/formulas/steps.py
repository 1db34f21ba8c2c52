"""Step state machine for molecules.

Steps only move forward:

    pending -> ready -> running -> done | failed | skipped
    pending | ready -> skipped

The only way back is an explicit retry, which re-enters ready (the retried
step) or pending (its skipped dependents).
"""

from enum import Enum

from gastown.lib.errors import InvalidTransition


class StepState(Enum):
    PENDING = "pending"
    READY = "ready"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STEP_STATES


TERMINAL_STEP_STATES = frozenset({StepState.DONE, StepState.FAILED, StepState.SKIPPED})

STEP_TRANSITIONS: dict[StepState, frozenset[StepState]] = {
    StepState.PENDING: frozenset({StepState.READY, StepState.SKIPPED}),
    StepState.READY: frozenset({StepState.RUNNING, StepState.SKIPPED}),
    StepState.RUNNING: frozenset({StepState.DONE, StepState.FAILED, StepState.SKIPPED}),
    StepState.DONE: frozenset(),
    StepState.FAILED: frozenset(),
    StepState.SKIPPED: frozenset(),
}

# Only reachable through retry_step
RETRY_TRANSITIONS: dict[StepState, frozenset[StepState]] = {
    StepState.FAILED: frozenset({StepState.READY}),
    StepState.SKIPPED: frozenset({StepState.READY, StepState.PENDING}),
}


def can_transition(from_state: StepState, to_state: StepState, retry: bool = False) -> bool:
    """Check if a step may move from from_state to to_state."""
    if to_state in STEP_TRANSITIONS[from_state]:
        return True
    return retry and to_state in RETRY_TRANSITIONS.get(from_state, frozenset())


def check_transition(
    step: str,
    from_state: StepState,
    to_state: StepState,
    molecule_id: str = "",
    retry: bool = False,
) -> None:
    """Raise InvalidTransition unless the step move is allowed."""
    if not can_transition(from_state, to_state, retry=retry):
        entity = f"{molecule_id}/{step}" if molecule_id else step
        raise InvalidTransition(from_state.value, f"move to {to_state.value}", entity)
