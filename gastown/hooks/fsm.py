"""Hook lifecycle state machine using the transitions library.

    created -> active <-> suspended -> completed -> archived
                 (any non-terminal) -> errored -> (repair) active

Usage:
    from gastown.hooks.fsm import HookFSM

    fsm = HookFSM(hook)
    fsm.suspend()      # active -> suspended
    fsm.state          # "suspended"

The FSM only validates and logs; HookManager copies fsm.state back onto the
Hook and persists it.
"""

import logging
from typing import Callable

from transitions import Machine

from gastown.lib.types import Hook, HookState

logger = logging.getLogger(__name__)


STATES = [state.value for state in HookState]

# Each trigger becomes a method on the FSM. No auto transitions: anything not
# listed here (archived -> active, completed -> active, ...) is impossible.
TRANSITIONS = [
    {"trigger": "activate", "source": ["created", "suspended"], "dest": "active"},
    {"trigger": "suspend", "source": "active", "dest": "suspended"},
    {"trigger": "complete", "source": "active", "dest": "completed"},
    {"trigger": "archive", "source": ["created", "suspended", "completed", "errored"], "dest": "archived"},
    {"trigger": "fail", "source": ["created", "active", "suspended", "completed"], "dest": "errored"},
    {"trigger": "repair", "source": "errored", "dest": "active"},
]


def _sources(transition: dict) -> list[str]:
    source = transition["source"]
    return source if isinstance(source, list) else [source]


def _index_triggers() -> dict[tuple[str, str], str]:
    """Map (source, dest) to the trigger that performs it. First listed wins."""
    index: dict[tuple[str, str], str] = {}
    for transition in TRANSITIONS:
        for source in _sources(transition):
            index.setdefault((source, transition["dest"]), transition["trigger"])
    return index


TRIGGER_FOR = _index_triggers()


def can_transition(from_state: HookState, to_state: HookState) -> bool:
    return (from_state.value, to_state.value) in TRIGGER_FOR


class HookFSM:
    """Transition validator for a single hook.

    Seeded from hook.state. `on_transition(source, dest, trigger)` fires after
    every successful trigger.
    """

    def __init__(self, hook: Hook, on_transition: Callable[[str, str, str], None] | None = None):
        self.hook_id = hook.id
        self._listener = on_transition
        self.machine = Machine(
            model=self,
            states=STATES,
            transitions=TRANSITIONS,
            initial=hook.state.value,
            auto_transitions=False,
            send_event=True,
            after_state_change="_changed",
        )

    def _changed(self, event) -> None:
        src, dest, name = event.transition.source, event.transition.dest, event.event.name
        logger.info(f"[HOOK] {self.hook_id}: {src} -> {dest} ({name})")
        if self._listener is not None:
            self._listener(src, dest, name)

    def get_available_triggers(self) -> list[str]:
        return self.machine.get_triggers(self.state)

    def can(self, trigger: str) -> bool:
        return trigger in self.get_available_triggers()
