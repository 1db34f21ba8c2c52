"""
Dispatcher: sling records onto hooks.

An Assignment ties one record to one hook. Slinging is idempotent per
record: while the assigned hook is live, re-slinging to the same agent (or
to a suspended hook in the same rig) returns the existing assignment, and
anything else is refused. Slings for one record are serialized, so the first
successful assignment wins.
"""

import logging
from datetime import datetime
from typing import Callable

from gastown.hooks.manager import HookManager
from gastown.lib.errors import AlreadyAssignedError, InvalidTransition
from gastown.lib.locking import KeyedLocks
from gastown.lib.types import Assignment, Hook, HookState
from gastown.state.store import StateStore

logger = logging.getLogger(__name__)


class Dispatcher:
    def __init__(self, store: StateStore, hooks: HookManager, clock: Callable[[], datetime] = datetime.now):
        self.store = store
        self.hooks = hooks
        self._clock = clock
        self._locks = KeyedLocks()

    def get(self, record_id: str) -> Assignment | None:
        return self.store.get(Assignment.KIND, record_id)

    def list_assignments(self) -> list[Assignment]:
        return self.store.list(Assignment.KIND)

    def assignments_for_hook(self, hook_id: str) -> list[Assignment]:
        return [a for a in self.list_assignments() if a.hook_id == hook_id]

    def sling(
        self,
        record_id: str,
        rig_id: str,
        agent_id: str,
        molecule_id: str | None = None,
        step: str | None = None,
    ) -> Assignment:
        """Assign record_id to a hook in rig_id bound to agent_id.

        Raises:
            AlreadyAssignedError: record is live on another agent's hook or another rig
            CapacityExceeded, InfrastructureError: from HookManager.acquire
        """
        with self._locks.hold(f"record:{record_id}"):
            existing = self.get(record_id)
            if existing is not None:
                hook = self.store.get(Hook.KIND, existing.hook_id)
                if hook is not None and hook.state.is_live:
                    return self._reuse(existing, hook, rig_id, agent_id)
                logger.info(f"[SLING] {record_id}: dropping stale assignment to {existing.hook_id}")
                self.store.delete(Assignment.KIND, record_id, revision=existing.revision)

            hook = self.hooks.acquire(rig_id, agent_id)
            assignment = self.store.insert(Assignment(
                record_id=record_id,
                hook_id=hook.id,
                rig_id=rig_id,
                molecule_id=molecule_id,
                step=step,
                assigned_at=self._clock(),
            ))
            logger.info(f"[SLING] {record_id} -> {hook.id} ({agent_id}@{rig_id})")
            return assignment

    def _reuse(self, existing: Assignment, hook: Hook, rig_id: str, agent_id: str) -> Assignment:
        if existing.rig_id == rig_id:
            if hook.state is HookState.ACTIVE and hook.agent_binding == agent_id:
                return existing
            if hook.state is HookState.SUSPENDED:
                try:
                    self.hooks.resume(hook.id, agent_id)
                except InvalidTransition:
                    # Another acquire took the hook first
                    current = self.hooks.get(hook.id)
                    if current.state is not HookState.ACTIVE or current.agent_binding != agent_id:
                        raise AlreadyAssignedError(existing.record_id, existing.hook_id) from None
                    return existing
                logger.info(f"[SLING] {existing.record_id}: resumed {hook.id} for {agent_id}")
                return existing
        raise AlreadyAssignedError(existing.record_id, existing.hook_id)

    def unsling(self, record_id: str) -> Assignment | None:
        """Drop the record's assignment. Hook state is not touched."""
        with self._locks.hold(f"record:{record_id}"):
            existing = self.get(record_id)
            if existing is None:
                return None
            self.store.delete(Assignment.KIND, record_id)
            logger.info(f"[SLING] {record_id}: unslung from {existing.hook_id}")
            return existing
