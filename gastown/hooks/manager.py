"""Hook lifecycle management.

HookManager owns every hook state change. Each change goes through the FSM in
fsm.py under a per-hook lock, then is written to the StateStore with a
revision check, so a hook is never moved by two callers at once.

Usage:
    from gastown.hooks.manager import HookManager

    hooks = HookManager(store, worktrees, max_hooks_per_rig=8)
    hook = hooks.acquire("rig-x", "polecat-1")   # reuse or create
    hooks.release(hook.id)                        # active -> suspended
"""

import logging
import secrets
from datetime import datetime
from typing import Callable

from transitions import MachineError

from gastown.adapters.protocols import WorktreeAdapter, WorktreeHealth
from gastown.hooks.fsm import HookFSM
from gastown.lib.constants import DEFAULT_MAX_HOOKS_PER_RIG, ID_PATTERN, MAX_ID_LEN
from gastown.lib.errors import (
    CapacityExceeded,
    ConflictError,
    InfrastructureError,
    InvalidTransition,
    ValidationError,
)
from gastown.lib.locking import KeyedLocks
from gastown.lib.types import Hook, HookState, Rig
from gastown.state.store import StateStore

logger = logging.getLogger(__name__)


def new_hook_id() -> str:
    return f"hook-{secrets.token_hex(4)}"


class HookManager:
    def __init__(
        self,
        store: StateStore,
        worktrees: WorktreeAdapter,
        max_hooks_per_rig: int = DEFAULT_MAX_HOOKS_PER_RIG,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.store = store
        self.worktrees = worktrees
        self.max_hooks_per_rig = max_hooks_per_rig
        self._clock = clock
        self._locks = KeyedLocks()

    # === Rigs ===

    def add_rig(self, rig_id: str, repository_ref: str) -> Rig:
        """Register a rig. Rig ids share the id rules used for hooks and convoys."""
        if not ID_PATTERN.match(rig_id) or len(rig_id) > MAX_ID_LEN:
            raise ValidationError(f"Invalid rig id '{rig_id}'")
        try:
            rig = self.store.insert(Rig(id=rig_id, repository_ref=repository_ref, created_at=self._clock()))
        except ConflictError:
            raise ValidationError(f"Rig '{rig_id}' already exists") from None
        logger.info(f"[RIG] {rig_id}: added ({repository_ref})")
        return rig

    def get_rig(self, rig_id: str) -> Rig:
        return self.store.require(Rig.KIND, rig_id)

    def list_rigs(self) -> list[Rig]:
        return self.store.list(Rig.KIND)

    # === Queries ===

    def get(self, hook_id: str) -> Hook:
        return self.store.require(Hook.KIND, hook_id)

    def list_hooks(self, rig_id: str | None = None, states: set[HookState] | None = None) -> list[Hook]:
        """Hooks ordered oldest first, optionally filtered by rig and state."""
        hooks = self.store.list(Hook.KIND)
        if rig_id is not None:
            hooks = [h for h in hooks if h.rig_id == rig_id]
        if states is not None:
            hooks = [h for h in hooks if h.state in states]
        return hooks

    # === Lifecycle ===

    def acquire(self, rig_id: str, agent_id: str) -> Hook:
        """Return an Active hook bound to agent_id in rig_id.

        Order of preference: the agent's existing Active hook, the oldest
        Suspended hook, a freshly created one.

        Raises:
            NotFoundError: rig does not exist
            CapacityExceeded: rig already holds max_hooks_per_rig non-archived hooks
            InfrastructureError: worktree creation failed (hook is left Errored)
        """
        with self._locks.hold(f"rig:{rig_id}"):
            rig = self.get_rig(rig_id)
            hooks = self.list_hooks(rig_id=rig_id)

            for hook in hooks:
                if hook.state is HookState.ACTIVE and hook.agent_binding == agent_id:
                    return hook

            for hook in hooks:
                if hook.state is not HookState.SUSPENDED:
                    continue
                try:
                    return self.resume(hook.id, agent_id)
                except InvalidTransition:
                    # Archived or errored since the list was read
                    continue

            live = [h for h in hooks if h.state is not HookState.ARCHIVED]
            if len(live) >= self.max_hooks_per_rig:
                raise CapacityExceeded(rig_id, self.max_hooks_per_rig)

            return self._create(rig, agent_id)

    def _create(self, rig: Rig, agent_id: str) -> Hook:
        now = self._clock()
        hook = self.store.insert(Hook(id=new_hook_id(), rig_id=rig.id, created_at=now, updated_at=now))
        rig.hooks.add(hook.id)
        self.store.update(rig)
        logger.info(f"[HOOK] {hook.id}: created in rig {rig.id}")

        try:
            ref = self.worktrees.create(rig.id)
        except (InfrastructureError, OSError) as e:
            self._transition(hook.id, "fail", last_error=f"worktree create failed: {e}")
            raise InfrastructureError(f"Hook {hook.id}: worktree create failed: {e}") from e

        return self._transition(hook.id, "activate", worktree_ref=ref, agent_binding=agent_id)

    def resume(self, hook_id: str, agent_id: str) -> Hook:
        """Rebind a Suspended hook to agent_id.

        Holds the rig lock, so it cannot interleave with acquire() handing the
        same hook to another agent.
        """
        rig_id = self.get(hook_id).rig_id
        with self._locks.hold(f"rig:{rig_id}"), self._locks.hold(f"hook:{hook_id}"):
            hook = self.get(hook_id)
            if hook.state is not HookState.SUSPENDED:
                raise InvalidTransition(hook.state.value, "resume", hook_id)
            return self._transition(hook_id, "activate", agent_binding=agent_id)

    def release(self, hook_id: str) -> Hook:
        """Active -> Suspended, dropping the agent binding. No-op when already Suspended."""
        with self._locks.hold(f"hook:{hook_id}"):
            hook = self.get(hook_id)
            if hook.state is HookState.SUSPENDED:
                return hook
            return self._transition(hook_id, "suspend", agent_binding=None)

    def complete(self, hook_id: str) -> Hook:
        return self._transition(hook_id, "complete", agent_binding=None)

    def archive(self, hook_id: str) -> Hook:
        """Archive a non-Active hook and remove its worktree."""
        hook = self._transition(hook_id, "archive", agent_binding=None)
        if hook.worktree_ref:
            try:
                self.worktrees.remove(hook.worktree_ref)
            except (InfrastructureError, OSError) as e:
                logger.warning(f"[HOOK] {hook_id}: archived but worktree removal failed: {e}")
        return hook

    def mark_errored(self, hook_id: str, reason: str) -> Hook:
        with self._locks.hold(f"hook:{hook_id}"):
            hook = self.get(hook_id)
            if hook.state is HookState.ERRORED:
                return hook
            logger.warning(f"[HOOK] {hook_id}: {reason}")
            return self._transition(hook_id, "fail", last_error=reason)

    def check_health(self, hook_id: str) -> WorktreeHealth:
        """Inspect the hook's worktree. Unhealthy live hooks become Errored."""
        hook = self.get(hook_id)
        if not hook.worktree_ref:
            health = WorktreeHealth.MISSING
        else:
            try:
                health = self.worktrees.inspect(hook.worktree_ref)
            except (InfrastructureError, OSError) as e:
                logger.warning(f"[HOOK] {hook_id}: inspect failed: {e}")
                health = WorktreeHealth.UNREADABLE

        if not health.ok and hook.state in (HookState.ACTIVE, HookState.SUSPENDED, HookState.COMPLETED):
            self.mark_errored(hook_id, f"worktree {health.value}")
        return health

    def repair(self, hook_id: str) -> bool:
        """Try to bring an Errored hook back to Active. False leaves it Errored."""
        with self._locks.hold(f"hook:{hook_id}"):
            hook = self.get(hook_id)
            if hook.state is not HookState.ERRORED:
                raise InvalidTransition(hook.state.value, "repair", hook_id)

            ref = hook.worktree_ref
            error = None
            try:
                if ref:
                    repaired = self.worktrees.repair(ref)
                else:
                    ref = self.worktrees.create(hook.rig_id)
                    repaired = True
            except (InfrastructureError, OSError) as e:
                repaired = False
                error = str(e)

            if not repaired:
                hook.last_error = f"repair failed: {error}" if error else "repair failed"
                hook.updated_at = self._clock()
                self.store.update(hook)
                logger.warning(f"[HOOK] {hook_id}: {hook.last_error}")
                return False

            self._transition(hook_id, "repair", worktree_ref=ref, last_error=None)
            return True

    def _transition(self, hook_id: str, trigger: str, **changes) -> Hook:
        """Fire trigger on the hook's FSM, apply changes, persist.

        Raises:
            InvalidTransition: trigger not allowed from the current state
            ConflictError: hook was written outside this manager meanwhile
        """
        with self._locks.hold(f"hook:{hook_id}"):
            hook = self.get(hook_id)
            fsm = HookFSM(hook)
            if not fsm.can(trigger):
                raise InvalidTransition(hook.state.value, trigger, hook_id)
            try:
                getattr(fsm, trigger)()
            except MachineError as e:
                raise InvalidTransition(hook.state.value, trigger, hook_id) from e

            hook.state = HookState(fsm.state)
            for key, value in changes.items():
                setattr(hook, key, value)
            hook.updated_at = self._clock()
            return self.store.update(hook)
