"""Tests for gastown.hooks.manager module."""

import threading
from unittest.mock import patch

import pytest

from gastown.adapters.protocols import WorktreeHealth
from gastown.hooks.manager import HookManager
from gastown.lib.errors import (
    CapacityExceeded,
    InfrastructureError,
    InvalidTransition,
    NotFoundError,
    ValidationError,
)
from gastown.lib.types import HookState


class TestRigs:
    """Tests for rig registration."""

    def test_add_and_get(self, hooks):
        rig = hooks.get_rig("rig-x")
        assert rig.repository_ref == "/repos/x"
        assert rig.revision == 1

    def test_duplicate_rig_rejected(self, hooks):
        with pytest.raises(ValidationError):
            hooks.add_rig("rig-x", "/elsewhere")

    def test_invalid_rig_id_rejected(self, hooks):
        with pytest.raises(ValidationError):
            hooks.add_rig("Bad Rig", "/repos/bad")

    def test_acquire_unknown_rig(self, hooks):
        with pytest.raises(NotFoundError):
            hooks.acquire("nowhere", "polecat-1")


class TestAcquire:
    """Tests for acquire()."""

    def test_creates_active_hook(self, hooks, worktrees):
        hook = hooks.acquire("rig-x", "polecat-1")
        assert hook.state is HookState.ACTIVE
        assert hook.agent_binding == "polecat-1"
        assert hook.worktree_ref in worktrees.worktrees
        assert hook.id in hooks.get_rig("rig-x").hooks

    def test_same_agent_gets_same_hook(self, hooks, worktrees):
        first = hooks.acquire("rig-x", "polecat-1")
        second = hooks.acquire("rig-x", "polecat-1")
        assert first.id == second.id
        assert worktrees.create_calls == 1

    def test_reuses_oldest_suspended_hook(self, hooks, worktrees):
        a = hooks.acquire("rig-x", "polecat-1")
        b = hooks.acquire("rig-x", "polecat-2")
        hooks.release(a.id)
        hooks.release(b.id)

        hook = hooks.acquire("rig-x", "polecat-3")
        assert hook.id == a.id
        assert hook.agent_binding == "polecat-3"
        assert worktrees.create_calls == 2

    def test_capacity_exceeded(self, hooks):
        for i in range(3):
            hooks.acquire("rig-x", f"polecat-{i}")
        with pytest.raises(CapacityExceeded) as exc:
            hooks.acquire("rig-x", "polecat-9")
        assert exc.value.limit == 3

    def test_archived_hooks_do_not_count(self, hooks, worktrees):
        created = [hooks.acquire("rig-x", f"polecat-{i}") for i in range(3)]
        hooks.release(created[0].id)
        hooks.archive(created[0].id)

        hook = hooks.acquire("rig-x", "polecat-9")
        assert hook.id not in {h.id for h in created}
        assert worktrees.create_calls == 4

    def test_worktree_failure_leaves_errored_hook(self, hooks, worktrees):
        worktrees.fail_create = True
        with pytest.raises(InfrastructureError):
            hooks.acquire("rig-x", "polecat-1")

        [hook] = hooks.list_hooks(rig_id="rig-x")
        assert hook.state is HookState.ERRORED
        assert "worktree create failed" in hook.last_error


class TestConcurrentAcquire:
    """acquire() under thread contention."""

    def _race(self, hooks, agents):
        barrier = threading.Barrier(len(agents))
        results, errors = [], []

        def worker(agent):
            barrier.wait()
            try:
                results.append(hooks.acquire("rig-x", agent))
            except CapacityExceeded as e:
                errors.append(e)

        threads = [threading.Thread(target=worker, args=(a,)) for a in agents]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        return results, errors

    def test_same_agent_creates_one_hook(self, hooks, worktrees):
        results, errors = self._race(hooks, ["polecat-y", "polecat-y"])
        assert not errors
        assert len({h.id for h in results}) == 1
        assert len(hooks.list_hooks(rig_id="rig-x")) == 1
        assert worktrees.create_calls == 1

    def test_capacity_holds_under_contention(self, hooks):
        results, errors = self._race(hooks, [f"polecat-{i}" for i in range(8)])
        assert len(results) == 3
        assert len(errors) == 5
        assert len(hooks.list_hooks(rig_id="rig-x")) == 3


class TestLifecycle:
    """release / complete / archive / resume."""

    def test_release_clears_binding(self, hooks):
        hook = hooks.acquire("rig-x", "polecat-1")
        released = hooks.release(hook.id)
        assert released.state is HookState.SUSPENDED
        assert released.agent_binding is None

    def test_release_twice_is_noop(self, hooks):
        hook = hooks.acquire("rig-x", "polecat-1")
        first = hooks.release(hook.id)
        second = hooks.release(hook.id)
        assert second.revision == first.revision

    def test_every_transition_bumps_revision(self, hooks):
        hook = hooks.acquire("rig-x", "polecat-1")
        released = hooks.release(hook.id)
        assert released.revision == hook.revision + 1

    def test_complete_requires_active(self, hooks):
        hook = hooks.acquire("rig-x", "polecat-1")
        hooks.release(hook.id)
        with pytest.raises(InvalidTransition):
            hooks.complete(hook.id)

    def test_archive_active_rejected(self, hooks):
        hook = hooks.acquire("rig-x", "polecat-1")
        with pytest.raises(InvalidTransition):
            hooks.archive(hook.id)
        assert hooks.get(hook.id).state is HookState.ACTIVE

    def test_archive_removes_worktree(self, hooks, worktrees):
        hook = hooks.acquire("rig-x", "polecat-1")
        hooks.complete(hook.id)
        archived = hooks.archive(hook.id)
        assert archived.state is HookState.ARCHIVED
        assert hook.worktree_ref not in worktrees.worktrees

    def test_archive_survives_removal_failure(self, hooks, worktrees):
        hook = hooks.acquire("rig-x", "polecat-1")
        hooks.release(hook.id)
        with patch.object(worktrees, "remove", side_effect=InfrastructureError("busy")):
            archived = hooks.archive(hook.id)
        assert archived.state is HookState.ARCHIVED

    def test_archived_never_reactivates(self, hooks):
        hook = hooks.acquire("rig-x", "polecat-1")
        hooks.release(hook.id)
        hooks.archive(hook.id)
        with pytest.raises(InvalidTransition):
            hooks.resume(hook.id, "polecat-2")
        with pytest.raises(InvalidTransition):
            hooks.repair(hook.id)

    def test_completed_never_reactivates(self, hooks):
        hook = hooks.acquire("rig-x", "polecat-1")
        hooks.complete(hook.id)
        with pytest.raises(InvalidTransition):
            hooks.resume(hook.id, "polecat-1")
        with pytest.raises(InvalidTransition):
            hooks.release(hook.id)

    def test_list_filters_by_state(self, hooks):
        a = hooks.acquire("rig-x", "polecat-1")
        hooks.acquire("rig-x", "polecat-2")
        hooks.release(a.id)
        suspended = hooks.list_hooks(states={HookState.SUSPENDED})
        assert [h.id for h in suspended] == [a.id]


class TestHealthAndRepair:
    """check_health / mark_errored / repair."""

    def test_unhealthy_worktree_marks_errored(self, hooks, worktrees):
        hook = hooks.acquire("rig-x", "polecat-1")
        worktrees.broken.add(hook.worktree_ref)

        assert hooks.check_health(hook.id) is WorktreeHealth.UNREADABLE
        errored = hooks.get(hook.id)
        assert errored.state is HookState.ERRORED
        assert errored.last_error == "worktree unreadable"

    def test_healthy_worktree_untouched(self, hooks):
        hook = hooks.acquire("rig-x", "polecat-1")
        assert hooks.check_health(hook.id) is WorktreeHealth.HEALTHY
        assert hooks.get(hook.id).revision == hook.revision

    def test_repair_restores_active_with_binding(self, hooks, worktrees):
        hook = hooks.acquire("rig-x", "polecat-1")
        worktrees.broken.add(hook.worktree_ref)
        hooks.check_health(hook.id)

        assert hooks.repair(hook.id) is True
        repaired = hooks.get(hook.id)
        assert repaired.state is HookState.ACTIVE
        assert repaired.agent_binding == "polecat-1"
        assert repaired.last_error is None

    def test_failed_repair_stays_errored(self, hooks, worktrees):
        hook = hooks.acquire("rig-x", "polecat-1")
        worktrees.unrepairable.add(hook.worktree_ref)
        hooks.mark_errored(hook.id, "inconsistent")

        assert hooks.repair(hook.id) is False
        assert hooks.get(hook.id).state is HookState.ERRORED
        assert "repair failed" in hooks.get(hook.id).last_error

    def test_repair_creates_missing_worktree(self, hooks, worktrees):
        worktrees.fail_create = True
        with pytest.raises(InfrastructureError):
            hooks.acquire("rig-x", "polecat-1")
        [hook] = hooks.list_hooks()

        worktrees.fail_create = False
        assert hooks.repair(hook.id) is True
        assert hooks.get(hook.id).worktree_ref in worktrees.worktrees

    def test_repair_requires_errored(self, hooks):
        hook = hooks.acquire("rig-x", "polecat-1")
        with pytest.raises(InvalidTransition):
            hooks.repair(hook.id)

    def test_mark_errored_is_idempotent(self, hooks):
        hook = hooks.acquire("rig-x", "polecat-1")
        first = hooks.mark_errored(hook.id, "gone")
        second = hooks.mark_errored(hook.id, "gone again")
        assert second.revision == first.revision


class TestPersistence:
    """Hooks survive a restart of the manager."""

    def test_hooks_reload_from_state_dir(self, tmp_path, worktrees):
        from gastown.state.store import StateStore

        manager = HookManager(StateStore(tmp_path), worktrees)
        manager.add_rig("rig-x", "/repos/x")
        hook = manager.acquire("rig-x", "polecat-1")
        manager.release(hook.id)

        reloaded = HookManager(StateStore(tmp_path), worktrees)
        restored = reloaded.get(hook.id)
        assert restored.state is HookState.SUSPENDED
        assert restored.revision == 3
        assert reloaded.acquire("rig-x", "polecat-2").id == hook.id
