"""Tests for gastown.state.store module."""

import json
from datetime import datetime

import pytest

from gastown.lib.errors import ConflictError, NotFoundError, SchemaValidationError
from gastown.lib.types import Convoy, Hook, HookState
from gastown.state.store import StateStore


def make_hook(hook_id="hook-1", **kwargs):
    now = datetime(2026, 1, 1, 12, 0, 0)
    return Hook(id=hook_id, rig_id="rig-x", created_at=now, updated_at=now, **kwargs)


class TestRevisions:
    """Optimistic concurrency on revision counters."""

    def test_insert_starts_at_one(self):
        store = StateStore()
        assert store.insert(make_hook()).revision == 1

    def test_insert_existing_conflicts(self):
        store = StateStore()
        store.insert(make_hook())
        with pytest.raises(ConflictError):
            store.insert(make_hook())

    def test_update_bumps_revision(self):
        store = StateStore()
        hook = store.insert(make_hook())
        hook.state = HookState.ACTIVE
        saved = store.update(hook)
        assert saved.revision == 2
        assert store.get(Hook.KIND, "hook-1").state is HookState.ACTIVE

    def test_stale_update_conflicts(self):
        store = StateStore()
        hook = store.insert(make_hook())
        first = store.get(Hook.KIND, hook.id)
        second = store.get(Hook.KIND, hook.id)

        first.state = HookState.ACTIVE
        store.update(first)
        second.state = HookState.ERRORED
        with pytest.raises(ConflictError) as exc:
            store.update(second)
        assert (exc.value.expected, exc.value.actual) == (1, 2)
        assert store.get(Hook.KIND, hook.id).state is HookState.ACTIVE

    def test_get_returns_private_copy(self):
        store = StateStore()
        store.insert(Convoy(id="cv-1", name="c", record_ids=["r1"]))
        copy = store.get(Convoy.KIND, "cv-1")
        copy.record_ids.append("r2")
        assert store.get(Convoy.KIND, "cv-1").record_ids == ["r1"]

    def test_require_missing(self):
        with pytest.raises(NotFoundError):
            StateStore().require(Hook.KIND, "nope")

    def test_delete_with_stale_revision(self):
        store = StateStore()
        store.insert(make_hook())
        with pytest.raises(ConflictError):
            store.delete(Hook.KIND, "hook-1", revision=5)
        store.delete(Hook.KIND, "hook-1", revision=1)
        assert store.get(Hook.KIND, "hook-1") is None


class TestPersistence:
    """JSON mirroring under a state directory."""

    def test_round_trip_through_disk(self, tmp_path):
        store = StateStore(tmp_path)
        store.insert(make_hook(state=HookState.SUSPENDED, worktree_ref="/wt/1"))

        path = tmp_path / "hook" / "hook-1.json"
        data = json.loads(path.read_text())
        assert data["state"] == "suspended"

        reloaded = StateStore(tmp_path).get(Hook.KIND, "hook-1")
        assert reloaded.worktree_ref == "/wt/1"
        assert reloaded.revision == 1

    def test_delete_removes_file(self, tmp_path):
        store = StateStore(tmp_path)
        store.insert(make_hook())
        store.delete(Hook.KIND, "hook-1")
        assert not (tmp_path / "hook" / "hook-1.json").exists()

    def test_invalid_file_skipped_on_load(self, tmp_path):
        (tmp_path / "hook").mkdir()
        (tmp_path / "hook" / "bad.json").write_text('{"id": "bad"}')
        store = StateStore(tmp_path)
        assert store.list(Hook.KIND) == []

    def test_refuses_to_write_invalid_entity(self, tmp_path):
        store = StateStore(tmp_path)
        with pytest.raises(SchemaValidationError):
            store.insert(Hook(id="", rig_id="rig-x"))
        assert not (tmp_path / "hook").exists() or not list((tmp_path / "hook").iterdir())


class TestSharedStateDir:
    """Two stores over one directory, as a patrol loop and a CLI command are."""

    def test_reads_see_other_writer(self, tmp_path):
        patrol = StateStore(tmp_path)
        operator = StateStore(tmp_path)
        patrol.insert(make_hook())

        hook = operator.get(Hook.KIND, "hook-1")
        hook.state = HookState.SUSPENDED
        operator.update(hook)

        seen = patrol.get(Hook.KIND, "hook-1")
        assert seen.state is HookState.SUSPENDED
        assert seen.revision == 2

    def test_stale_write_after_other_writer_conflicts(self, tmp_path):
        patrol = StateStore(tmp_path)
        operator = StateStore(tmp_path)
        stale = patrol.insert(make_hook())

        fresh = operator.get(Hook.KIND, "hook-1")
        fresh.state = HookState.ARCHIVED
        operator.update(fresh)

        stale.state = HookState.ACTIVE
        with pytest.raises(ConflictError) as exc:
            patrol.update(stale)
        assert (exc.value.expected, exc.value.actual) == (1, 2)
        on_disk = json.loads((tmp_path / "hook" / "hook-1.json").read_text())
        assert on_disk["state"] == "archived"

    def test_list_picks_up_new_and_deleted_files(self, tmp_path):
        patrol = StateStore(tmp_path)
        operator = StateStore(tmp_path)
        patrol.insert(make_hook("hook-1"))
        operator.insert(make_hook("hook-2"))
        assert [h.id for h in patrol.list(Hook.KIND)] == ["hook-1", "hook-2"]

        operator.delete(Hook.KIND, "hook-1")
        assert [h.id for h in patrol.list(Hook.KIND)] == ["hook-2"]
        assert patrol.get(Hook.KIND, "hook-1") is None

    def test_insert_conflicts_with_other_writers_entity(self, tmp_path):
        StateStore(tmp_path).insert(make_hook())
        with pytest.raises(ConflictError):
            StateStore(tmp_path).insert(make_hook())
