"""
In-process collaborator adapters.

Used for dry runs (RECORD_STORE=memory) and tests. They honour the same
protocols as the beads/git adapters, including failure modes, so the core
can be exercised without a record store or repository.
"""

import itertools
import threading
from typing import Any

from gastown.adapters.protocols import WorktreeHealth
from gastown.lib.errors import InfrastructureError
from gastown.lib.types import Record, RecordStatus


class MemoryRecordStore:
    """Dict-backed record store."""

    def __init__(self, prefix: str = "rec"):
        self.prefix = prefix
        self._lock = threading.Lock()
        self._records: dict[str, Record] = {}
        self._bodies: dict[str, str] = {}
        self._counter = itertools.count(1)
        self.reachable = True

    def _check(self) -> None:
        if not self.reachable:
            raise InfrastructureError("record store unreachable")

    def add(self, record_id: str, status: RecordStatus = RecordStatus.OPEN,
            dependency_ids: set[str] | None = None, title: str = "") -> Record:
        """Seed a record directly."""
        record = Record(id=record_id, status=status, dependency_ids=set(dependency_ids or ()), title=title)
        with self._lock:
            self._records[record_id] = record
        return record

    def get(self, record_id: str) -> Record | None:
        self._check()
        with self._lock:
            record = self._records.get(record_id)
            if record is None:
                return None
            return Record(record.id, record.status, set(record.dependency_ids), record.title)

    def query(self, **filters: Any) -> list[Record]:
        self._check()
        status = filters.get("status")
        ids = filters.get("ids")
        with self._lock:
            records = list(self._records.values())
        if status is not None:
            records = [r for r in records if r.status == status]
        if ids is not None:
            records = [r for r in records if r.id in set(ids)]
        return [Record(r.id, r.status, set(r.dependency_ids), r.title) for r in records]

    def update_status(self, record_id: str, status: RecordStatus) -> None:
        self._check()
        with self._lock:
            if record_id not in self._records:
                raise InfrastructureError(f"record {record_id} not found")
            self._records[record_id].status = status

    def add_dependency(self, record_id: str, dep_id: str) -> None:
        self._check()
        with self._lock:
            if record_id not in self._records:
                raise InfrastructureError(f"record {record_id} not found")
            self._records[record_id].dependency_ids.add(dep_id)

    def create(self, title: str, body: str = "") -> str:
        self._check()
        with self._lock:
            record_id = f"{self.prefix}-{next(self._counter)}"
            self._records[record_id] = Record(id=record_id, status=RecordStatus.OPEN, title=title)
            self._bodies[record_id] = body
        return record_id

    def body(self, record_id: str) -> str:
        return self._bodies.get(record_id, "")


class MemoryWorktreeAdapter:
    """Hands out fake worktree refs and lets callers break them."""

    def __init__(self):
        self._lock = threading.Lock()
        self._counter = itertools.count(1)
        self.worktrees: dict[str, str] = {}  # ref -> rig_id
        self.broken: set[str] = set()
        self.unrepairable: set[str] = set()
        self.fail_create = False
        self.create_calls = 0

    def create(self, rig_id: str) -> str:
        with self._lock:
            self.create_calls += 1
            if self.fail_create:
                raise InfrastructureError(f"cannot create worktree for {rig_id}")
            ref = f"wt-{rig_id}-{next(self._counter)}"
            self.worktrees[ref] = rig_id
        return ref

    def remove(self, worktree_ref: str) -> None:
        with self._lock:
            self.worktrees.pop(worktree_ref, None)
            self.broken.discard(worktree_ref)

    def inspect(self, worktree_ref: str) -> WorktreeHealth:
        with self._lock:
            if worktree_ref not in self.worktrees:
                return WorktreeHealth.MISSING
            if worktree_ref in self.broken:
                return WorktreeHealth.UNREADABLE
        return WorktreeHealth.HEALTHY

    def repair(self, worktree_ref: str) -> bool:
        with self._lock:
            if worktree_ref in self.unrepairable or worktree_ref not in self.worktrees:
                return False
            self.broken.discard(worktree_ref)
        return True
