"""
Shared data types for Gas Town.

Dataclasses used across hooks, convoys, dispatch and status. Formula and
molecule types live in gastown.formulas.models. Every persisted entity has a
KIND (its state directory name), a revision counter, and to_dict/from_dict.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import ClassVar


def ts(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def parse_ts(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class HookState(Enum):
    """All hook lifecycle states. Values match the FSM state strings."""

    CREATED = "created"
    ACTIVE = "active"
    SUSPENDED = "suspended"
    COMPLETED = "completed"
    ARCHIVED = "archived"
    ERRORED = "errored"

    @property
    def is_live(self) -> bool:
        """Live hooks can still hold assignments."""
        return self not in (HookState.COMPLETED, HookState.ARCHIVED)


class RecordStatus(Enum):
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    BLOCKED = "blocked"
    DONE = "done"


@dataclass
class Record:
    """Issue/task as the core sees it. Owned by the record store."""
    id: str
    status: RecordStatus
    dependency_ids: set[str] = field(default_factory=set)
    title: str = ""


@dataclass
class Hook:
    """Persistent, resumable work location inside a rig."""
    KIND: ClassVar[str] = "hook"

    id: str
    rig_id: str
    state: HookState = HookState.CREATED
    agent_binding: str | None = None
    worktree_ref: str | None = None
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)
    revision: int = 0
    last_error: str | None = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "rig_id": self.rig_id,
            "state": self.state.value,
            "agent_binding": self.agent_binding,
            "worktree_ref": self.worktree_ref,
            "created_at": ts(self.created_at),
            "updated_at": ts(self.updated_at),
            "revision": self.revision,
            "last_error": self.last_error,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Hook":
        return cls(
            id=data["id"],
            rig_id=data["rig_id"],
            state=HookState(data["state"]),
            agent_binding=data.get("agent_binding"),
            worktree_ref=data.get("worktree_ref"),
            created_at=parse_ts(data["created_at"]),
            updated_at=parse_ts(data["updated_at"]),
            revision=data["revision"],
            last_error=data.get("last_error"),
        )


@dataclass
class Rig:
    """Project container owning a set of hooks."""
    KIND: ClassVar[str] = "rig"

    id: str
    repository_ref: str
    hooks: set[str] = field(default_factory=set)
    created_at: datetime = field(default_factory=datetime.now)
    revision: int = 0

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "repository_ref": self.repository_ref,
            "hooks": sorted(self.hooks),
            "created_at": ts(self.created_at),
            "revision": self.revision,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Rig":
        return cls(
            id=data["id"],
            repository_ref=data["repository_ref"],
            hooks=set(data.get("hooks", [])),
            created_at=parse_ts(data["created_at"]),
            revision=data["revision"],
        )


@dataclass
class Convoy:
    """Named, ordered bundle of records tracked together."""
    KIND: ClassVar[str] = "convoy"

    id: str
    name: str
    record_ids: list[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=datetime.now)
    revision: int = 0

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "record_ids": list(self.record_ids),
            "created_at": ts(self.created_at),
            "revision": self.revision,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Convoy":
        return cls(
            id=data["id"],
            name=data["name"],
            record_ids=list(data["record_ids"]),
            created_at=parse_ts(data["created_at"]),
            revision=data["revision"],
        )


@dataclass
class ConvoyProgress:
    """Aggregate view of a convoy, computed from live record status."""
    done: int
    total: int
    blocked_ids: list[str] = field(default_factory=list)

    @property
    def fraction(self) -> float:
        return self.done / self.total if self.total else 0.0

    @property
    def complete(self) -> bool:
        return self.total > 0 and self.done == self.total


@dataclass
class Assignment:
    """A record slung onto a hook. Keyed by record id."""
    KIND: ClassVar[str] = "assignment"

    record_id: str
    hook_id: str
    rig_id: str
    molecule_id: str | None = None
    step: str | None = None
    assigned_at: datetime = field(default_factory=datetime.now)
    revision: int = 0

    @property
    def id(self) -> str:
        return self.record_id

    def to_dict(self) -> dict:
        return {
            "record_id": self.record_id,
            "hook_id": self.hook_id,
            "rig_id": self.rig_id,
            "molecule_id": self.molecule_id,
            "step": self.step,
            "assigned_at": ts(self.assigned_at),
            "revision": self.revision,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Assignment":
        return cls(
            record_id=data["record_id"],
            hook_id=data["hook_id"],
            rig_id=data["rig_id"],
            molecule_id=data.get("molecule_id"),
            step=data.get("step"),
            assigned_at=parse_ts(data["assigned_at"]),
            revision=data["revision"],
        )
