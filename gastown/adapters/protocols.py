"""
Collaborator interfaces consumed by the orchestration core.

The record store, worktree mechanism and agent runtime are external systems.
The core only depends on these protocols; concrete adapters live beside
this module.
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Protocol

from gastown.lib.types import Record, RecordStatus


class WorktreeHealth(Enum):
    HEALTHY = "healthy"
    MISSING = "missing"        # Path gone
    UNREADABLE = "unreadable"  # Exists but git cannot read it
    INCONSISTENT = "inconsistent"  # Detached, wrong branch, or mid-operation

    @property
    def ok(self) -> bool:
        return self is WorktreeHealth.HEALTHY


class RecordStore(Protocol):
    """Durable issue/task storage with dependency edges."""

    def get(self, record_id: str) -> Record | None: ...

    def query(self, **filters: Any) -> list[Record]: ...

    def update_status(self, record_id: str, status: RecordStatus) -> None: ...

    def add_dependency(self, record_id: str, dep_id: str) -> None: ...

    def create(self, title: str, body: str = "") -> str: ...


class WorktreeAdapter(Protocol):
    """Creates and maintains isolated file-state containers for hooks."""

    def create(self, rig_id: str) -> str: ...

    def remove(self, worktree_ref: str) -> None: ...

    def inspect(self, worktree_ref: str) -> WorktreeHealth: ...

    def repair(self, worktree_ref: str) -> bool: ...


@dataclass
class CommandSpec:
    """What an agent runtime should launch for one slung record."""
    argv: list[str]
    cwd: Path | None = None
    stdin: str | None = None
    env: dict[str, str] = field(default_factory=dict)


class AgentRuntime(Protocol):
    """Launches agent processes and reports their exit."""

    def start(self, hook_id: str, command_spec: CommandSpec) -> Any: ...

    def stop(self, handle: Any) -> None: ...

    def wait(self, handle: Any) -> int: ...
