"""
Revisioned entity store.

Holds hooks, rigs, convoys, assignments, formulas and molecules. Every entity
carries a revision counter; update() only succeeds when the caller's copy has
the revision currently stored, otherwise ConflictError (optimistic
concurrency). Readers never block writers beyond a short table lock.

With a state_dir, every write is mirrored to <state_dir>/<kind>/<id>.json
(schema-validated, atomic rename) and the files are the source of truth:
reads re-sync from disk, and writes compare revisions against the file
under a per-entity flock. Several processes (a patrol loop plus operator
commands) can share one state directory; a stale write from any of them
raises ConflictError instead of overwriting the other's change.
"""

import copy
import dataclasses
import json
import logging
import os
import threading
from contextlib import nullcontext
from pathlib import Path
from typing import Any, TypeVar

from gastown.formulas.models import Formula, Molecule
from gastown.lib.errors import ConflictError, NotFoundError, SchemaValidationError
from gastown.lib.locking import file_lock
from gastown.lib.types import Assignment, Convoy, Hook, Rig
from gastown.lib.validate import validate_before_write, validate_file

logger = logging.getLogger(__name__)

E = TypeVar("E")

ENTITY_TYPES: dict[str, type] = {
    cls.KIND: cls for cls in (Hook, Rig, Convoy, Assignment, Formula, Molecule)
}

ENTITY_LOCK_TIMEOUT = 10
ENTITY_LOCK_POLL = 0.02


def _sort_key(entity: Any) -> tuple:
    created = getattr(entity, "created_at", None) or getattr(entity, "assigned_at", None)
    return (created.isoformat() if created else "", entity.id)


class StateStore:
    """Thread-safe entity tables with optional JSON persistence."""

    def __init__(self, state_dir: Path | None = None):
        self.state_dir = state_dir
        self._lock = threading.RLock()
        self._tables: dict[str, dict[str, Any]] = {kind: {} for kind in ENTITY_TYPES}
        if state_dir is not None:
            for kind in ENTITY_TYPES:
                self._reload_kind(kind)

    # === Reads ===

    def get(self, kind: str, entity_id: str) -> Any | None:
        """Return a private copy of the entity, or None."""
        with self._lock:
            entity = self._current(kind, entity_id)
            return copy.deepcopy(entity) if entity is not None else None

    def require(self, kind: str, entity_id: str) -> Any:
        entity = self.get(kind, entity_id)
        if entity is None:
            raise NotFoundError(kind.capitalize(), entity_id)
        return entity

    def list(self, kind: str) -> list:
        with self._lock:
            if self.state_dir is not None:
                self._reload_kind(kind)
            entities = [copy.deepcopy(e) for e in self._tables[kind].values()]
        return sorted(entities, key=_sort_key)

    def revision(self, kind: str, entity_id: str) -> int | None:
        with self._lock:
            entity = self._current(kind, entity_id)
            return entity.revision if entity is not None else None

    # === Writes ===

    def insert(self, entity: E) -> E:
        """Store a new entity at revision 1."""
        kind = entity.KIND
        with self._lock, self._entity_lock(kind, entity.id):
            existing = self._current(kind, entity.id)
            if existing is not None:
                raise ConflictError(kind, entity.id, None, existing.revision)
            saved = dataclasses.replace(entity, revision=1)
            self._persist(saved)
            self._tables[kind][saved.id] = copy.deepcopy(saved)
        return saved

    def update(self, entity: E) -> E:
        """Write entity if its revision is current. Returns the saved copy."""
        kind = entity.KIND
        with self._lock, self._entity_lock(kind, entity.id):
            existing = self._current(kind, entity.id)
            actual = existing.revision if existing is not None else None
            if actual != entity.revision:
                raise ConflictError(kind, entity.id, entity.revision, actual)
            saved = dataclasses.replace(entity, revision=entity.revision + 1)
            self._persist(saved)
            self._tables[kind][saved.id] = copy.deepcopy(saved)
        return saved

    def delete(self, kind: str, entity_id: str, revision: int | None = None) -> None:
        """Remove an entity. With revision, only if it is still current."""
        with self._lock, self._entity_lock(kind, entity_id):
            existing = self._current(kind, entity_id)
            if existing is None:
                return
            if revision is not None and existing.revision != revision:
                raise ConflictError(kind, entity_id, revision, existing.revision)
            del self._tables[kind][entity_id]
            if self.state_dir is not None:
                self._path(kind, entity_id).unlink(missing_ok=True)

    # === Persistence ===

    def _path(self, kind: str, entity_id: str) -> Path:
        return self.state_dir / kind / f"{entity_id.replace('/', '_')}.json"

    def _entity_lock(self, kind: str, entity_id: str):
        if self.state_dir is None:
            return nullcontext()
        lock_file = self.state_dir / ".locks" / kind / f"{entity_id.replace('/', '_')}.lock"
        return file_lock(lock_file, ENTITY_LOCK_TIMEOUT, f"{kind} {entity_id}", poll=ENTITY_LOCK_POLL)

    def _current(self, kind: str, entity_id: str) -> Any | None:
        """The stored entity, re-read from disk when persisted. Caller holds _lock."""
        table = self._tables[kind]
        if self.state_dir is None:
            return table.get(entity_id)
        entity = self._read(kind, self._path(kind, entity_id))
        if entity is None:
            table.pop(entity_id, None)
        else:
            table[entity_id] = entity
        return entity

    def _read(self, kind: str, path: Path) -> Any | None:
        if not path.exists():
            return None
        try:
            data = validate_file(path, kind)
        except SchemaValidationError as e:
            logger.error(f"[STATE] Skipping unreadable {kind} file {path.name}: {e}")
            return None
        return ENTITY_TYPES[kind].from_dict(data)

    def _persist(self, entity: Any) -> None:
        if self.state_dir is None:
            return
        path = self._path(entity.KIND, entity.id)
        data = entity.to_dict()
        validate_before_write(data, entity.KIND, path)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_name(f"{path.name}.{os.getpid()}.tmp")
        tmp_path.write_text(json.dumps(data, indent=2, sort_keys=True))
        os.replace(tmp_path, path)

    def _reload_kind(self, kind: str) -> None:
        kind_dir = self.state_dir / kind
        table: dict[str, Any] = {}
        if kind_dir.exists():
            for path in sorted(kind_dir.glob("*.json")):
                entity = self._read(kind, path)
                if entity is not None:
                    table[entity.id] = entity
        self._tables[kind] = table
        logger.debug(f"[STATE] Loaded {len(table)} {kind} entities")
