"""
Convoy tracking.

A convoy is an ordered, named bundle of records. Membership is stored here;
record status is not. Progress is recomputed from the record store on every
call, so a record reopened after Done shows up as a regression immediately.
"""

import logging
import secrets
from datetime import datetime
from typing import Callable

from gastown.adapters.protocols import RecordStore
from gastown.lib.errors import ConflictError, ValidationError
from gastown.lib.types import Convoy, ConvoyProgress, RecordStatus
from gastown.state.store import StateStore

logger = logging.getLogger(__name__)


def new_convoy_id() -> str:
    return f"cv-{secrets.token_hex(4)}"


def _dedupe(record_ids) -> list[str]:
    seen = set()
    ordered = []
    for rid in record_ids:
        if rid not in seen:
            seen.add(rid)
            ordered.append(rid)
    return ordered


class ConvoyTracker:
    def __init__(self, store: StateStore, records: RecordStore, clock: Callable[[], datetime] = datetime.now):
        self.store = store
        self.records = records
        self._clock = clock

    def create(self, name: str, record_ids) -> Convoy:
        """Create a convoy. Duplicate record ids keep their first position."""
        if not name or not name.strip():
            raise ValidationError("Convoy name must not be empty")
        convoy = Convoy(id=new_convoy_id(), name=name, record_ids=_dedupe(record_ids), created_at=self._clock())
        convoy = self.store.insert(convoy)
        logger.info(f"[CONVOY] {convoy.id}: created '{name}' with {len(convoy.record_ids)} records")
        return convoy

    def get(self, convoy_id: str) -> Convoy:
        return self.store.require(Convoy.KIND, convoy_id)

    def list_convoys(self) -> list[Convoy]:
        return self.store.list(Convoy.KIND)

    def add_records(self, convoy_id: str, record_ids, expected_revision: int | None = None) -> Convoy:
        """Append records not already in the convoy.

        With expected_revision, fails with ConflictError if the convoy changed
        since the caller read it.
        """
        convoy = self.get(convoy_id)
        if expected_revision is not None and convoy.revision != expected_revision:
            raise ConflictError(Convoy.KIND, convoy_id, expected_revision, convoy.revision)

        members = set(convoy.record_ids)
        new_ids = [rid for rid in _dedupe(record_ids) if rid not in members]
        if not new_ids:
            return convoy

        convoy.record_ids.extend(new_ids)
        convoy = self.store.update(convoy)
        logger.info(f"[CONVOY] {convoy_id}: added {len(new_ids)} records")
        return convoy

    def progress(self, convoy_id: str) -> ConvoyProgress:
        """Done/total and blocked members, read live from the record store.

        A member is blocked if it is Blocked itself or any of its
        dependencies (in this convoy or not) is not Done. A dependency the
        store cannot find is not Done.
        """
        convoy = self.get(convoy_id)
        done = 0
        blocked = []
        status_cache: dict[str, RecordStatus | None] = {}

        def status_of(record_id: str) -> RecordStatus | None:
            if record_id not in status_cache:
                record = self.records.get(record_id)
                status_cache[record_id] = record.status if record else None
            return status_cache[record_id]

        for rid in convoy.record_ids:
            record = self.records.get(rid)
            status_cache[rid] = record.status if record else None
            if record is None:
                logger.debug(f"[CONVOY] {convoy_id}: member {rid} not in record store")
                continue
            if record.status is RecordStatus.DONE:
                done += 1
                continue
            if record.status is RecordStatus.BLOCKED or any(
                status_of(dep) is not RecordStatus.DONE for dep in sorted(record.dependency_ids)
            ):
                blocked.append(rid)

        return ConvoyProgress(done=done, total=len(convoy.record_ids), blocked_ids=blocked)

    def show(self, convoy_id: str) -> tuple[Convoy, ConvoyProgress]:
        return self.get(convoy_id), self.progress(convoy_id)
