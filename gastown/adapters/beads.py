"""
Beads record store adapter.

Talks to the `bd` issue tracker CLI with --json output. Beads owns the
records; this adapter only maps its issue JSON onto Record and back.
"""

import json
import logging
import subprocess
from pathlib import Path
from typing import Any

from gastown.lib.errors import InfrastructureError
from gastown.lib.retry import retry_transient
from gastown.lib.types import Record, RecordStatus

logger = logging.getLogger(__name__)

# Timeout for bd CLI operations (seconds)
BD_TIMEOUT_SECONDS = 30

# Attempts for get/query. Writes run once.
READ_ATTEMPTS = 3

# beads status <-> RecordStatus
STATUS_FROM_BEADS = {
    "open": RecordStatus.OPEN,
    "in_progress": RecordStatus.IN_PROGRESS,
    "blocked": RecordStatus.BLOCKED,
    "closed": RecordStatus.DONE,
    "done": RecordStatus.DONE,
}
STATUS_TO_BEADS = {
    RecordStatus.OPEN: "open",
    RecordStatus.IN_PROGRESS: "in_progress",
    RecordStatus.BLOCKED: "blocked",
    RecordStatus.DONE: "closed",
}


def _dependency_ids(issue: dict) -> set[str]:
    """Extract blocking dependency ids from a bd issue document.

    bd has emitted both plain id lists and edge objects over time.
    """
    deps = set()
    for dep in issue.get("dependencies") or []:
        if isinstance(dep, str):
            deps.add(dep)
        elif isinstance(dep, dict):
            if dep.get("type", "blocks") not in ("blocks", "parent-child"):
                continue
            dep_id = dep.get("depends_on_id") or dep.get("id")
            if dep_id:
                deps.add(dep_id)
    return deps


def parse_issue(issue: dict) -> Record:
    status = issue.get("status", "open")
    if status not in STATUS_FROM_BEADS:
        logger.warning(f"[BEADS] {issue.get('id')}: unknown status '{status}', treating as open")
    return Record(
        id=issue["id"],
        status=STATUS_FROM_BEADS.get(status, RecordStatus.OPEN),
        dependency_ids=_dependency_ids(issue),
        title=issue.get("title", ""),
    )


class BeadsRecordStore:
    def __init__(self, workdir: Path, binary: str = "bd"):
        self.workdir = workdir
        self.binary = binary

    def _run(self, args: list[str]) -> str:
        cmd = [self.binary] + args
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                cwd=str(self.workdir),
                timeout=BD_TIMEOUT_SECONDS,
            )
        except subprocess.TimeoutExpired:
            raise InfrastructureError(f"bd {args[0]} timed out after {BD_TIMEOUT_SECONDS}s") from None
        except OSError as e:
            raise InfrastructureError(f"Failed to run bd: {e}") from None

        if result.returncode != 0:
            raise InfrastructureError(f"bd {args[0]} failed (exit {result.returncode}): {result.stderr.strip()}")
        return result.stdout

    def _run_json(self, args: list[str]) -> Any:
        output = self._run(args + ["--json"])
        try:
            return json.loads(output) if output.strip() else None
        except json.JSONDecodeError as e:
            raise InfrastructureError(f"bd {args[0]} returned invalid JSON: {e}") from None

    def _show(self, record_id: str) -> Any:
        try:
            return self._run_json(["show", record_id])
        except InfrastructureError as e:
            if "not found" in str(e).lower():
                return None
            raise

    def get(self, record_id: str) -> Record | None:
        data = retry_transient(lambda: self._show(record_id), READ_ATTEMPTS)
        if isinstance(data, list):
            data = data[0] if data else None
        return parse_issue(data) if data else None

    def query(self, **filters: Any) -> list[Record]:
        args = ["list"]
        status = filters.get("status")
        if status is not None:
            args += ["--status", STATUS_TO_BEADS[status]]
        data = retry_transient(lambda: self._run_json(args), READ_ATTEMPTS) or []
        records = [parse_issue(issue) for issue in data]
        ids = filters.get("ids")
        if ids is not None:
            wanted = set(ids)
            records = [r for r in records if r.id in wanted]
        return records

    def update_status(self, record_id: str, status: RecordStatus) -> None:
        if status is RecordStatus.DONE:
            self._run(["close", record_id])
        else:
            self._run(["update", record_id, "--status", STATUS_TO_BEADS[status]])

    def add_dependency(self, record_id: str, dep_id: str) -> None:
        self._run(["dep", "add", record_id, dep_id])

    def create(self, title: str, body: str = "") -> str:
        args = ["create", title]
        if body:
            args += ["--description", body]
        data = self._run_json(args)
        if isinstance(data, list):
            data = data[0] if data else None
        if not data or "id" not in data:
            raise InfrastructureError("bd create did not return an issue id")
        return data["id"]
