"""Tests for gastown.adapters.beads module."""

import json
import subprocess
from unittest.mock import MagicMock, patch

import pytest

from gastown.adapters.beads import BeadsRecordStore, parse_issue
from gastown.lib.errors import InfrastructureError
from gastown.lib.types import RecordStatus


def completed(stdout="", returncode=0, stderr=""):
    return MagicMock(returncode=returncode, stdout=stdout, stderr=stderr)


@pytest.fixture
def store(tmp_path):
    return BeadsRecordStore(tmp_path)


class TestParseIssue:
    def test_closed_is_done(self):
        record = parse_issue({"id": "gt-1", "status": "closed", "title": "Fix"})
        assert record.status is RecordStatus.DONE
        assert record.title == "Fix"

    def test_dependency_shapes(self):
        record = parse_issue({
            "id": "gt-3",
            "status": "open",
            "dependencies": [
                "gt-1",
                {"depends_on_id": "gt-2", "type": "blocks"},
                {"depends_on_id": "gt-9", "type": "related"},
            ],
        })
        assert record.dependency_ids == {"gt-1", "gt-2"}

    def test_unknown_status_is_open(self, caplog):
        record = parse_issue({"id": "gt-1", "status": "wontfix"})
        assert record.status is RecordStatus.OPEN
        assert "unknown status 'wontfix'" in caplog.text


class TestBeadsRecordStore:
    """bd CLI calls with subprocess mocked."""

    @patch("gastown.adapters.beads.subprocess.run")
    def test_get(self, mock_run, store, tmp_path):
        mock_run.return_value = completed(json.dumps([{"id": "gt-1", "status": "in_progress"}]))
        record = store.get("gt-1")
        assert record.status is RecordStatus.IN_PROGRESS
        assert mock_run.call_args[0][0] == ["bd", "show", "gt-1", "--json"]
        assert mock_run.call_args[1]["cwd"] == str(tmp_path)

    @patch("gastown.adapters.beads.subprocess.run")
    def test_get_not_found(self, mock_run, store):
        mock_run.return_value = completed(returncode=1, stderr="Error: issue gt-404 not found")
        assert store.get("gt-404") is None

    @patch("gastown.adapters.beads.subprocess.run")
    def test_query_filters(self, mock_run, store):
        mock_run.return_value = completed(json.dumps([
            {"id": "gt-1", "status": "open"},
            {"id": "gt-2", "status": "open"},
        ]))
        records = store.query(status=RecordStatus.OPEN, ids=["gt-2"])
        assert [r.id for r in records] == ["gt-2"]
        assert mock_run.call_args[0][0] == ["bd", "list", "--status", "open", "--json"]

    @patch("gastown.adapters.beads.subprocess.run")
    def test_done_closes_issue(self, mock_run, store):
        mock_run.return_value = completed()
        store.update_status("gt-1", RecordStatus.DONE)
        assert mock_run.call_args[0][0] == ["bd", "close", "gt-1"]

    @patch("gastown.adapters.beads.subprocess.run")
    def test_update_status(self, mock_run, store):
        mock_run.return_value = completed()
        store.update_status("gt-1", RecordStatus.IN_PROGRESS)
        assert mock_run.call_args[0][0] == ["bd", "update", "gt-1", "--status", "in_progress"]

    @patch("gastown.adapters.beads.subprocess.run")
    def test_create_returns_id(self, mock_run, store):
        mock_run.return_value = completed(json.dumps({"id": "gt-7", "title": "Build"}))
        assert store.create("Build", "body text") == "gt-7"
        assert mock_run.call_args[0][0] == ["bd", "create", "Build", "--description", "body text", "--json"]

    @patch("gastown.adapters.beads.subprocess.run")
    def test_add_dependency(self, mock_run, store):
        mock_run.return_value = completed()
        store.add_dependency("gt-2", "gt-1")
        assert mock_run.call_args[0][0] == ["bd", "dep", "add", "gt-2", "gt-1"]

    @patch("gastown.adapters.beads.subprocess.run")
    def test_timeout_is_infrastructure_error(self, mock_run, store):
        mock_run.side_effect = subprocess.TimeoutExpired(cmd="bd", timeout=30)
        with pytest.raises(InfrastructureError, match="timed out"):
            store.query()

    @patch("gastown.adapters.beads.subprocess.run")
    def test_missing_binary(self, mock_run, store):
        mock_run.side_effect = FileNotFoundError("bd")
        with pytest.raises(InfrastructureError, match="Failed to run bd"):
            store.update_status("gt-1", RecordStatus.OPEN)

    @patch("gastown.adapters.beads.subprocess.run")
    def test_invalid_json(self, mock_run, store):
        mock_run.return_value = completed("not json")
        with pytest.raises(InfrastructureError, match="invalid JSON"):
            store.query()

    @patch("gastown.adapters.beads.subprocess.run")
    def test_reads_retry_transient_failures(self, mock_run, store):
        mock_run.side_effect = [
            completed(returncode=1, stderr="database is locked"),
            completed(json.dumps([{"id": "gt-1", "status": "open"}])),
        ]
        assert [r.id for r in store.query()] == ["gt-1"]
        assert mock_run.call_count == 2

    @patch("gastown.adapters.beads.subprocess.run")
    def test_writes_are_not_retried(self, mock_run, store):
        mock_run.return_value = completed(returncode=1, stderr="database is locked")
        with pytest.raises(InfrastructureError):
            store.add_dependency("gt-2", "gt-1")
        assert mock_run.call_count == 1
