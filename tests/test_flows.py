"""Tests for gastown.workflow.flows module."""

from datetime import datetime
from unittest.mock import MagicMock, patch

from gastown.workflow.flows import patrol_flow
from gastown.workflow.orchestrator import CycleReport


def report(cycle, errors=()):
    return CycleReport(cycle=cycle, started_at=datetime.now(), errors=list(errors))


class TestPatrolFlow:
    """The flow body, run without a Prefect server via .fn."""

    @patch("gastown.workflow.flows.time.sleep")
    @patch("gastown.workflow.flows.task_cycle")
    def test_runs_max_cycles(self, mock_cycle, mock_sleep):
        orchestrator = MagicMock()
        mock_cycle.side_effect = [report(1), report(2), report(3)]

        reports = patrol_flow.fn(orchestrator, 0.5, max_cycles=3)

        assert [r.cycle for r in reports] == [1, 2, 3]
        assert mock_cycle.call_count == 3
        mock_cycle.assert_called_with(orchestrator)
        assert mock_sleep.call_count == 2
        mock_sleep.assert_called_with(0.5)

    @patch("gastown.workflow.flows.time.sleep")
    @patch("gastown.workflow.flows.task_cycle")
    def test_errors_do_not_stop_the_loop(self, mock_cycle, mock_sleep, caplog):
        mock_cycle.side_effect = [report(1, errors=["mol-1: record store unreachable"]), report(2)]

        reports = patrol_flow.fn(MagicMock(), 0, max_cycles=2)

        assert len(reports) == 2
        assert "cycle 1 had 1 errors" in caplog.text
