"""Prefect wrappers for the patrol loop.

Wraps Orchestrator.run_cycle with @task and the loop with @flow to get:
- Automatic retry of a cycle that raised (store or record-store outages)
- Observability when connected to a Prefect server

`gt patrol --prefect` runs the flow; plain `gt patrol` calls the
orchestrator directly. The orchestration logic is the same either way.
"""

import logging
import time
from typing import TYPE_CHECKING

from prefect import flow, task

if TYPE_CHECKING:
    from gastown.workflow.orchestrator import CycleReport, Orchestrator

logger = logging.getLogger(__name__)


@task(
    retries=2,
    retry_delay_seconds=5,
    name="town_cycle",
    description="Run one patrol cycle: exits, molecules, hooks, convoys"
)
def task_cycle(orchestrator: "Orchestrator") -> "CycleReport":
    """One patrol cycle with Prefect retry handling."""
    return orchestrator.run_cycle()


@flow(name="town_patrol", validate_parameters=False)
def patrol_flow(orchestrator: "Orchestrator", interval: float, max_cycles: int | None = None) -> list["CycleReport"]:
    """Patrol loop as a Prefect flow.

    Returns the reports of every cycle run. With max_cycles=None it runs
    until interrupted.
    """
    reports = []
    while max_cycles is None or len(reports) < max_cycles:
        report = task_cycle(orchestrator)
        reports.append(report)
        if report.errors:
            logger.warning(f"[PATROL] cycle {report.cycle} had {len(report.errors)} errors")
        if max_cycles is not None and len(reports) >= max_cycles:
            break
        time.sleep(interval)
    return reports
