"""Patrol loop for a town.

One run_cycle() call is one linearized pass:

    1. drain agent exits          (exit 0 -> Done, anything else -> Failed)
    2. tend each live molecule    (record completions, timeouts, advance,
                                   sling Ready steps, release finished hooks)
    3. patrol hooks               (inspect, mark Errored, bounded auto-repair)
    4. recompute convoy progress

A failure inside one molecule is logged and recorded in the CycleReport;
the other molecules still get their pass. Agent processes are watched from
a bounded thread pool that pushes exits onto a queue drained at the start
of the next cycle.
"""

import logging
import queue
import time
from concurrent.futures import Future, ThreadPoolExecutor, as_completed, wait
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any, Callable

from gastown import notifications
from gastown.adapters.protocols import AgentRuntime, RecordStore
from gastown.convoys.tracker import ConvoyTracker
from gastown.dispatch.dispatcher import Dispatcher
from gastown.formulas.engine import FormulaEngine, StepReport
from gastown.formulas.models import Molecule, MoleculeStatus
from gastown.formulas.steps import StepState
from gastown.hooks.manager import HookManager
from gastown.lib.agents_config import AgentRole, AgentsConfig, build_command
from gastown.lib.config import TownConfig
from gastown.lib.errors import (
    AlreadyAssignedError,
    CapacityExceeded,
    ConflictError,
    GastownError,
    InfrastructureError,
    StateError,
)
from gastown.lib.retry import backoff_delay, retry_on_conflict
from gastown.lib.types import ConvoyProgress, HookState, RecordStatus

logger = logging.getLogger(__name__)


def agent_id_for(record_id: str) -> str:
    """Polecat id for a record. Stable, so re-slinging the same record is idempotent."""
    return f"{AgentRole.POLECAT.value}-{record_id}"


@dataclass
class AgentExit:
    record_id: str
    hook_id: str
    molecule_id: str
    step: str
    exit_code: int | None = None
    attempts: int = 0


@dataclass
class RunningAgent:
    handle: Any
    hook_id: str
    future: Future | None = None


@dataclass
class CycleReport:
    """What one patrol cycle did."""
    cycle: int
    started_at: datetime
    finished_at: datetime | None = None
    dispatched: list[str] = field(default_factory=list)   # "mol/step -> hook"
    deferred: list[str] = field(default_factory=list)     # Ready but rig at capacity
    completed: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    timed_out: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    finished_molecules: dict[str, str] = field(default_factory=dict)
    hooks_errored: list[str] = field(default_factory=list)
    hooks_repaired: list[str] = field(default_factory=list)
    needs_repair: list[str] = field(default_factory=list)
    convoy_progress: dict[str, ConvoyProgress] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    def summary(self) -> str:
        parts = [f"cycle {self.cycle}"]
        for label, items in (
            ("dispatched", self.dispatched),
            ("deferred", self.deferred),
            ("done", self.completed),
            ("failed", self.failed),
            ("timed out", self.timed_out),
            ("errored hooks", self.hooks_errored),
            ("repaired hooks", self.hooks_repaired),
            ("needs repair", self.needs_repair),
            ("errors", self.errors),
        ):
            if items:
                parts.append(f"{label}={len(items)}")
        return ", ".join(parts)


class Orchestrator:
    def __init__(
        self,
        hooks: HookManager,
        convoys: ConvoyTracker,
        engine: FormulaEngine,
        dispatcher: Dispatcher,
        records: RecordStore,
        config: TownConfig | None = None,
        runtime: AgentRuntime | None = None,
        agents_config: AgentsConfig | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.hooks = hooks
        self.convoys = convoys
        self.engine = engine
        self.dispatcher = dispatcher
        self.records = records
        self.config = config or TownConfig()
        self.runtime = runtime
        self.agents_config = agents_config or AgentsConfig()
        self._clock = clock

        self._executor = ThreadPoolExecutor(
            max_workers=self.config.max_parallel_agents, thread_name_prefix="gt-agent"
        )
        self._exits: queue.Queue[AgentExit] = queue.Queue()
        self._running: dict[str, RunningAgent] = {}  # record_id -> agent
        self._repair_failures: dict[str, int] = {}
        self._next_repair_at: dict[str, datetime] = {}
        self._cycle = 0

    def _retry(self, fn):
        return retry_on_conflict(fn, self.config.conflict_retries)

    # === Cycle ===

    def run_cycle(self) -> CycleReport:
        self._cycle += 1
        report = CycleReport(cycle=self._cycle, started_at=self._clock())

        touched = self._drain_exits(report)

        molecule_ids = [m.id for m in self.engine.list_molecules(live_only=True)]
        for molecule_id in touched:
            if molecule_id not in molecule_ids:
                molecule_ids.append(molecule_id)

        for molecule_id in molecule_ids:
            try:
                self._tend_molecule(molecule_id, report)
            except GastownError as e:
                logger.error(f"[PATROL] {molecule_id}: {e}")
                report.errors.append(f"{molecule_id}: {e}")
            except Exception as e:
                logger.exception(f"[PATROL] {molecule_id}: unexpected {type(e).__name__}")
                report.errors.append(f"{molecule_id}: {type(e).__name__}: {e}")

        self._patrol_hooks(report)

        for convoy in self.convoys.list_convoys():
            try:
                report.convoy_progress[convoy.id] = self.convoys.progress(convoy.id)
            except InfrastructureError as e:
                logger.warning(f"[PATROL] convoy {convoy.id}: {e}")
                report.errors.append(f"{convoy.id}: {e}")

        report.finished_at = self._clock()
        logger.info(f"[PATROL] {report.summary()}")
        return report

    def _drain_exits(self, report: CycleReport) -> list[str]:
        """Apply queued agent exits. Exits hit by an outage go back on the queue."""
        touched = []
        deferred = []
        limit = self.config.max_infra_retries
        while True:
            try:
                agent_exit = self._exits.get_nowait()
            except queue.Empty:
                break

            self._running.pop(agent_exit.record_id, None)
            label = f"{agent_exit.molecule_id}/{agent_exit.step}"
            try:
                self._apply_exit(agent_exit, report)
            except (InfrastructureError, ConflictError) as e:
                attempts = agent_exit.attempts + 1
                if attempts < limit:
                    logger.warning(f"[PATROL] {label}: exit not applied ({e}), retry {attempts}/{limit - 1} next cycle")
                    deferred.append(replace(agent_exit, attempts=attempts))
                else:
                    logger.error(f"[PATROL] {label}: exit {agent_exit.exit_code} dropped after {attempts} attempts: {e}")
                report.errors.append(f"{label}: {e}")
            except GastownError as e:
                logger.error(f"[PATROL] {label}: {e}")
                report.errors.append(f"{label}: {e}")
            touched.append(agent_exit.molecule_id)

        for agent_exit in deferred:
            self._exits.put(agent_exit)
        return touched

    def _apply_exit(self, agent_exit: AgentExit, report: CycleReport) -> None:
        label = f"{agent_exit.molecule_id}/{agent_exit.step}"
        molecule = self.engine.get_molecule(agent_exit.molecule_id)
        if molecule.step_states.get(agent_exit.step) is not StepState.RUNNING:
            logger.debug(f"[PATROL] {label}: ignoring exit {agent_exit.exit_code}, step no longer running")
            return

        if agent_exit.exit_code == 0:
            outcome = StepState.DONE
            try:
                self.records.update_status(agent_exit.record_id, RecordStatus.DONE)
            except InfrastructureError as e:
                # Last attempt: the step result must not wait on the record store
                if agent_exit.attempts + 1 < self.config.max_infra_retries:
                    raise
                logger.error(f"[PATROL] {label}: record {agent_exit.record_id} left open ({e})")
        else:
            logger.warning(f"[PATROL] {label}: agent exited {agent_exit.exit_code}")
            outcome = StepState.FAILED

        self._note(report, self._retry(
            lambda: self.engine.report_step_result(agent_exit.molecule_id, agent_exit.step, outcome)
        ))

    def _note(self, report: CycleReport, step_report: StepReport) -> None:
        if not step_report.changed:
            return
        label = f"{step_report.molecule_id}/{step_report.step}"
        if step_report.state is StepState.DONE:
            report.completed.append(label)
        else:
            report.failed.append(label)
        report.skipped.extend(f"{step_report.molecule_id}/{s}" for s in step_report.skipped)

    def _tend_molecule(self, molecule_id: str, report: CycleReport) -> None:
        molecule = self.engine.get_molecule(molecule_id)

        if molecule.status.is_live:
            for step in molecule.steps_in(StepState.READY, StepState.RUNNING):
                record = self.records.get(molecule.step_records[step])
                if record is None or record.status is not RecordStatus.DONE:
                    continue
                if molecule.step_states[step] is StepState.READY:
                    # Closed outside the patrol before it was ever slung
                    self._retry(lambda s=step: self.engine.mark_running(molecule_id, s))
                self._note(report, self._retry(
                    lambda s=step: self.engine.report_step_result(molecule_id, s, StepState.DONE)
                ))

            now = self._clock()
            timed_out = self._retry(lambda: self.engine.check_timeouts(molecule_id, now))
            report.timed_out.extend(f"{molecule_id}/{s}" for s in timed_out)
            report.failed.extend(f"{molecule_id}/{s}" for s in timed_out)

            self._retry(lambda: self.engine.advance(molecule_id))

            molecule = self.engine.get_molecule(molecule_id)
            if molecule.status.is_live:
                for step in self.engine.ready_steps(molecule):
                    self._dispatch(molecule, step, report)

        molecule = self.engine.get_molecule(molecule_id)
        self._release_finished(molecule)

        if not molecule.status.is_live:
            report.finished_molecules[molecule_id] = molecule.status.value
            self._notify_finished(molecule)

    def _dispatch(self, molecule: Molecule, step: str, report: CycleReport) -> None:
        if molecule.rig_id is None:
            logger.debug(f"[PATROL] {molecule.id}/{step}: ready, molecule has no rig")
            return

        record_id = molecule.step_records[step]
        agent_id = agent_id_for(record_id)
        try:
            assignment = self.dispatcher.sling(record_id, molecule.rig_id, agent_id, molecule.id, step)
        except CapacityExceeded as e:
            logger.info(f"[PATROL] {molecule.id}/{step}: deferred ({e})")
            report.deferred.append(f"{molecule.id}/{step}")
            return
        except AlreadyAssignedError as e:
            logger.error(f"[PATROL] {molecule.id}/{step}: {e}")
            report.errors.append(f"{molecule.id}/{step}: {e}")
            return

        self._retry(lambda: self.engine.mark_running(molecule.id, step))
        try:
            self.records.update_status(record_id, RecordStatus.IN_PROGRESS)
        except InfrastructureError as e:
            logger.warning(f"[PATROL] {record_id}: could not mark in progress: {e}")

        report.dispatched.append(f"{molecule.id}/{step} -> {assignment.hook_id}")

        if self.runtime is not None:
            self._start_agent(molecule, step, record_id, assignment.hook_id, report)

    def _start_agent(self, molecule: Molecule, step: str, record_id: str, hook_id: str, report: CycleReport) -> None:
        hook = self.hooks.get(hook_id)
        context = {
            "prompt": molecule.rendered.get(step, ""),
            "worktree": hook.worktree_ref or "",
            "hook_id": hook_id,
            "record_id": record_id,
        }
        try:
            spec = build_command(self.agents_config, AgentRole.POLECAT.value, context)
            handle = self.runtime.start(hook_id, spec)
        except (ValueError, InfrastructureError) as e:
            logger.error(f"[PATROL] {molecule.id}/{step}: agent start failed: {e}")
            report.errors.append(f"{molecule.id}/{step}: agent start failed: {e}")
            self._note(report, self._retry(
                lambda: self.engine.report_step_result(molecule.id, step, StepState.FAILED)
            ))
            return

        agent = RunningAgent(handle=handle, hook_id=hook_id)
        self._running[record_id] = agent
        agent.future = self._executor.submit(
            self._monitor, handle, AgentExit(record_id=record_id, hook_id=hook_id, molecule_id=molecule.id, step=step)
        )

    def _monitor(self, handle: Any, agent_exit: AgentExit) -> None:
        try:
            code = self.runtime.wait(handle)
        except (OSError, InfrastructureError) as e:
            logger.warning(f"[AGENT] {agent_exit.hook_id}: wait failed: {e}")
            code = -1
        self._exits.put(replace(agent_exit, exit_code=code))

    def _release_finished(self, molecule: Molecule) -> list[str]:
        """Unsling records of terminal steps, stop their agents, release idle hooks."""
        released = []
        for step, state in molecule.step_states.items():
            if not state.is_terminal:
                continue
            record_id = molecule.step_records[step]

            agent = self._running.pop(record_id, None)
            if agent is not None and self.runtime is not None:
                self.runtime.stop(agent.handle)

            assignment = self.dispatcher.get(record_id)
            if assignment is None or assignment.molecule_id != molecule.id:
                continue
            self.dispatcher.unsling(record_id)
            if self._release_if_idle(assignment.hook_id):
                released.append(assignment.hook_id)
        return released

    def _release_if_idle(self, hook_id: str) -> bool:
        if self.dispatcher.assignments_for_hook(hook_id):
            return False
        try:
            hook = self.hooks.get(hook_id)
            if hook.state is HookState.ACTIVE:
                self.hooks.release(hook_id)
                return True
        except StateError as e:
            logger.warning(f"[PATROL] could not release {hook_id}: {e}")
        return False

    def _notify_finished(self, molecule: Molecule) -> None:
        if not self.config.notify:
            return
        if molecule.status is MoleculeStatus.DONE:
            notifications.notify_molecule_done(molecule.id, molecule.formula_name)
        elif molecule.status is MoleculeStatus.FAILED:
            failed = molecule.steps_in(StepState.FAILED)
            notifications.notify_molecule_failed(molecule.id, failed[0] if failed else "unknown")

    # === Hooks ===

    def _patrol_hooks(self, report: CycleReport) -> None:
        live = self.hooks.list_hooks(states={HookState.ACTIVE, HookState.SUSPENDED})
        if live:
            workers = min(len(live), self.config.max_parallel_agents)
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="gt-inspect") as pool:
                futures = {pool.submit(self.hooks.check_health, hook.id): hook.id for hook in live}
                for future in as_completed(futures):
                    hook_id = futures[future]
                    try:
                        health = future.result()
                    except GastownError as e:
                        logger.error(f"[PATROL] hook {hook_id}: {e}")
                        report.errors.append(f"{hook_id}: {e}")
                        continue
                    if not health.ok:
                        report.hooks_errored.append(hook_id)

        now = self._clock()
        limit = self.config.max_infra_retries
        for hook in self.hooks.list_hooks(states={HookState.ERRORED}):
            failures = self._repair_failures.get(hook.id, 0)
            if failures >= limit:
                report.needs_repair.append(hook.id)
                continue
            not_before = self._next_repair_at.get(hook.id)
            if not_before is not None and now < not_before:
                continue

            try:
                repaired = self.hooks.repair(hook.id)
            except StateError as e:
                logger.warning(f"[PATROL] hook {hook.id}: {e}")
                continue

            if repaired:
                self._repair_failures.pop(hook.id, None)
                self._next_repair_at.pop(hook.id, None)
                report.hooks_repaired.append(hook.id)
                # Repair reactivates; a hook with nothing slung goes back to the pool
                self._release_if_idle(hook.id)
                continue

            failures += 1
            self._repair_failures[hook.id] = failures
            delay = backoff_delay(failures, self.config.infra_backoff_seconds)
            self._next_repair_at[hook.id] = now + timedelta(seconds=delay)
            if failures >= limit:
                logger.error(f"[PATROL] hook {hook.id}: auto-repair gave up after {failures} attempts")
                report.needs_repair.append(hook.id)
                if self.config.notify:
                    notifications.notify_needs_repair(hook.id, hook.last_error or "worktree unhealthy")

    # === Operator actions ===

    def cancel_molecule(self, molecule_id: str) -> list[str]:
        """Cancel a molecule, stop its agents and release hooks it leaves idle.

        Hooks are released, never archived. Returns the skipped steps.
        """
        skipped = self._retry(lambda: self.engine.cancel(molecule_id))
        released = self._release_finished(self.engine.get_molecule(molecule_id))
        if released:
            logger.info(f"[PATROL] {molecule_id}: released {', '.join(released)}")
        return skipped

    def run_forever(self, interval: float | None = None, max_cycles: int | None = None) -> list[CycleReport]:
        """Run cycles until max_cycles (forever when None). Returns the reports."""
        interval = self.config.poll_interval if interval is None else interval
        reports = []
        while max_cycles is None or len(reports) < max_cycles:
            reports.append(self.run_cycle())
            if max_cycles is not None and len(reports) >= max_cycles:
                break
            time.sleep(interval)
        return reports

    def wait_for_agents(self, timeout: float | None = None) -> None:
        """Block until every running agent has exited (or timeout)."""
        futures = [a.future for a in self._running.values() if a.future is not None]
        if futures:
            wait(futures, timeout=timeout)

    def shutdown(self, stop_agents: bool = False) -> None:
        if stop_agents and self.runtime is not None:
            for agent in list(self._running.values()):
                self.runtime.stop(agent.handle)
        self._executor.shutdown(wait=stop_agents)
