"""
Formula engine: load, pour, advance.

    load(formula)                 -> validate DAG, register by name
    instantiate(name, bindings)   -> Molecule (records + convoy created)
    advance(molecule_id)          -> newly Ready steps, declaration order
    report_step_result(...)       -> Done / Failed with skip propagation

Molecule writes use optimistic concurrency only: every method re-reads the
molecule, changes it and writes it back with its revision. Concurrent
writers get ConflictError and are expected to retry.
"""

import dataclasses
import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

from gastown.adapters.protocols import RecordStore
from gastown.convoys.tracker import ConvoyTracker
from gastown.formulas.models import Formula, Molecule, MoleculeStatus, ValidatedFormula
from gastown.formulas.steps import StepState, check_transition
from gastown.lib.constants import PLACEHOLDER_RE, STEP_NAME_PATTERN
from gastown.lib.errors import (
    CyclicDependencyError,
    FormulaValidationError,
    GastownError,
    InfrastructureError,
    InvalidTransition,
    MissingVariableError,
    NotFoundError,
    UnboundPlaceholderError,
    UnknownDependencyError,
    ValidationError,
)
from gastown.lib.types import Convoy, RecordStatus
from gastown.state.store import StateStore

logger = logging.getLogger(__name__)


@dataclass
class StepReport:
    """Outcome of report_step_result."""
    molecule_id: str
    step: str
    state: StepState
    molecule_status: MoleculeStatus
    skipped: list[str] = field(default_factory=list)
    changed: bool = True


def new_molecule_id() -> str:
    return f"mol-{secrets.token_hex(4)}"


# === Validation ===

def _topological_order(formula: Formula) -> list[str]:
    """Kahn's algorithm. Ties go to the earliest declared step.

    Returns fewer names than the formula has steps when there is a cycle.
    """
    remaining = {s.name: set(s.depends_on) for s in formula.steps}
    order: list[str] = []
    while True:
        ready = [name for name in formula.step_names if name in remaining and not remaining[name]]
        if not ready:
            return order
        name = ready[0]
        order.append(name)
        del remaining[name]
        for deps in remaining.values():
            deps.discard(name)


def _find_cycle(formula: Formula, candidates: set[str]) -> list[str]:
    """Return one dependency cycle among candidates, first node repeated at the end."""
    declared = formula.step_names
    visiting: list[str] = []
    visited: set[str] = set()

    def visit(name: str) -> list[str] | None:
        if name in visiting:
            return visiting[visiting.index(name):] + [name]
        if name in visited:
            return None
        visiting.append(name)
        for dep in sorted(formula.step(name).depends_on & candidates, key=declared.index):
            cycle = visit(dep)
            if cycle:
                return cycle
        visiting.pop()
        visited.add(name)
        return None

    for name in declared:
        if name in candidates:
            cycle = visit(name)
            if cycle:
                return cycle
    return sorted(candidates, key=declared.index)


def validate_formula(formula: Formula) -> ValidatedFormula:
    """Check step names and the dependency graph.

    Raises:
        FormulaValidationError: no steps, bad or duplicate step names, bad record_var
        UnknownDependencyError: a step depends on an undeclared step
        CyclicDependencyError: the step graph has a cycle
    """
    if not formula.steps:
        raise FormulaValidationError(f"Formula '{formula.name}' has no steps")

    names: set[str] = set()
    for step in formula.steps:
        if not STEP_NAME_PATTERN.match(step.name):
            raise FormulaValidationError(f"Formula '{formula.name}': invalid step name '{step.name}'")
        if step.name in names:
            raise FormulaValidationError(f"Formula '{formula.name}' declares step '{step.name}' twice")
        names.add(step.name)

    for step in formula.steps:
        for dep in sorted(step.depends_on):
            if dep not in names:
                raise UnknownDependencyError(step.name, dep)
        if step.record_var and step.record_var not in formula.variables:
            raise FormulaValidationError(
                f"Step '{step.name}' uses record_var '{step.record_var}' which is not a declared variable"
            )

    order = _topological_order(formula)
    if len(order) < len(formula.steps):
        cycle = _find_cycle(formula, names - set(order))
        raise CyclicDependencyError(formula.name, cycle)

    return ValidatedFormula(formula=formula, topo_order=tuple(order))


def render_template(step_name: str, template: str, variables: dict[str, Any]) -> str:
    """Substitute {{name}} placeholders. Raises UnboundPlaceholderError."""
    def substitute(match):
        name = match.group(1)
        if name not in variables:
            raise UnboundPlaceholderError(step_name, name)
        return str(variables[name])

    return PLACEHOLDER_RE.sub(substitute, template)


def _definition(formula: Formula) -> dict:
    data = formula.to_dict()
    data.pop("revision", None)
    return data


def _pins_formula(molecule: Molecule) -> bool:
    if molecule.status is MoleculeStatus.RUNNING:
        return True
    if molecule.status is MoleculeStatus.CANCELLED:
        return False
    return bool(molecule.steps_in(StepState.FAILED, StepState.SKIPPED))


# === Engine ===

class FormulaEngine:
    def __init__(
        self,
        store: StateStore,
        records: RecordStore,
        convoys: ConvoyTracker,
        skip_satisfies_deps: bool = False,
        default_step_timeout: float = 0.0,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.store = store
        self.records = records
        self.convoys = convoys
        self.skip_satisfies_deps = skip_satisfies_deps
        self.default_step_timeout = default_step_timeout
        self._clock = clock
        self._formulas: dict[str, ValidatedFormula] = {}

        for formula in store.list(Formula.KIND):
            self._register(formula)

    # === Formulas ===

    def _register(self, formula: Formula) -> ValidatedFormula | None:
        try:
            validated = validate_formula(formula)
        except FormulaValidationError as e:
            logger.error(f"[FORMULA] Ignoring stored formula {formula.name}: {e}")
            return None
        self._formulas[formula.name] = validated
        return validated

    def load(self, formula: Formula) -> ValidatedFormula:
        """Validate and register a formula.

        Reloading an identical definition is a no-op. A changed definition
        replaces the old one unless a molecule poured from it can still
        move: one that is running, or one holding a Failed or Skipped step
        that retry_step could revive.
        """
        validate_formula(formula)

        existing = self.store.get(Formula.KIND, formula.name)
        if existing is None:
            saved = self.store.insert(formula)
            logger.info(f"[FORMULA] {formula.name}: loaded ({len(formula.steps)} steps)")
        elif _definition(existing) != _definition(formula):
            in_use = [m.id for m in self.list_molecules() if m.formula_name == formula.name and _pins_formula(m)]
            if in_use:
                raise FormulaValidationError(
                    f"Formula '{formula.name}' is still used by molecules: {', '.join(in_use)}"
                )
            saved = self.store.update(dataclasses.replace(formula, revision=existing.revision))
            logger.info(f"[FORMULA] {formula.name}: replaced ({len(formula.steps)} steps)")
        else:
            saved = existing

        return self._register(saved)

    def get_formula(self, name: str) -> Formula:
        return self._validated(name).formula

    def list_formulas(self) -> list[Formula]:
        names = {f.name for f in self.store.list(Formula.KIND)} | set(self._formulas)
        found = (self._lookup(name) for name in sorted(names))
        return [validated.formula for validated in found if validated is not None]

    def _lookup(self, name: str) -> ValidatedFormula | None:
        """Registered formula, re-validated when the stored revision moved on."""
        cached = self._formulas.get(name)
        stored = self.store.get(Formula.KIND, name)
        if stored is not None and (cached is None or cached.formula.revision != stored.revision):
            return self._register(stored)
        return cached

    def _validated(self, name: str) -> ValidatedFormula:
        validated = self._lookup(name)
        if validated is None:
            raise NotFoundError("Formula", name)
        return validated

    def _formula_for(self, molecule: Molecule) -> ValidatedFormula:
        """The registered formula, provided its steps still match the molecule's."""
        validated = self._validated(molecule.formula_name)
        if set(validated.formula.step_names) != set(molecule.step_states):
            raise FormulaValidationError(
                f"Molecule {molecule.id} was poured from an older definition of "
                f"formula '{molecule.formula_name}'"
            )
        return validated

    # === Molecules ===

    def get_molecule(self, molecule_id: str) -> Molecule:
        return self.store.require(Molecule.KIND, molecule_id)

    def list_molecules(self, live_only: bool = False) -> list[Molecule]:
        molecules = self.store.list(Molecule.KIND)
        if live_only:
            molecules = [m for m in molecules if m.status.is_live]
        return molecules

    def ready_steps(self, molecule: Molecule) -> list[str]:
        """Ready steps in declaration order."""
        formula = self._validated(molecule.formula_name).formula
        return [name for name in formula.step_names if molecule.step_states.get(name) is StepState.READY]

    def instantiate(self, formula_name: str, bindings: dict[str, Any], rig_id: str | None = None) -> Molecule:
        """Pour a formula into a new Molecule.

        Every check runs before the first record is created, so a rejected
        pour leaves nothing behind. If the record store or state store fails
        partway, the records created so far are closed and the convoy is
        dropped before the error propagates.

        Raises:
            NotFoundError: formula not loaded
            MissingVariableError: required variable without binding or default
            UnboundPlaceholderError: template references an unknown variable
            ValidationError: a record_var names a record the store does not have
        """
        formula = self._validated(formula_name).formula

        merged = {name: spec.default for name, spec in formula.variables.items() if spec.default is not None}
        merged.update(bindings)

        for name, spec in formula.variables.items():
            if spec.required and name not in merged:
                raise MissingVariableError(name)

        rendered = {}
        titles = {}
        for step in formula.steps:
            rendered[step.name] = render_template(step.name, step.template, merged)
            titles[step.name] = render_template(step.name, step.title, merged) if step.title else ""

        for step in formula.steps:
            if not step.record_var:
                continue
            if step.record_var not in merged:
                raise MissingVariableError(step.record_var)
            record_id = str(merged[step.record_var])
            if self.records.get(record_id) is None:
                raise ValidationError(f"Step '{step.name}': record '{record_id}' not found")

        molecule_id = new_molecule_id()
        declared = formula.step_names
        step_records: dict[str, str] = {}
        created: list[str] = []
        convoy = None
        try:
            for step in formula.steps:
                if step.record_var:
                    step_records[step.name] = str(merged[step.record_var])
                else:
                    title = titles[step.name] or f"{formula.name}/{step.name}"
                    record_id = self.records.create(f"{title} [{molecule_id}]", rendered[step.name])
                    created.append(record_id)
                    step_records[step.name] = record_id

            for step in formula.steps:
                for dep in sorted(step.depends_on, key=declared.index):
                    self.records.add_dependency(step_records[step.name], step_records[dep])

            convoy = self.convoys.create(f"{formula.name} {molecule_id}", [step_records[n] for n in declared])

            now = self._clock()
            molecule = self.store.insert(Molecule(
                id=molecule_id,
                formula_name=formula.name,
                convoy_id=convoy.id,
                bound_variables=merged,
                step_states={name: StepState.PENDING for name in declared},
                step_records=step_records,
                rendered=rendered,
                rig_id=rig_id,
                created_at=now,
                updated_at=now,
            ))
        except GastownError:
            self._discard_pour(molecule_id, created, convoy)
            raise

        logger.info(f"[MOLECULE] {molecule_id}: poured from {formula.name} ({len(declared)} steps, convoy {convoy.id})")
        return molecule

    def _discard_pour(self, molecule_id: str, created: list[str], convoy: Convoy | None) -> None:
        """Undo a pour that failed midway: close the records it created, drop its convoy."""
        logger.warning(f"[MOLECULE] {molecule_id}: pour failed, closing {len(created)} created records")
        if convoy is not None:
            self.store.delete(Convoy.KIND, convoy.id)
        for record_id in created:
            try:
                self.records.update_status(record_id, RecordStatus.DONE)
            except InfrastructureError as e:
                logger.error(f"[MOLECULE] {molecule_id}: could not close orphan record {record_id}: {e}")

    def _satisfied(self, state: StepState) -> bool:
        return state is StepState.DONE or (self.skip_satisfies_deps and state is StepState.SKIPPED)

    def _unsatisfiable(self, state: StepState) -> bool:
        return state is StepState.FAILED or (state is StepState.SKIPPED and not self.skip_satisfies_deps)

    def _dependents(self, validated: ValidatedFormula, step: str, direct: bool = False) -> list[str]:
        """Dependents of step (transitive unless direct), in declaration order."""
        formula = validated.formula
        if direct:
            return [s.name for s in formula.steps if step in s.depends_on]
        found = {step}
        for name in validated.topo_order:
            if formula.step(name).depends_on & found:
                found.add(name)
        found.discard(step)
        return [name for name in formula.step_names if name in found]

    def _settle(self, molecule: Molecule, formula: Formula) -> bool:
        """Set the final status once every step is terminal. True if it changed."""
        if molecule.status is not MoleculeStatus.RUNNING:
            return False
        if not all(state.is_terminal for state in molecule.step_states.values()):
            return False
        hard_failures = [
            s.name for s in formula.steps
            if molecule.step_states[s.name] is StepState.FAILED and not s.continue_on_failure
        ]
        molecule.status = MoleculeStatus.FAILED if hard_failures else MoleculeStatus.DONE
        logger.info(f"[MOLECULE] {molecule.id}: {molecule.status.value}")
        return True

    def _save(self, molecule: Molecule) -> Molecule:
        molecule.updated_at = self._clock()
        return self.store.update(molecule)

    def advance(self, molecule_id: str) -> list[str]:
        """Promote Pending steps whose dependencies are satisfied.

        Returns the newly Ready steps in declaration order. Writes nothing
        when nothing changed.
        """
        molecule = self.get_molecule(molecule_id)
        if not molecule.status.is_live:
            return []
        formula = self._formula_for(molecule).formula
        states = molecule.step_states

        ready = []
        skipped = []
        for step in formula.steps:
            if states[step.name] is not StepState.PENDING:
                continue
            dep_states = [states[dep] for dep in step.depends_on]
            if any(self._unsatisfiable(s) for s in dep_states):
                states[step.name] = StepState.SKIPPED
                skipped.append(step.name)
            elif all(self._satisfied(s) for s in dep_states):
                states[step.name] = StepState.READY
                ready.append(step.name)

        settled = self._settle(molecule, formula)
        if ready or skipped or settled:
            self._save(molecule)
            if ready:
                logger.info(f"[MOLECULE] {molecule_id}: ready {', '.join(ready)}")
            if skipped:
                logger.info(f"[MOLECULE] {molecule_id}: skipped {', '.join(skipped)} (failed dependencies)")
        return ready

    def mark_running(self, molecule_id: str, step: str) -> Molecule:
        molecule = self.get_molecule(molecule_id)
        if not molecule.status.is_live:
            raise InvalidTransition(molecule.status.value, f"start step {step}", molecule_id)
        current = self._step_state(molecule, step)
        check_transition(step, current, StepState.RUNNING, molecule_id)
        molecule.step_states[step] = StepState.RUNNING
        molecule.step_started_at[step] = self._clock()
        return self._save(molecule)

    def _step_state(self, molecule: Molecule, step: str) -> StepState:
        state = molecule.step_states.get(step)
        if state is None:
            raise NotFoundError("Step", f"{molecule.id}/{step}")
        return state

    def report_step_result(self, molecule_id: str, step: str, outcome: StepState) -> StepReport:
        """Record Done or Failed for a Running step.

        A Failed step fails the molecule and skips every non-terminal step,
        unless the step has continue_on_failure, in which case only its
        transitive dependents are skipped. Repeating the current outcome is a
        no-op.
        """
        if outcome not in (StepState.DONE, StepState.FAILED):
            raise ValueError(f"Step outcome must be done or failed, got {outcome.value}")

        molecule = self.get_molecule(molecule_id)
        validated = self._formula_for(molecule)
        formula = validated.formula
        current = self._step_state(molecule, step)

        if current is outcome:
            return StepReport(molecule_id, step, current, molecule.status, changed=False)
        check_transition(step, current, outcome, molecule_id)

        states = molecule.step_states
        states[step] = outcome
        molecule.step_started_at.pop(step, None)

        skipped = []
        if outcome is StepState.FAILED:
            if formula.step(step).continue_on_failure:
                targets = self._dependents(validated, step, direct=self.skip_satisfies_deps)
            else:
                targets = formula.step_names
                molecule.status = MoleculeStatus.FAILED
            for name in targets:
                if not states[name].is_terminal:
                    states[name] = StepState.SKIPPED
                    molecule.step_started_at.pop(name, None)
                    skipped.append(name)
            logger.warning(
                f"[MOLECULE] {molecule_id}: step {step} failed"
                + (f", skipped {', '.join(skipped)}" if skipped else "")
            )
        else:
            logger.info(f"[MOLECULE] {molecule_id}: step {step} done")

        self._settle(molecule, formula)
        molecule = self._save(molecule)
        return StepReport(molecule_id, step, outcome, molecule.status, skipped=skipped)

    def step_timeout(self, formula: Formula, step: str) -> float:
        """Effective timeout in seconds for a step. 0 means none."""
        spec = formula.step(step)
        if spec.timeout is not None:
            return spec.timeout
        if formula.step_timeout is not None:
            return formula.step_timeout
        return self.default_step_timeout

    def check_timeouts(self, molecule_id: str, now: datetime | None = None) -> list[str]:
        """Fail Running steps that exceeded their timeout. Returns the failed steps."""
        now = now or self._clock()
        molecule = self.get_molecule(molecule_id)
        if not molecule.status.is_live:
            return []
        formula = self._formula_for(molecule).formula

        expired = []
        for step in molecule.steps_in(StepState.RUNNING):
            timeout = self.step_timeout(formula, step)
            started = molecule.step_started_at.get(step)
            if timeout and started and (now - started).total_seconds() > timeout:
                expired.append(step)

        failed = []
        for step in expired:
            # An earlier timeout in this loop may already have skipped it
            if self._step_state(self.get_molecule(molecule_id), step) is not StepState.RUNNING:
                continue
            logger.warning(f"[MOLECULE] {molecule_id}: step {step} timed out")
            self.report_step_result(molecule_id, step, StepState.FAILED)
            failed.append(step)
        return failed

    def cancel(self, molecule_id: str) -> list[str]:
        """Skip every non-terminal step and mark the molecule Cancelled.

        Returns the skipped steps. Cancelling twice is a no-op.
        """
        molecule = self.get_molecule(molecule_id)
        if molecule.status is MoleculeStatus.CANCELLED:
            return []
        if molecule.status is not MoleculeStatus.RUNNING:
            raise InvalidTransition(molecule.status.value, "cancel", molecule_id)

        skipped = []
        for name, state in molecule.step_states.items():
            if not state.is_terminal:
                molecule.step_states[name] = StepState.SKIPPED
                skipped.append(name)
        molecule.step_started_at.clear()
        molecule.status = MoleculeStatus.CANCELLED
        self._save(molecule)
        logger.info(f"[MOLECULE] {molecule_id}: cancelled ({len(skipped)} steps skipped)")
        return skipped

    def retry_step(self, molecule_id: str, step: str) -> Molecule:
        """Send a Failed or Skipped step back to Ready.

        Its skipped dependents return to Pending. When the whole molecule had
        failed, every other skipped step returns to Pending as well; advance
        re-skips any whose dependencies still cannot succeed. The step's
        record is reopened.
        """
        molecule = self.get_molecule(molecule_id)
        if molecule.status is MoleculeStatus.CANCELLED:
            raise InvalidTransition(molecule.status.value, f"retry step {step}", molecule_id)
        validated = self._formula_for(molecule)
        formula = validated.formula
        current = self._step_state(molecule, step)
        check_transition(step, current, StepState.READY, molecule_id, retry=True)

        states = molecule.step_states
        unsatisfied = sorted(d for d in formula.step(step).depends_on if not self._satisfied(states[d]))
        if unsatisfied:
            raise InvalidTransition(
                current.value,
                f"retry (dependencies not satisfied: {', '.join(unsatisfied)})",
                f"{molecule_id}/{step}",
            )

        reset = set(self._dependents(validated, step))
        if molecule.status is MoleculeStatus.FAILED:
            reset = set(formula.step_names)
        states[step] = StepState.READY
        for name in formula.step_names:
            if name != step and name in reset and states[name] is StepState.SKIPPED:
                states[name] = StepState.PENDING
        molecule.status = MoleculeStatus.RUNNING

        # Reopen only once every check above has passed
        self.records.update_status(molecule.step_records[step], RecordStatus.OPEN)
        molecule = self._save(molecule)
        logger.info(f"[MOLECULE] {molecule_id}: retrying step {step}")
        return molecule
