"""
Formula and molecule data types.

A Formula is an immutable workflow template: named variables plus a DAG of
steps whose templates use {{name}} placeholders. A Molecule is one poured
execution of a formula.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, ClassVar

from gastown.formulas.steps import StepState
from gastown.lib.types import parse_ts, ts


@dataclass(frozen=True)
class VariableSpec:
    name: str
    required: bool = False
    default: Any = None
    description: str = ""

    def to_dict(self) -> dict:
        data: dict[str, Any] = {"required": self.required}
        if self.default is not None:
            data["default"] = self.default
        if self.description:
            data["description"] = self.description
        return data


@dataclass(frozen=True)
class Step:
    name: str
    template: str = ""
    depends_on: frozenset[str] = frozenset()
    title: str = ""
    continue_on_failure: bool = False
    timeout: float | None = None  # Seconds; None falls back to the formula/town default
    record_var: str | None = None  # Variable holding a pre-existing record id

    def to_dict(self) -> dict:
        data: dict[str, Any] = {"name": self.name, "template": self.template}
        if self.depends_on:
            data["depends_on"] = sorted(self.depends_on)
        if self.title:
            data["title"] = self.title
        if self.continue_on_failure:
            data["continue_on_failure"] = True
        if self.timeout is not None:
            data["timeout"] = self.timeout
        if self.record_var:
            data["record_var"] = self.record_var
        return data


@dataclass(frozen=True)
class Formula:
    """Workflow template. Step order is declaration order."""
    KIND: ClassVar[str] = "formula"

    name: str
    steps: tuple[Step, ...] = ()
    variables: dict[str, VariableSpec] = field(default_factory=dict)
    description: str = ""
    step_timeout: float | None = None
    revision: int = 0

    @property
    def id(self) -> str:
        return self.name

    def step(self, name: str) -> Step:
        for s in self.steps:
            if s.name == name:
                return s
        raise KeyError(name)

    @property
    def step_names(self) -> list[str]:
        return [s.name for s in self.steps]

    def to_dict(self) -> dict:
        data: dict[str, Any] = {
            "name": self.name,
            "variables": {name: spec.to_dict() for name, spec in self.variables.items()},
            "steps": [s.to_dict() for s in self.steps],
        }
        if self.description:
            data["description"] = self.description
        if self.step_timeout is not None:
            data["step_timeout"] = self.step_timeout
        if self.revision:
            data["revision"] = self.revision
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Formula":
        """Build from a schema-validated definition (YAML file or persisted state)."""
        variables = {
            name: VariableSpec(
                name=name,
                required=bool(spec.get("required", False)),
                default=spec.get("default"),
                description=spec.get("description", ""),
            )
            for name, spec in (data.get("variables") or {}).items()
        }
        steps = tuple(
            Step(
                name=s["name"],
                template=s.get("template", ""),
                depends_on=frozenset(s.get("depends_on", [])),
                title=s.get("title", ""),
                continue_on_failure=bool(s.get("continue_on_failure", False)),
                timeout=s.get("timeout"),
                record_var=s.get("record_var"),
            )
            for s in data.get("steps", [])
        )
        return cls(
            name=data["name"],
            steps=steps,
            variables=variables,
            description=data.get("description", ""),
            step_timeout=data.get("step_timeout"),
            revision=data.get("revision", 0),
        )


@dataclass(frozen=True)
class ValidatedFormula:
    """A formula that passed load-time checks, with a topological order."""
    formula: Formula
    topo_order: tuple[str, ...]

    @property
    def name(self) -> str:
        return self.formula.name


class MoleculeStatus(Enum):
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_live(self) -> bool:
        return self is MoleculeStatus.RUNNING


@dataclass
class Molecule:
    """One running instantiation of a formula."""
    KIND: ClassVar[str] = "molecule"

    id: str
    formula_name: str
    convoy_id: str
    bound_variables: dict[str, Any] = field(default_factory=dict)
    step_states: dict[str, StepState] = field(default_factory=dict)
    step_records: dict[str, str] = field(default_factory=dict)
    rendered: dict[str, str] = field(default_factory=dict)
    step_started_at: dict[str, datetime] = field(default_factory=dict)
    status: MoleculeStatus = MoleculeStatus.RUNNING
    rig_id: str | None = None
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)
    revision: int = 0

    def steps_in(self, *states: StepState) -> list[str]:
        """Step names currently in any of the given states, in insertion order."""
        return [name for name, state in self.step_states.items() if state in states]

    def step_for_record(self, record_id: str) -> str | None:
        for step, rid in self.step_records.items():
            if rid == record_id:
                return step
        return None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "formula_name": self.formula_name,
            "convoy_id": self.convoy_id,
            "bound_variables": dict(self.bound_variables),
            "step_states": {k: v.value for k, v in self.step_states.items()},
            "step_records": dict(self.step_records),
            "rendered": dict(self.rendered),
            "step_started_at": {k: ts(v) for k, v in self.step_started_at.items()},
            "status": self.status.value,
            "rig_id": self.rig_id,
            "created_at": ts(self.created_at),
            "updated_at": ts(self.updated_at),
            "revision": self.revision,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Molecule":
        return cls(
            id=data["id"],
            formula_name=data["formula_name"],
            convoy_id=data["convoy_id"],
            bound_variables=dict(data.get("bound_variables", {})),
            step_states={k: StepState(v) for k, v in data["step_states"].items()},
            step_records=dict(data.get("step_records", {})),
            rendered=dict(data.get("rendered", {})),
            step_started_at={k: parse_ts(v) for k, v in data.get("step_started_at", {}).items()},
            status=MoleculeStatus(data["status"]),
            rig_id=data.get("rig_id"),
            created_at=parse_ts(data["created_at"]),
            updated_at=parse_ts(data["updated_at"]),
            revision=data["revision"],
        )
