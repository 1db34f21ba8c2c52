"""
Error taxonomy for Gas Town.

Four families, each handled differently by callers:
- ValidationError: bad formula or bad pour input. Nothing is applied.
- StateError: a lifecycle/assignment precondition failed. Entity unchanged.
- ConflictError: stale revision on write. Re-read and retry.
- InfrastructureError: worktree, record store or agent runtime failed.
  Degrades the affected entity, never aborts the patrol loop.
"""


class GastownError(Exception):
    """Base class for all orchestration errors."""


# === Validation ===

class ValidationError(GastownError):
    """Input failed validation."""


class SchemaValidationError(ValidationError):
    """Data did not match its JSON schema."""

    def __init__(self, schema_name: str, message: str, path: str | None = None):
        self.schema_name = schema_name
        self.path = path
        super().__init__(f"[{schema_name}] {message}" + (f" at {path}" if path else ""))


class FormulaValidationError(ValidationError):
    """Formula definition is malformed (duplicate steps, bad names)."""


class CyclicDependencyError(FormulaValidationError):
    """Formula step graph contains a cycle."""

    def __init__(self, formula: str, cycle_path: list[str]):
        self.formula = formula
        self.cycle_path = cycle_path
        super().__init__(f"Formula '{formula}' has a dependency cycle: {' -> '.join(cycle_path)}")


class UnknownDependencyError(FormulaValidationError):
    """A step depends on a step that is not declared."""

    def __init__(self, step: str, missing: str):
        self.step = step
        self.missing = missing
        super().__init__(f"Step '{step}' depends on undeclared step '{missing}'")


class MissingVariableError(ValidationError):
    """A required variable has neither a binding nor a default."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Required variable '{name}' is not bound and has no default")


class UnboundPlaceholderError(ValidationError):
    """A step template references a variable outside the merged bindings."""

    def __init__(self, step: str, name: str):
        self.step = step
        self.name = name
        super().__init__(f"Step '{step}' references unbound placeholder '{{{{{name}}}}}'")


# === State ===

class StateError(GastownError):
    """A lifecycle or assignment precondition was violated."""


class NotFoundError(StateError):
    """Referenced entity does not exist."""

    def __init__(self, kind: str, entity_id: str):
        self.kind = kind
        self.entity_id = entity_id
        super().__init__(f"{kind} '{entity_id}' not found")


class InvalidTransition(StateError):
    """Raised when attempting an invalid state transition."""

    def __init__(self, from_state: str, action: str, entity_id: str = ""):
        self.from_state = from_state
        self.action = action
        self.entity_id = entity_id
        super().__init__(
            f"Invalid transition: cannot {action} from {from_state}"
            + (f" ({entity_id})" if entity_id else "")
        )


class CapacityExceeded(StateError):
    """Per-rig hook limit reached."""

    def __init__(self, rig_id: str, limit: int):
        self.rig_id = rig_id
        self.limit = limit
        super().__init__(f"Rig '{rig_id}' is at its hook limit ({limit})")


class AlreadyAssignedError(StateError):
    """Record already has a live assignment to a different hook."""

    def __init__(self, record_id: str, existing_hook: str):
        self.record_id = record_id
        self.existing_hook = existing_hook
        super().__init__(f"Record '{record_id}' is already slung to hook '{existing_hook}'")


# === Concurrency ===

class ConflictError(GastownError):
    """Write targeted a stale revision."""

    def __init__(self, kind: str, entity_id: str, expected: int | None, actual: int | None):
        self.kind = kind
        self.entity_id = entity_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"{kind} '{entity_id}' changed underneath you "
            f"(expected revision {expected}, found {actual})"
        )


# === Infrastructure ===

class InfrastructureError(GastownError):
    """An external collaborator failed."""
