"""
gt formula - Load and validate workflow templates.
"""

from pathlib import Path

from gastown.formulas.engine import validate_formula
from gastown.formulas.loader import load_file
from gastown.lib.constants import FORMULA_SUFFIX
from gastown.lib.errors import ValidationError
from gastown.town import Town


def _formula_paths(args, town: Town) -> list[Path]:
    if args.paths:
        return [Path(p) for p in args.paths]
    if not town.formulas_dir.is_dir():
        return []
    return sorted(town.formulas_dir.glob(f"*{FORMULA_SUFFIX}"))


def cmd_formula_load(args, town: Town) -> int:
    """Load formula files (default: every file in <town>/formulas)."""
    paths = _formula_paths(args, town)
    if not paths:
        print(f"No formula files found in {town.formulas_dir}")
        return 1

    failed = 0
    for path in paths:
        try:
            validated = town.engine.load(load_file(path))
        except ValidationError as e:
            print(f"ERROR: {path.name}: {e}")
            failed += 1
            continue
        print(f"Loaded {validated.name} ({len(validated.formula.steps)} steps) from {path.name}")
    return 1 if failed else 0


def cmd_formula_validate(args, town: Town) -> int:
    """Check formula files without registering them."""
    paths = _formula_paths(args, town)
    if not paths:
        print(f"No formula files found in {town.formulas_dir}")
        return 1

    failed = 0
    for path in paths:
        try:
            validated = validate_formula(load_file(path))
        except ValidationError as e:
            print(f"  FAIL  {path.name}: {e}")
            failed += 1
            continue
        print(f"  OK    {path.name}: {' -> '.join(validated.topo_order)}")
    return 1 if failed else 0


def cmd_formula_list(args, town: Town) -> int:
    formulas = town.engine.list_formulas()
    if not formulas:
        print("No formulas loaded. Load them with: gt formula load")
        return 0

    for formula in formulas:
        required = [name for name, spec in formula.variables.items() if spec.required]
        line = f"{formula.name:<24} {len(formula.steps)} steps"
        if required:
            line += f"  requires: {', '.join(required)}"
        print(line)
        if formula.description:
            print(f"    {formula.description}")
    return 0
