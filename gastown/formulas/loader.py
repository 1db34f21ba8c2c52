"""
Formula file loading.

Formulas live in <town>/formulas/<name>.formula.yaml:

    name: release
    description: Cut and publish a release
    variables:
      version: {required: true}
      channel: {default: stable}
    steps:
      - name: build
        template: "Build {{version}} for {{channel}}"
      - name: publish
        depends_on: [build]
        template: "Publish {{version}}"

Files are schema-checked here; graph checks (duplicates, unknown
dependencies, cycles) happen in FormulaEngine.load.
"""

import logging
from pathlib import Path

import yaml

from gastown.formulas.models import Formula
from gastown.lib.constants import FORMULA_SUFFIX
from gastown.lib.errors import SchemaValidationError
from gastown.lib.validate import validate

logger = logging.getLogger(__name__)


def parse_formula(data: dict) -> Formula:
    """Schema-validate a parsed definition and build the Formula."""
    validate(data, "formula")
    return Formula.from_dict(data)


def load_file(path: Path) -> Formula:
    """Read one formula file.

    Raises:
        SchemaValidationError: unreadable YAML or schema mismatch
    """
    try:
        data = yaml.safe_load(path.read_text())
    except (OSError, yaml.YAMLError) as e:
        raise SchemaValidationError("formula", f"Cannot read {path}: {e}") from None

    if not isinstance(data, dict):
        raise SchemaValidationError("formula", f"{path} must contain a mapping")
    return parse_formula(data)


def load_dir(formulas_dir: Path) -> list[Formula]:
    """Read every *.formula.yaml in formulas_dir, sorted by filename.

    Invalid files are logged and skipped so one bad formula does not hide
    the rest.
    """
    if not formulas_dir.is_dir():
        return []

    formulas = []
    for path in sorted(formulas_dir.glob(f"*{FORMULA_SUFFIX}")):
        try:
            formulas.append(load_file(path))
        except SchemaValidationError as e:
            logger.error(f"[FORMULA] Skipping {path.name}: {e}")
    return formulas
