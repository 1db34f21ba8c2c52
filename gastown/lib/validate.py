"""
Schema validation for Gas Town.

Every document crossing a boundary is checked against a bundled schema in
gastown/schemas/<kind>.schema.json:

- formula definitions, when a formula file is loaded
- every entity the state store writes or reloads

Validators are compiled once per schema. Errors report the most relevant
failure and its JSON path.
"""

import json
from functools import lru_cache
from pathlib import Path
from typing import Any

import jsonschema
from jsonschema.exceptions import best_match

from .errors import SchemaValidationError

SCHEMAS_DIR = Path(__file__).parent.parent / "schemas"


@lru_cache(maxsize=None)
def _validator(schema_name: str) -> jsonschema.protocols.Validator:
    schema_path = SCHEMAS_DIR / f"{schema_name}.schema.json"
    if not schema_path.exists():
        raise SchemaValidationError(schema_name, f"No schema bundled at {schema_path}")
    schema = json.loads(schema_path.read_text())
    cls = jsonschema.validators.validator_for(schema)
    cls.check_schema(schema)
    return cls(schema)


def validate(data: Any, schema_name: str) -> None:
    """Raise SchemaValidationError unless data matches the named schema."""
    error = best_match(_validator(schema_name).iter_errors(data))
    if error is None:
        return
    path = ".".join(str(p) for p in error.absolute_path) or "(root)"
    raise SchemaValidationError(schema_name, error.message, path)


def validate_file(filepath: Path, schema_name: str) -> dict:
    """Read a JSON document and validate it. Returns the parsed data."""
    try:
        data = json.loads(filepath.read_text())
    except FileNotFoundError:
        raise SchemaValidationError(schema_name, f"{filepath} does not exist") from None
    except (OSError, json.JSONDecodeError) as e:
        raise SchemaValidationError(schema_name, f"Cannot parse {filepath}: {e}") from None

    validate(data, schema_name)
    return data


def validate_before_write(data: dict, schema_name: str, filepath: Path) -> None:
    """Refuse to persist an entity that would not reload."""
    try:
        validate(data, schema_name)
    except SchemaValidationError as e:
        raise SchemaValidationError(schema_name, f"Not writing {filepath.name}: {e}", e.path) from None
