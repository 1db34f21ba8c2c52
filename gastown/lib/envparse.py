"""
Parser for town.env.

The file holds KEY=value lines. It is read as data, never sourced, and any
value carrying shell syntax is refused so the file stays safe to source.
"""

import re
from pathlib import Path

# Shell constructs refused anywhere in a value
SHELL_SYNTAX = re.compile(r"`|\$\(|\$\{|;|&&|\|")

KEY_PATTERN = re.compile(r'^[A-Z][A-Z0-9_]*$')
QUOTES = ('"', "'")

TRUE_VALUES = {"1", "true", "yes", "on"}
FALSE_VALUES = {"0", "false", "no", "off", ""}


def _unquote(value: str) -> str:
    if len(value) >= 2 and value[0] in QUOTES and value[-1] == value[0]:
        return value[1:-1]
    return value


def _parse_line(lineno: int, line: str) -> tuple[str, str]:
    key, sep, value = line.partition('=')
    if not sep:
        raise ValueError(f"Line {lineno}: expected KEY=value (no '=')")
    key = key.strip()
    if not KEY_PATTERN.match(key):
        raise ValueError(f"Line {lineno}: Invalid key '{key}'")
    value = _unquote(value.strip())
    if SHELL_SYNTAX.search(value):
        raise ValueError(f"Line {lineno}: Forbidden pattern in value of {key}")
    return key, value


def load_env(filepath: str | Path) -> dict[str, str]:
    """
    Read a town.env file into a dict. Blank lines and # comments are skipped.

    Raises:
        FileNotFoundError: the file is absent
        ValueError: a line is malformed or carries shell syntax
    """
    path = Path(filepath)
    if not path.is_file():
        raise FileNotFoundError(f"No env file at {path}")

    env: dict[str, str] = {}
    for lineno, raw in enumerate(path.read_text().splitlines(), 1):
        line = raw.strip()
        if line and not line.startswith('#'):
            key, value = _parse_line(lineno, line)
            env[key] = value
    return env


def env_int(env: dict[str, str], key: str, default: int) -> int:
    """Read an integer setting, raising ValueError with the key name on garbage."""
    raw = env.get(key)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{key} must be an integer, got '{raw}'") from None


def env_float(env: dict[str, str], key: str, default: float) -> float:
    raw = env.get(key)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{key} must be a number, got '{raw}'") from None


def env_bool(env: dict[str, str], key: str, default: bool) -> bool:
    raw = env.get(key)
    if raw is None:
        return default
    lowered = raw.strip().lower()
    if lowered in TRUE_VALUES:
        return True
    if lowered in FALSE_VALUES:
        return False
    raise ValueError(f"{key} must be true/false, got '{raw}'")
