"""Shared constants for Gas Town."""

import re

# Rig / formula / step identifiers
ID_PATTERN = re.compile(r'^[a-z][a-z0-9_-]*$')
STEP_NAME_PATTERN = re.compile(r'^[A-Za-z][A-Za-z0-9_-]*$')
MAX_ID_LEN = 32

# Template placeholders: {{name}}
PLACEHOLDER_RE = re.compile(r'\{\{\s*([A-Za-z_][A-Za-z0-9_]*)\s*\}\}')

# Town directory layout (relative to the town root)
STATE_DIRNAME = ".gastown"
FORMULAS_DIRNAME = "formulas"
FORMULA_SUFFIX = ".formula.yaml"
TOWN_ENV = "town.env"
AGENTS_YAML = "agents.yaml"

# Defaults sized for 20-30 concurrent agents
DEFAULT_MAX_HOOKS_PER_RIG = 8
DEFAULT_MAX_PARALLEL_AGENTS = 30
DEFAULT_POLL_INTERVAL = 10.0
DEFAULT_MAX_INFRA_RETRIES = 3
DEFAULT_INFRA_BACKOFF_SECONDS = 5.0
DEFAULT_CONFLICT_RETRIES = 5

# CLI exit codes
EXIT_OK = 0
EXIT_ERROR = 1
EXIT_USAGE = 2
EXIT_LOCK_TIMEOUT = 3
