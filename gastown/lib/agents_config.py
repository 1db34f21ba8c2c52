"""
Agent command configuration.

Loads <town>/agents.yaml to determine which CLI command launches each agent
role. Without a config file the defaults below are used.

ROLE COMMAND TEMPLATES
======================

Templates support {variable} substitution:
- {prompt}: The rendered step template. If present in the template it is
  passed as a CLI argument; otherwise it is fed to the agent on stdin.
- {worktree}: The hook's worktree path (also used as the process cwd).
- {hook_id}: Hook the agent is bound to.
- {record_id}: Record the agent is working.

Example agents.yaml:

    roles:
      polecat: codex exec --dangerously-bypass-approvals-and-sandbox -C {worktree} {prompt}
"""

import logging
import re
import shlex
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

import yaml

from gastown.adapters.protocols import CommandSpec
from gastown.lib.constants import AGENTS_YAML

logger = logging.getLogger(__name__)


class AgentRole(Enum):
    """Agent roles in a town."""
    MAYOR = "mayor"        # Primary coordinator
    POLECAT = "polecat"    # Ephemeral worker, one per slung record
    CREW = "crew"          # Personal workspace agent
    WITNESS = "witness"    # Watches a rig's polecats
    DEACON = "deacon"      # Background daemon

    @classmethod
    def from_name(cls, name: str) -> "AgentRole | None":
        """Parse a role from an agent id like 'polecat-3' or 'crew-alice'."""
        prefix = name.split("-", 1)[0].lower()
        for role in cls:
            if role.value == prefix:
                return role
        return None


DEFAULT_ROLE_COMMANDS = {
    "polecat": "claude --dangerously-skip-permissions -p {prompt}",
    # Works one slung record inside its hook's worktree.

    "crew": "claude",
    # Interactive; prompt arrives on stdin.

    "witness": "claude -p {prompt}",
    "deacon": "claude -p {prompt}",
    "mayor": "claude -p {prompt}",
}

# Roles whose templates must be given these variables
ROLE_REQUIRED_VARIABLES = {
    "polecat": ["worktree"],
}

_PROMPT_PLACEHOLDER = "__PROMPT_PLACEHOLDER__"


@dataclass
class AgentsConfig:
    """Agent configuration from agents.yaml."""
    roles: dict[str, str] = field(default_factory=lambda: DEFAULT_ROLE_COMMANDS.copy())


def load_agents_config(town_dir: Path | None) -> AgentsConfig:
    """Load agents.yaml and return AgentsConfig.

    If town_dir is None or the file doesn't exist, returns defaults.
    A broken file logs a warning and also falls back to defaults.
    """
    if town_dir is None:
        return AgentsConfig()

    config_path = town_dir / AGENTS_YAML
    if not config_path.exists():
        return AgentsConfig()

    try:
        data = yaml.safe_load(config_path.read_text())
    except yaml.YAMLError as e:
        logger.warning(f"Failed to parse {config_path}: {e}")
        return AgentsConfig()

    roles = DEFAULT_ROLE_COMMANDS.copy()
    if isinstance(data, dict) and isinstance(data.get("roles"), dict):
        for role, template in data["roles"].items():
            if AgentRole.from_name(str(role)) is None:
                logger.warning(f"Ignoring unknown agent role '{role}' in {config_path}")
                continue
            roles[str(role)] = str(template)
    return AgentsConfig(roles=roles)


def build_command(config: AgentsConfig, role: str, context: dict[str, str]) -> CommandSpec:
    """Build the CommandSpec for a role with variable substitution.

    Raises:
        ValueError: If the role is unknown or required variables are missing.

    Example:
        >>> spec = build_command(AgentsConfig(), "polecat", {"worktree": "/tmp/wt", "prompt": "fix it"})
        >>> spec.argv
        ['claude', '--dangerously-skip-permissions', '-p', 'fix it']
    """
    if role not in config.roles:
        raise ValueError(f"Unknown agent role: {role}")

    missing = [v for v in ROLE_REQUIRED_VARIABLES.get(role, []) if v not in context]
    if missing:
        raise ValueError(f"Role '{role}' requires variables {missing} in context")

    template = config.roles[role]
    prompt = context.get("prompt")
    prompt_via_stdin = "{prompt}" not in template

    # Keep the prompt out of shlex: it may contain quotes and newlines.
    template = template.replace("{prompt}", _PROMPT_PLACEHOLDER)
    for key, value in context.items():
        if key != "prompt":
            template = template.replace(f"{{{key}}}", value)

    remaining = re.findall(r'\{(\w+)\}', template)
    if remaining:
        raise ValueError(f"Role '{role}' template has unsubstituted variables: {remaining}")

    argv = [(prompt or "") if arg == _PROMPT_PLACEHOLDER else arg for arg in shlex.split(template)]
    worktree = context.get("worktree")

    return CommandSpec(
        argv=argv,
        cwd=Path(worktree) if worktree else None,
        stdin=prompt if prompt_via_stdin else None,
        env={f"GT_{k.upper()}": v for k, v in context.items() if k in ("hook_id", "record_id")},
    )
