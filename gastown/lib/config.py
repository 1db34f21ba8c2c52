"""
Configuration loaders for Gas Town.

Loads town-level settings from <town>/town.env. Every setting has a default,
so a town without town.env runs with the stock limits.
"""

import logging
from dataclasses import dataclass
from pathlib import Path

from . import envparse
from .constants import (
    DEFAULT_CONFLICT_RETRIES,
    DEFAULT_INFRA_BACKOFF_SECONDS,
    DEFAULT_MAX_HOOKS_PER_RIG,
    DEFAULT_MAX_INFRA_RETRIES,
    DEFAULT_MAX_PARALLEL_AGENTS,
    DEFAULT_POLL_INTERVAL,
    STATE_DIRNAME,
    TOWN_ENV,
)

logger = logging.getLogger(__name__)

VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR"}
VALID_RECORD_STORES = {"beads", "memory"}


@dataclass
class TownConfig:
    """Town-level configuration from town.env"""
    name: str = "town"
    max_hooks_per_rig: int = DEFAULT_MAX_HOOKS_PER_RIG
    max_parallel_agents: int = DEFAULT_MAX_PARALLEL_AGENTS
    skip_satisfies_deps: bool = False  # Skipped dependencies count as satisfied
    poll_interval: float = DEFAULT_POLL_INTERVAL
    max_infra_retries: int = DEFAULT_MAX_INFRA_RETRIES
    infra_backoff_seconds: float = DEFAULT_INFRA_BACKOFF_SECONDS
    conflict_retries: int = DEFAULT_CONFLICT_RETRIES
    default_step_timeout: float = 0.0  # 0 disables step timeouts
    notify: bool = False
    record_store: str = "beads"
    worktree_root: Path | None = None  # Defaults to <town>/.gastown/worktrees
    log_level: str = "INFO"


def load_town_config(town_dir: Path) -> TownConfig:
    """Load town.env and return TownConfig.

    Missing file means all defaults. Malformed values raise ValueError naming the key.
    """
    env_path = town_dir / TOWN_ENV
    if not env_path.exists():
        logger.debug(f"No {TOWN_ENV} in {town_dir}, using defaults")
        return TownConfig(name=town_dir.name, worktree_root=town_dir / STATE_DIRNAME / "worktrees")

    env = envparse.load_env(env_path)

    log_level = env.get("LOG_LEVEL", "INFO").upper()
    if log_level not in VALID_LOG_LEVELS:
        logger.warning(f"Unknown LOG_LEVEL '{log_level}', using INFO")
        log_level = "INFO"

    record_store = env.get("RECORD_STORE", "beads").lower()
    if record_store not in VALID_RECORD_STORES:
        logger.warning(f"Unknown RECORD_STORE '{record_store}', using beads")
        record_store = "beads"

    worktree_root = env.get("WORKTREE_ROOT")

    config = TownConfig(
        name=env.get("TOWN_NAME", town_dir.name),
        max_hooks_per_rig=envparse.env_int(env, "MAX_HOOKS_PER_RIG", DEFAULT_MAX_HOOKS_PER_RIG),
        max_parallel_agents=envparse.env_int(env, "MAX_PARALLEL_AGENTS", DEFAULT_MAX_PARALLEL_AGENTS),
        skip_satisfies_deps=envparse.env_bool(env, "SKIP_SATISFIES_DEPS", False),
        poll_interval=envparse.env_float(env, "POLL_INTERVAL", DEFAULT_POLL_INTERVAL),
        max_infra_retries=envparse.env_int(env, "MAX_INFRA_RETRIES", DEFAULT_MAX_INFRA_RETRIES),
        infra_backoff_seconds=envparse.env_float(env, "INFRA_BACKOFF_SECONDS", DEFAULT_INFRA_BACKOFF_SECONDS),
        conflict_retries=envparse.env_int(env, "CONFLICT_RETRIES", DEFAULT_CONFLICT_RETRIES),
        default_step_timeout=envparse.env_float(env, "DEFAULT_STEP_TIMEOUT", 0.0),
        notify=envparse.env_bool(env, "NOTIFY", False),
        record_store=record_store,
        worktree_root=Path(worktree_root) if worktree_root else town_dir / STATE_DIRNAME / "worktrees",
        log_level=log_level,
    )

    if config.max_hooks_per_rig < 1:
        raise ValueError("MAX_HOOKS_PER_RIG must be at least 1")
    if config.max_parallel_agents < 1:
        raise ValueError("MAX_PARALLEL_AGENTS must be at least 1")

    return config
