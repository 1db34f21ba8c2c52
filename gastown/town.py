"""
Town wiring.

A town is a directory:

    <town>/
      town.env                  settings (optional)
      agents.yaml               agent command templates (optional)
      formulas/*.formula.yaml   workflow templates
      .gastown/state/           persisted hooks, rigs, convoys, molecules, ...
      .gastown/logs/            agent output, one file per hook
      .gastown/locks/           patrol lock

Town builds every component from that layout. It holds no "current rig" or
"current molecule": every operation still names its target explicitly.
"""

import logging
from pathlib import Path

from gastown.adapters.beads import BeadsRecordStore
from gastown.adapters.git_worktree import GitWorktreeAdapter
from gastown.adapters.memory import MemoryRecordStore
from gastown.adapters.protocols import AgentRuntime, RecordStore, WorktreeAdapter
from gastown.adapters.subprocess_runtime import SubprocessAgentRuntime
from gastown.convoys.tracker import ConvoyTracker
from gastown.dispatch.dispatcher import Dispatcher
from gastown.formulas.engine import FormulaEngine
from gastown.formulas.loader import load_dir
from gastown.formulas.models import Formula
from gastown.hooks.manager import HookManager
from gastown.lib.agents_config import AgentsConfig, load_agents_config
from gastown.lib.config import TownConfig, load_town_config
from gastown.lib.constants import FORMULAS_DIRNAME, STATE_DIRNAME
from gastown.lib.errors import FormulaValidationError
from gastown.lib.types import Rig
from gastown.state.store import StateStore
from gastown.status import TownStatus, build_status
from gastown.workflow.orchestrator import Orchestrator

logger = logging.getLogger(__name__)


class Town:
    def __init__(
        self,
        town_dir: Path,
        config: TownConfig | None = None,
        records: RecordStore | None = None,
        worktrees: WorktreeAdapter | None = None,
        runtime: AgentRuntime | None = None,
        agents_config: AgentsConfig | None = None,
        persist: bool = True,
    ):
        """
        Args:
            town_dir: Town root directory
            config: Overrides town.env
            records, worktrees, runtime: Override the default adapters
            agents_config: Overrides agents.yaml
            persist: Mirror state to <town>/.gastown/state (False keeps it in memory)
        """
        self.town_dir = town_dir
        self.config = config or load_town_config(town_dir)
        self.state_dir = town_dir / STATE_DIRNAME / "state"
        self.log_dir = town_dir / STATE_DIRNAME / "logs"
        self.formulas_dir = town_dir / FORMULAS_DIRNAME

        self.store = StateStore(self.state_dir if persist else None)
        self.records = records or self._default_records()
        self.worktrees = worktrees or GitWorktreeAdapter(
            self.config.worktree_root or town_dir / STATE_DIRNAME / "worktrees",
            self._repo_for_rig,
        )
        self.runtime = runtime

        self.hooks = HookManager(self.store, self.worktrees, self.config.max_hooks_per_rig)
        self.convoys = ConvoyTracker(self.store, self.records)
        self.engine = FormulaEngine(
            self.store,
            self.records,
            self.convoys,
            skip_satisfies_deps=self.config.skip_satisfies_deps,
            default_step_timeout=self.config.default_step_timeout,
        )
        self.dispatcher = Dispatcher(self.store, self.hooks)
        self.orchestrator = Orchestrator(
            self.hooks,
            self.convoys,
            self.engine,
            self.dispatcher,
            self.records,
            config=self.config,
            runtime=runtime,
            agents_config=agents_config or load_agents_config(town_dir),
        )

    @classmethod
    def with_agents(cls, town_dir: Path, **kwargs) -> "Town":
        """Town whose orchestrator launches polecats as subprocesses."""
        runtime = SubprocessAgentRuntime(town_dir / STATE_DIRNAME / "logs")
        return cls(town_dir, runtime=runtime, **kwargs)

    def _default_records(self) -> RecordStore:
        if self.config.record_store == "memory":
            logger.warning("RECORD_STORE=memory: records are not persisted between runs")
            return MemoryRecordStore()
        return BeadsRecordStore(self.town_dir)

    def _repo_for_rig(self, rig_id: str) -> Path:
        rig = self.store.require(Rig.KIND, rig_id)
        return Path(rig.repository_ref).expanduser()

    def load_formulas(self) -> list[Formula]:
        """Load every formula file under <town>/formulas. Invalid ones are logged and skipped."""
        loaded = []
        for formula in load_dir(self.formulas_dir):
            try:
                self.engine.load(formula)
            except FormulaValidationError as e:
                logger.error(f"[FORMULA] {formula.name}: {e}")
                continue
            loaded.append(formula)
        return loaded

    def status(self, include_archived: bool = False) -> TownStatus:
        return build_status(self, include_archived=include_archived)
