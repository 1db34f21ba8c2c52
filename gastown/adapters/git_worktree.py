"""
Git worktree adapter.

Each hook gets its own linked worktree on its own branch:

    <worktree_root>/<rig_id>/<name>   on branch  hook/<name>

The worktree path is the worktree_ref. The rig id is recovered from the
parent directory name, so refs stay meaningful across restarts.
"""

import logging
import secrets
from pathlib import Path
from typing import Callable

from gastown.adapters.protocols import WorktreeHealth
from gastown.git.runner import run_git, run_git_checked

logger = logging.getLogger(__name__)

BRANCH_PREFIX = "hook/"


class GitWorktreeAdapter:
    def __init__(self, worktree_root: Path, repo_for_rig: Callable[[str], Path]):
        """
        Args:
            worktree_root: Directory under which worktrees are created
            repo_for_rig: Resolves a rig id to its main repository path
        """
        self.worktree_root = worktree_root
        self.repo_for_rig = repo_for_rig

    def _repo(self, worktree_ref: str) -> Path:
        return self.repo_for_rig(Path(worktree_ref).parent.name)

    @staticmethod
    def _branch(worktree_ref: str) -> str:
        return f"{BRANCH_PREFIX}{Path(worktree_ref).name}"

    def create(self, rig_id: str) -> str:
        repo = self.repo_for_rig(rig_id)
        name = f"{rig_id}-{secrets.token_hex(4)}"
        path = self.worktree_root / rig_id / name
        path.parent.mkdir(parents=True, exist_ok=True)

        run_git_checked(["worktree", "add", "-b", f"{BRANCH_PREFIX}{name}", str(path)], repo, timeout=120)
        logger.info(f"[WORKTREE] Created {path} for rig {rig_id}")
        return str(path)

    def remove(self, worktree_ref: str) -> None:
        repo = self._repo(worktree_ref)
        if Path(worktree_ref).exists():
            run_git_checked(["worktree", "remove", "--force", worktree_ref], repo, timeout=60)
        else:
            run_git(["worktree", "prune"], repo)
        logger.info(f"[WORKTREE] Removed {worktree_ref}")

    def inspect(self, worktree_ref: str) -> WorktreeHealth:
        path = Path(worktree_ref)
        if not path.exists():
            return WorktreeHealth.MISSING

        if not run_git(["status", "--porcelain"], path).success:
            return WorktreeHealth.UNREADABLE

        head = run_git(["rev-parse", "--abbrev-ref", "HEAD"], path)
        if not head.success or head.stdout.strip() != self._branch(worktree_ref):
            return WorktreeHealth.INCONSISTENT

        merge_head = run_git(["rev-parse", "--git-path", "MERGE_HEAD"], path)
        if merge_head.success and (path / merge_head.stdout.strip()).exists():
            return WorktreeHealth.INCONSISTENT

        return WorktreeHealth.HEALTHY

    def repair(self, worktree_ref: str) -> bool:
        """Best-effort repair. Returns True if the worktree is healthy afterwards."""
        path = Path(worktree_ref)
        repo = self._repo(worktree_ref)
        branch = self._branch(worktree_ref)

        run_git(["worktree", "prune"], repo)

        if not path.exists():
            # Branch survives the lost directory; re-attach it.
            result = run_git(["worktree", "add", str(path), branch], repo, timeout=120)
            if not result.success:
                logger.warning(f"[WORKTREE] Could not re-add {path}: {result.stderr.strip()}")
                return False
        else:
            run_git(["worktree", "repair", str(path)], repo)
            health = self.inspect(worktree_ref)
            if health is WorktreeHealth.INCONSISTENT:
                run_git(["merge", "--abort"], path)
                run_git(["checkout", branch], path)

        healthy = self.inspect(worktree_ref).ok
        logger.info(f"[WORKTREE] Repair of {worktree_ref}: {'ok' if healthy else 'failed'}")
        return healthy
