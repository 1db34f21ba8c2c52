"""Git operations for Gas Town worktrees.

Functions returning GitResult: caller must check .success before using output.
run_git_checked raises InfrastructureError instead.
"""

from gastown.git.runner import GitResult, run_git, run_git_checked

__all__ = ["GitResult", "run_git", "run_git_checked"]
