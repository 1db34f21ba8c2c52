"""Thin wrapper over the git CLI used by the worktree manager."""

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path

from gastown.lib.errors import InfrastructureError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30


@dataclass(frozen=True)
class GitResult:
    returncode: int
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False

    @property
    def success(self) -> bool:
        return not self.timed_out and self.returncode == 0


def run_git(args: list[str], cwd: Path, timeout: int = DEFAULT_TIMEOUT) -> GitResult:
    """Run `git -C cwd <args>`.

    Failures of any kind, including a missing git binary, come back as an
    unsuccessful GitResult rather than an exception.
    """
    try:
        proc = subprocess.run(["git", "-C", str(cwd), *args],
                              capture_output=True, text=True, timeout=timeout)
    except subprocess.TimeoutExpired:
        return GitResult(-1, stderr=f"git {args[0]} timed out after {timeout}s", timed_out=True)
    except OSError as e:
        return GitResult(-1, stderr=str(e))
    return GitResult(proc.returncode, proc.stdout, proc.stderr)


def run_git_checked(args: list[str], cwd: Path, timeout: int = DEFAULT_TIMEOUT) -> GitResult:
    """Like run_git, but a failure raises InfrastructureError."""
    result = run_git(args, cwd, timeout)
    if result.success:
        return result
    message = result.stderr.strip() or f"exit {result.returncode}"
    logger.warning(f"[GIT] git {' '.join(args)} failed in {cwd}: {message}")
    raise InfrastructureError(f"git {args[0]} failed: {message}")
