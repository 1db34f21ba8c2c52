"""Tests for gastown.git and the git worktree adapter."""

import subprocess
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from gastown.adapters.git_worktree import GitWorktreeAdapter
from gastown.adapters.protocols import WorktreeHealth
from gastown.git.runner import GitResult, run_git, run_git_checked
from gastown.lib.errors import InfrastructureError


def ok(stdout=""):
    return GitResult(returncode=0, stdout=stdout, stderr="")


def failed(stderr="fatal: not a git repository"):
    return GitResult(returncode=128, stdout="", stderr=stderr)


class TestGitResult:
    """Test GitResult dataclass."""

    def test_success_when_returncode_zero(self):
        assert GitResult(returncode=0, stdout="ok", stderr="").success is True

    def test_failure_when_returncode_nonzero(self):
        assert GitResult(returncode=1, stdout="", stderr="error").success is False

    def test_failure_when_timed_out(self):
        assert GitResult(returncode=0, stdout="ok", stderr="", timed_out=True).success is False


class TestRunGit:
    """Test run_git and run_git_checked."""

    @patch("gastown.git.runner.subprocess.run")
    def test_passes_cwd_with_C_flag(self, mock_run):
        mock_run.return_value = MagicMock(returncode=0, stdout="", stderr="")
        run_git(["status", "--porcelain"], Path("/my/repo"))
        assert mock_run.call_args[0][0] == ["git", "-C", "/my/repo", "status", "--porcelain"]

    @patch("gastown.git.runner.subprocess.run")
    def test_handles_timeout(self, mock_run):
        mock_run.side_effect = subprocess.TimeoutExpired(cmd="git", timeout=30)
        result = run_git(["status"], Path("/tmp"))
        assert result.timed_out
        assert "timed out" in result.stderr

    @patch("gastown.git.runner.subprocess.run")
    def test_missing_binary_is_a_failed_result(self, mock_run):
        mock_run.side_effect = FileNotFoundError("git")
        assert not run_git(["status"], Path("/tmp")).success

    @patch("gastown.git.runner.subprocess.run")
    def test_checked_raises_infrastructure_error(self, mock_run):
        mock_run.return_value = MagicMock(returncode=128, stdout="", stderr="fatal: bad")
        with pytest.raises(InfrastructureError, match="fatal: bad"):
            run_git_checked(["worktree", "add"], Path("/tmp"))


@pytest.fixture
def adapter(tmp_path):
    return GitWorktreeAdapter(tmp_path / "worktrees", lambda rig_id: tmp_path / "repos" / rig_id)


class TestGitWorktreeAdapter:
    """Worktree lifecycle with git calls mocked."""

    @patch("gastown.adapters.git_worktree.run_git_checked")
    def test_create_adds_branch_per_hook(self, mock_checked, adapter, tmp_path):
        ref = adapter.create("rig-x")

        path = Path(ref)
        assert path.parent == tmp_path / "worktrees" / "rig-x"
        args, cwd = mock_checked.call_args[0][:2]
        assert args == ["worktree", "add", "-b", f"hook/{path.name}", ref]
        assert cwd == tmp_path / "repos" / "rig-x"

    @patch("gastown.adapters.git_worktree.run_git_checked")
    def test_create_failure_propagates(self, mock_checked, adapter):
        mock_checked.side_effect = InfrastructureError("git worktree failed")
        with pytest.raises(InfrastructureError):
            adapter.create("rig-x")

    def test_inspect_missing(self, adapter, tmp_path):
        assert adapter.inspect(str(tmp_path / "worktrees" / "rig-x" / "gone")) is WorktreeHealth.MISSING

    @patch("gastown.adapters.git_worktree.run_git")
    def test_inspect_healthy(self, mock_git, adapter, tmp_path):
        path = tmp_path / "worktrees" / "rig-x" / "rig-x-1"
        path.mkdir(parents=True)
        mock_git.side_effect = [ok(), ok("hook/rig-x-1\n"), ok(".git/MERGE_HEAD\n")]
        assert adapter.inspect(str(path)) is WorktreeHealth.HEALTHY

    @patch("gastown.adapters.git_worktree.run_git")
    def test_inspect_unreadable(self, mock_git, adapter, tmp_path):
        path = tmp_path / "worktrees" / "rig-x" / "rig-x-1"
        path.mkdir(parents=True)
        mock_git.return_value = failed()
        assert adapter.inspect(str(path)) is WorktreeHealth.UNREADABLE

    @patch("gastown.adapters.git_worktree.run_git")
    def test_inspect_wrong_branch(self, mock_git, adapter, tmp_path):
        path = tmp_path / "worktrees" / "rig-x" / "rig-x-1"
        path.mkdir(parents=True)
        mock_git.side_effect = [ok(), ok("main\n")]
        assert adapter.inspect(str(path)) is WorktreeHealth.INCONSISTENT

    @patch("gastown.adapters.git_worktree.run_git")
    def test_inspect_mid_merge(self, mock_git, adapter, tmp_path):
        path = tmp_path / "worktrees" / "rig-x" / "rig-x-1"
        (path / ".git").mkdir(parents=True)
        (path / ".git" / "MERGE_HEAD").write_text("abc\n")
        mock_git.side_effect = [ok(), ok("hook/rig-x-1\n"), ok(".git/MERGE_HEAD\n")]
        assert adapter.inspect(str(path)) is WorktreeHealth.INCONSISTENT

    @patch("gastown.adapters.git_worktree.run_git")
    def test_repair_missing_readds_branch(self, mock_git, adapter, tmp_path):
        ref = str(tmp_path / "worktrees" / "rig-x" / "rig-x-1")
        mock_git.return_value = ok()

        # The directory never appears, so the final inspect reports missing
        assert adapter.repair(ref) is False
        calls = [c[0][0] for c in mock_git.call_args_list]
        assert ["worktree", "prune"] in calls
        assert ["worktree", "add", ref, "hook/rig-x-1"] in calls

    @patch("gastown.adapters.git_worktree.run_git")
    def test_repair_readd_failure(self, mock_git, adapter, tmp_path):
        ref = str(tmp_path / "worktrees" / "rig-x" / "rig-x-1")
        mock_git.side_effect = [ok(), failed("fatal: branch missing")]
        assert adapter.repair(ref) is False

    @patch("gastown.adapters.git_worktree.run_git")
    @patch("gastown.adapters.git_worktree.run_git_checked")
    def test_remove_existing(self, mock_checked, mock_git, adapter, tmp_path):
        path = tmp_path / "worktrees" / "rig-x" / "rig-x-1"
        path.mkdir(parents=True)
        adapter.remove(str(path))
        assert mock_checked.call_args[0][0] == ["worktree", "remove", "--force", str(path)]
        mock_git.assert_not_called()

    @patch("gastown.adapters.git_worktree.run_git")
    def test_remove_missing_prunes(self, mock_git, adapter, tmp_path):
        adapter.remove(str(tmp_path / "worktrees" / "rig-x" / "gone"))
        assert mock_git.call_args[0][0] == ["worktree", "prune"]
