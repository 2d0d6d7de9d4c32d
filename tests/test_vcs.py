import shutil
import subprocess
from pathlib import Path

import pytest

from mpca.adapters import GitAdapter, MemoryVCS
from mpca.errors import BranchExists, UncommittedChanges, WorktreeExists, WorktreeNotFound


requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")


def _git(cwd: Path, *args: str) -> str:
    return subprocess.run(
        ["git", *args], cwd=cwd, check=True, capture_output=True, text=True,
    ).stdout


@pytest.fixture
def git_repo(tmp_path) -> Path:
    path = tmp_path / "repo"
    path.mkdir()
    _git(path, "init", "-q")
    _git(path, "config", "user.email", "mpca@example.com")
    _git(path, "config", "user.name", "MPCA Tests")
    _git(path, "config", "commit.gpgsign", "false")
    (path / "README.md").write_text("# repo\n")
    _git(path, "add", "-A")
    _git(path, "commit", "-q", "-m", "initial")
    return path.resolve()


@requires_git
def test_detects_repository(git_repo, tmp_path):
    adapter = GitAdapter(git_repo, git_repo / ".trees")
    assert adapter.is_repo()
    plain = tmp_path / "plain"
    plain.mkdir()
    assert not adapter.is_repo(plain)
    assert not adapter.is_repo(tmp_path / "missing")


@requires_git
def test_worktree_lifecycle(git_repo):
    adapter = GitAdapter(git_repo, git_repo / ".trees")
    path = adapter.create_worktree("add-caching", "feature/add-caching")
    assert (path / "README.md").exists()
    assert "feature/add-caching" in _git(git_repo, "branch", "--list")

    with pytest.raises(WorktreeExists):
        adapter.create_worktree("add-caching", "feature/add-caching")

    (path / "cache.py").write_text("CACHE = {}\n")
    with pytest.raises(UncommittedChanges):
        adapter.remove_worktree("add-caching")

    sha = adapter.commit("add cache", path)
    assert sha and len(sha) == 40
    assert adapter.commit("nothing new", path) is None

    adapter.remove_worktree("add-caching")
    assert not path.exists()
    with pytest.raises(WorktreeNotFound):
        adapter.remove_worktree("add-caching")

    # The branch survives and is reattached
    again = adapter.create_worktree("add-caching", "feature/add-caching")
    assert (again / "cache.py").exists()


@requires_git
def test_branch_checked_out_elsewhere(git_repo):
    adapter = GitAdapter(git_repo, git_repo / ".trees")
    adapter.create_worktree("add-caching", "feature/add-caching")

    with pytest.raises(BranchExists) as exc:
        adapter.create_worktree("add-caching-2", "feature/add-caching")
    assert exc.value.branch == "feature/add-caching"
    assert not (git_repo / ".trees" / "add-caching-2").exists()


@requires_git
def test_diff_includes_untracked(git_repo):
    adapter = GitAdapter(git_repo, git_repo / ".trees")
    (git_repo / "new.py").write_text("print('hi')\n")
    assert "new.py" in adapter.diff()
    assert "new.py" in adapter.status()


def test_memory_vcs_scripting(tmp_path):
    vcs = MemoryVCS(tmp_path / ".trees")
    vcs.create_worktree("add-caching", "feature/add-caching")
    with pytest.raises(WorktreeExists):
        vcs.create_worktree("add-caching", "feature/add-caching")
    with pytest.raises(BranchExists):
        vcs.create_worktree("other", "feature/add-caching")

    assert vcs.commit("work") is not None
    assert vcs.commit("again") is None

    vcs.fail_on("status", UncommittedChanges(tmp_path))
    with pytest.raises(UncommittedChanges):
        vcs.status()
    assert vcs.status() == ""
    assert len(vcs.calls_for("create_worktree")) == 3
