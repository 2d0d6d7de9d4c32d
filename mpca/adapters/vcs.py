"""
MPCA Version Control Adapter

Isolated feature work happens in `git worktree` checkouts under the
trees dir, one per feature, each on its own branch.
"""

from __future__ import annotations

import shutil
import subprocess
from abc import ABC, abstractmethod
from pathlib import Path

from loguru import logger

from mpca.errors import (
    BranchExists,
    GitCommandFailed,
    MPCAError,
    ToolExecutionError,
    UncommittedChanges,
    WorktreeExists,
    WorktreeNotFound,
)


class VCS(ABC):
    """Capability contract for version control."""

    @abstractmethod
    def is_repo(self, path: Path | None = None) -> bool:
        ...

    @abstractmethod
    def create_worktree(self, name: str, branch: str) -> Path:
        """
        Raises WorktreeExists when the checkout is already there and
        BranchExists when another worktree has the branch checked out.
        """
        ...

    @abstractmethod
    def remove_worktree(self, name: str, force: bool = False) -> None:
        ...

    @abstractmethod
    def commit(self, message: str, cwd: Path | None = None) -> str | None:
        """Stage everything and commit. Returns the sha, or None when there was nothing to commit."""
        ...

    @abstractmethod
    def status(self, cwd: Path | None = None) -> str:
        ...

    @abstractmethod
    def diff(self, cwd: Path | None = None) -> str:
        ...


# ---------------------------------------------------------------------------
# Git
# ---------------------------------------------------------------------------

class GitAdapter(VCS):
    """Runs the git CLI against a repository root and its worktrees."""

    def __init__(self, repo_root: Path, trees_dir: Path, base_branch: str = "HEAD", timeout: int = 60):
        self.repo_root = repo_root.resolve()
        self.trees_dir = trees_dir
        self.base_branch = base_branch
        self.timeout = timeout

    def worktree_path(self, name: str) -> Path:
        return self.trees_dir / name

    def is_repo(self, path: Path | None = None) -> bool:
        cwd = path or self.repo_root
        if not cwd.exists():
            return False
        try:
            out = self._run_cmd(["git", "rev-parse", "--is-inside-work-tree"], cwd=cwd, check=False, capture=True)
        except ToolExecutionError:
            return False
        return out.strip() == "true"

    def create_worktree(self, name: str, branch: str) -> Path:
        path = self.worktree_path(name)
        if path.exists():
            raise WorktreeExists(path)

        if branch in self._checked_out_branches():
            raise BranchExists(branch)

        path.parent.mkdir(parents=True, exist_ok=True)
        if self._branch_exists(branch):
            # Reattach a surviving branch instead of resetting it
            self._git("worktree", "add", str(path), branch)
        else:
            self._git("worktree", "add", "-b", branch, str(path), self.base_branch)

        logger.info(f"[GIT] Worktree created: {path} on {branch}")
        return path

    def remove_worktree(self, name: str, force: bool = False) -> None:
        path = self.worktree_path(name)
        if not path.exists():
            raise WorktreeNotFound(path)

        if not force and self.status(path).strip():
            raise UncommittedChanges(path)

        args = ["worktree", "remove", str(path)]
        if force:
            args.insert(2, "--force")
        self._git(*args)

        if path.exists():
            shutil.rmtree(path)
        self._git("worktree", "prune", check=False)
        logger.info(f"[GIT] Worktree removed: {path}")

    def commit(self, message: str, cwd: Path | None = None) -> str | None:
        cwd = cwd or self.repo_root
        self._run_cmd(["git", "add", "-A"], cwd=cwd)

        if not self.status(cwd).strip():
            logger.info("[GIT] Nothing to commit.")
            return None

        self._run_cmd(["git", "commit", "-m", message], cwd=cwd)
        sha = self._run_cmd(["git", "rev-parse", "HEAD"], cwd=cwd, capture=True).strip()
        logger.info(f"[GIT] Committed {sha[:8]}: {message.splitlines()[0]}")
        return sha

    def status(self, cwd: Path | None = None) -> str:
        return self._run_cmd(["git", "status", "--porcelain"], cwd=cwd or self.repo_root, capture=True)

    def diff(self, cwd: Path | None = None) -> str:
        """Full unified diff of all changes, untracked files included (stages them)."""
        cwd = cwd or self.repo_root
        self._run_cmd(["git", "add", "-A"], cwd=cwd, check=False)
        return self._run_cmd(["git", "diff", "--cached"], cwd=cwd, capture=True, check=False)

    def _branch_exists(self, name: str) -> bool:
        res = self._git("branch", "--list", name, capture=True)
        return bool(res.strip())

    def _checked_out_branches(self) -> set[str]:
        out = self._git("worktree", "list", "--porcelain", capture=True)
        prefix = "branch refs/heads/"
        return {line[len(prefix):] for line in out.splitlines() if line.startswith(prefix)}

    def _git(self, *args: str, check: bool = True, capture: bool = False) -> str:
        return self._run_cmd(["git", *args], cwd=self.repo_root, check=check, capture=capture)

    def _run_cmd(self, cmd: list[str], cwd: Path, check: bool = True, capture: bool = False) -> str:
        try:
            result = subprocess.run(cmd, cwd=cwd, capture_output=True, text=True, timeout=self.timeout)
        except FileNotFoundError as e:
            raise ToolExecutionError(f"git executable not found: {e}") from e
        except subprocess.TimeoutExpired as e:
            raise GitCommandFailed(cmd, f"timed out after {self.timeout}s") from e
        if check and result.returncode != 0:
            raise GitCommandFailed(cmd, result.stderr)
        return result.stdout if capture else ""


# ---------------------------------------------------------------------------
# In-memory double
# ---------------------------------------------------------------------------

class MemoryVCS(VCS):
    """
    Scripted version control for tests. Tracks worktrees and branches
    in sets, records calls as (operation, args), and raises scripted
    failures per operation.
    """

    def __init__(self, trees_dir: Path, repo: bool = True, dirty: bool = True):
        self.trees_dir = trees_dir
        self.repo = repo
        self.dirty = dirty
        self.worktrees: dict[str, str] = {}
        self.branches: set[str] = set()
        self.commits: list[str] = []
        self.status_text = ""
        self.diff_text = ""
        self.calls: list[tuple[str, tuple]] = []
        self._failures: dict[str, list[MPCAError]] = {}

    def fail_on(self, operation: str, error: MPCAError, times: int = 1) -> None:
        self._failures.setdefault(operation, []).extend([error] * times)

    def calls_for(self, operation: str) -> list[tuple]:
        return [args for op, args in self.calls if op == operation]

    def is_repo(self, path: Path | None = None) -> bool:
        self._record("is_repo", path)
        return self.repo

    def create_worktree(self, name: str, branch: str) -> Path:
        self._record("create_worktree", name, branch)
        path = self.trees_dir / name
        if name in self.worktrees:
            raise WorktreeExists(path)
        if branch in self.worktrees.values():
            raise BranchExists(branch)
        self.worktrees[name] = branch
        self.branches.add(branch)
        return path

    def remove_worktree(self, name: str, force: bool = False) -> None:
        self._record("remove_worktree", name, force)
        if name not in self.worktrees:
            raise WorktreeNotFound(self.trees_dir / name)
        if self.dirty and not force:
            raise UncommittedChanges(self.trees_dir / name)
        del self.worktrees[name]

    def commit(self, message: str, cwd: Path | None = None) -> str | None:
        self._record("commit", message, cwd)
        if not self.dirty:
            return None
        self.commits.append(message)
        self.dirty = False
        return f"{len(self.commits):040x}"

    def status(self, cwd: Path | None = None) -> str:
        self._record("status", cwd)
        return self.status_text

    def diff(self, cwd: Path | None = None) -> str:
        self._record("diff", cwd)
        return self.diff_text

    def _record(self, operation: str, *args) -> None:
        self.calls.append((operation, args))
        pending = self._failures.get(operation)
        if pending:
            raise pending.pop(0)
