"""
MPCA Errors

Every failure the orchestrator can surface. Each error carries a stable
`kind` (persisted as the RunState failure kind) and a bare `message`
(persisted as the failure message). The executor attaches the feature
slug, phase and step before the error leaves the core, so the rendered
string always says where it happened.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any


class MPCAError(Exception):
    """Base class for all orchestrator errors."""

    kind: str = "other"

    def __init__(
        self,
        message: str,
        *,
        feature_slug: str | None = None,
        phase: Any = None,
        step: int | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.feature_slug = feature_slug
        self.phase = phase
        self.step = step

    def with_context(
        self,
        feature_slug: str | None = None,
        phase: Any = None,
        step: int | None = None,
    ) -> "MPCAError":
        """Attach location context without overwriting what is already set."""
        if self.feature_slug is None:
            self.feature_slug = feature_slug
        if self.phase is None:
            self.phase = phase
        if self.step is None:
            self.step = step
        return self

    def __str__(self) -> str:
        where = []
        if self.feature_slug:
            where.append(f"feature '{self.feature_slug}'")
        if self.phase is not None:
            where.append(f"phase {getattr(self.phase, 'value', self.phase)}")
        if self.step is not None:
            where.append(f"step {self.step}")
        if not where:
            return self.message
        return f"{self.message} ({', '.join(where)})"


# ---------------------------------------------------------------------------
# Initialization
# ---------------------------------------------------------------------------

class InitializationError(MPCAError):
    kind = "initialization"


class NotGitRepository(InitializationError):
    kind = "not_git_repository"

    def __init__(self, path: Path | str, **ctx: Any):
        super().__init__(f"not a git repository: {path}", **ctx)
        self.path = Path(path)


class AlreadyInitialized(InitializationError):
    kind = "already_initialized"

    def __init__(self, path: Path | str, **ctx: Any):
        super().__init__(f"project already initialized at {path} (use --force to repair)", **ctx)
        self.path = Path(path)


class NotInitialized(InitializationError):
    kind = "not_initialized"

    def __init__(self, path: Path | str, **ctx: Any):
        super().__init__(f"project not initialized: {path} is missing (run `mpca init`)", **ctx)
        self.path = Path(path)


# ---------------------------------------------------------------------------
# Feature
# ---------------------------------------------------------------------------

class FeatureError(MPCAError):
    kind = "feature"


class FeatureNotFound(FeatureError):
    kind = "feature_not_found"

    def __init__(self, slug: str, **ctx: Any):
        ctx.setdefault("feature_slug", slug)
        super().__init__(f"feature not found: {slug}", **ctx)


class FeatureAlreadyExists(FeatureError):
    kind = "feature_exists"

    def __init__(self, slug: str, **ctx: Any):
        ctx.setdefault("feature_slug", slug)
        super().__init__(f"feature already exists: {slug}", **ctx)


class FeatureNotReady(FeatureError):
    kind = "feature_not_ready"

    def __init__(self, slug: str, phase: Any, workflow: str, **ctx: Any):
        ctx.setdefault("feature_slug", slug)
        super().__init__(
            f"'{workflow}' needs a feature that has been run; '{slug}' is at {phase.value}",
            **ctx,
        )
        self.workflow = workflow


class InvalidFeatureSlug(FeatureError):
    kind = "invalid_slug"

    def __init__(self, slug: str, reason: str):
        super().__init__(f"invalid feature slug '{slug}': {reason}")
        self.slug = slug
        self.reason = reason


# ---------------------------------------------------------------------------
# State
# ---------------------------------------------------------------------------

class StateError(MPCAError):
    kind = "state"


class CorruptedState(StateError):
    kind = "corrupted_state"

    def __init__(self, slug: str, reason: str, **ctx: Any):
        ctx.setdefault("feature_slug", slug)
        super().__init__(f"run state for '{slug}' is corrupted: {reason}", **ctx)
        self.reason = reason


class InvalidTransition(StateError):
    kind = "invalid_transition"

    def __init__(self, current: Any, target: Any, legal: list[Any], **ctx: Any):
        names = ", ".join(p.value for p in legal)
        super().__init__(
            f"cannot move from {current.value} to {target.value} "
            f"(legal from {current.value}: {names})",
            **ctx,
        )
        self.current = current
        self.target = target
        self.legal = legal


class StateMissing(StateError):
    kind = "state_missing"

    def __init__(self, slug: str, **ctx: Any):
        ctx.setdefault("feature_slug", slug)
        super().__init__(f"no run state recorded for '{slug}'", **ctx)


# ---------------------------------------------------------------------------
# Version control
# ---------------------------------------------------------------------------

class VCSError(MPCAError):
    kind = "vcs"


class WorktreeExists(VCSError):
    kind = "worktree_exists"

    def __init__(self, path: Path | str, **ctx: Any):
        super().__init__(f"worktree already exists: {path}", **ctx)
        self.path = Path(path)


class WorktreeNotFound(VCSError):
    kind = "worktree_not_found"

    def __init__(self, path: Path | str, **ctx: Any):
        super().__init__(f"worktree not found: {path}", **ctx)
        self.path = Path(path)


class BranchExists(VCSError):
    kind = "branch_exists"

    def __init__(self, branch: str, **ctx: Any):
        super().__init__(f"branch already checked out: {branch}", **ctx)
        self.branch = branch


class UncommittedChanges(VCSError):
    kind = "uncommitted_changes"

    def __init__(self, path: Path | str, **ctx: Any):
        super().__init__(f"uncommitted changes in {path}", **ctx)
        self.path = Path(path)


class GitCommandFailed(VCSError):
    kind = "git_command_failed"

    def __init__(self, command: list[str], stderr: str, **ctx: Any):
        super().__init__(f"git failed: {' '.join(command)}\n{stderr.strip()}", **ctx)
        self.command = command
        self.stderr = stderr


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------

class StorageError(MPCAError):
    kind = "storage"


class PathNotFound(StorageError):
    kind = "path_not_found"

    def __init__(self, path: Path | str, **ctx: Any):
        super().__init__(f"path not found: {path}", **ctx)
        self.path = Path(path)


class InvalidPath(StorageError):
    kind = "invalid_path"

    def __init__(self, path: Path | str, reason: str, **ctx: Any):
        super().__init__(f"invalid path {path}: {reason}", **ctx)
        self.path = Path(path)


class StoragePermissionDenied(StorageError):
    kind = "permission_denied"

    def __init__(self, path: Path | str, operation: str, **ctx: Any):
        super().__init__(f"permission denied: cannot {operation} {path}", **ctx)
        self.path = Path(path)
        self.operation = operation


class StorageReadError(StorageError):
    kind = "read_failed"

    def __init__(self, path: Path | str, reason: str, **ctx: Any):
        super().__init__(f"failed to read {path}: {reason}", **ctx)
        self.path = Path(path)


class StorageWriteError(StorageError):
    kind = "write_failed"

    def __init__(self, path: Path | str, reason: str, **ctx: Any):
        super().__init__(f"failed to write {path}: {reason}", **ctx)
        self.path = Path(path)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

class ConfigError(MPCAError):
    kind = "config"


class ConfigInvalid(ConfigError):
    kind = "config_invalid"


class ConfigParseError(ConfigError):
    kind = "config_parse_failed"

    def __init__(self, path: Path | str, reason: str):
        super().__init__(f"failed to parse {path}: {reason}")
        self.path = Path(path)


class ConfigMissingField(ConfigError):
    kind = "config_missing_field"

    def __init__(self, field: str):
        super().__init__(f"missing required config field: {field}")
        self.field = field


class ConfigNotFound(ConfigError):
    kind = "config_not_found"

    def __init__(self, path: Path | str):
        super().__init__(f"config file not found: {path}")
        self.path = Path(path)


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------

class TemplateError(MPCAError):
    kind = "template"


class TemplateNotFound(TemplateError):
    kind = "template_not_found"

    def __init__(self, name: str):
        super().__init__(f"prompt template not found: {name}")
        self.name = name


class TemplateRenderError(TemplateError):
    kind = "template_render_failed"

    def __init__(self, name: str, reason: str):
        super().__init__(f"failed to render template '{name}': {reason}")
        self.name = name


class InvalidTemplateContext(TemplateError):
    kind = "invalid_template_context"

    def __init__(self, name: str, reason: str):
        super().__init__(f"invalid context for template '{name}': {reason}")
        self.name = name


# ---------------------------------------------------------------------------
# Agent
# ---------------------------------------------------------------------------

class AgentError(MPCAError):
    kind = "agent"


class RecoverableAgentError(AgentError):
    """The exchange may succeed if resent later. Only front-ends retry."""

    kind = "agent_recoverable"


class AgentAuthError(RecoverableAgentError):
    kind = "agent_auth_failed"


class AgentRateLimited(RecoverableAgentError):
    kind = "agent_rate_limited"


class AgentTimeout(RecoverableAgentError):
    kind = "agent_timeout"


class AgentTransportError(AgentError):
    kind = "agent_transport"


# ---------------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------------

class VerificationError(MPCAError):
    kind = "verification"


class VerificationFailed(VerificationError):
    kind = "verification_failed"


class TestsFailed(VerificationError):
    kind = "tests_failed"
    __test__ = False

    def __init__(self, failed: int, total: int, **ctx: Any):
        super().__init__(f"tests failed: {failed} of {total} failed", **ctx)
        self.failed = failed
        self.total = total


class VerificationSpecMissing(VerificationError):
    kind = "verification_spec_missing"

    def __init__(self, slug: str, path: Path | str, **ctx: Any):
        ctx.setdefault("feature_slug", slug)
        super().__init__(f"verification spec missing: {path}", **ctx)
        self.path = Path(path)


class VerificationTimeout(VerificationError):
    kind = "verification_timeout"

    def __init__(self, command: str, timeout: float, **ctx: Any):
        super().__init__(f"verification timed out after {timeout:g}s: {command}", **ctx)
        self.command = command
        self.timeout = timeout


# ---------------------------------------------------------------------------
# Tooling
# ---------------------------------------------------------------------------

class ToolingError(MPCAError):
    kind = "tooling"


class ShellCommandFailed(ToolingError):
    """The process died on a signal. A non-zero exit is a result, not this."""

    kind = "command_failed"

    def __init__(self, command: str, exit_code: int, output: str = "", **ctx: Any):
        super().__init__(f"command killed by signal {-exit_code}: {command}", **ctx)
        self.command = command
        self.exit_code = exit_code
        self.output = output


class ToolExecutionError(ToolingError):
    kind = "execution_error"


class CommandTimeout(ToolingError):
    kind = "command_timeout"

    def __init__(self, command: str, timeout: float, **ctx: Any):
        super().__init__(f"command timed out after {timeout:g}s: {command}", **ctx)
        self.command = command
        self.timeout = timeout


class CommandCancelled(ToolingError):
    kind = "command_cancelled"

    def __init__(self, command: str, **ctx: Any):
        super().__init__(f"command cancelled: {command}", **ctx)
        self.command = command


class PolicyViolation(ToolingError):
    kind = "permission_denied"

    def __init__(self, capability: str, policy: str, workflow: str, **ctx: Any):
        super().__init__(
            f"{capability} is not granted to the '{workflow}' workflow (policy: {policy})",
            **ctx,
        )
        self.capability = capability
        self.policy = policy
        self.workflow = workflow


# ---------------------------------------------------------------------------
# Fallback
# ---------------------------------------------------------------------------

class UnexpectedError(MPCAError):
    """Wraps a failure with no named kind. Never raised for a known condition."""

    kind = "other"
