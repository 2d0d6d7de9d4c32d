"""
Configuration loader for MPCA.
Merges built-in defaults with per-repo .mpca/config.yaml overrides
into one immutable Configuration.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from mpca.errors import ConfigInvalid, ConfigMissingField, ConfigNotFound, ConfigParseError
from mpca.policy import ToolPolicy


WORKFLOWS = ("init", "plan", "execute", "review", "verify", "chat")


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class WorkspaceConfig(_Frozen):
    mpca_dir: str = ".mpca"
    specs_dir: str = ".mpca/specs"
    trees_dir: str = ".trees"
    claude_md: str = "CLAUDE.md"
    prompt_dir: str = ".mpca/prompts"


class GitConfig(_Frozen):
    auto_commit: bool = True
    branch_naming: str = "feature/{feature_slug}"
    base_branch: str = "HEAD"

    def branch_for(self, feature_slug: str) -> str:
        return self.branch_naming.format(feature_slug=feature_slug)


class ReviewConfig(_Frozen):
    enabled: bool = True
    reviewers: tuple[str, ...] = ()


class AgentConfig(_Frozen):
    endpoint: str | None = None
    timeout: float = 120.0


class AgentMode(_Frozen):
    model: str = "anthropic/claude-sonnet-4-20250514"
    temperature: float = Field(default=0.2, ge=0.0, le=2.0)
    max_tokens: int = Field(default=4096, gt=0)
    use_code_preset: bool = False


class WorkflowModes(_Frozen):
    init: AgentMode = Field(default_factory=AgentMode)
    plan: AgentMode = Field(default_factory=AgentMode)
    execute: AgentMode = Field(default_factory=AgentMode)
    review: AgentMode = Field(default_factory=AgentMode)
    verify: AgentMode = Field(default_factory=AgentMode)
    chat: AgentMode = Field(default_factory=AgentMode)


class WorkflowTools(_Frozen):
    init: ToolPolicy = ToolPolicy.MINIMAL
    plan: ToolPolicy = ToolPolicy.STANDARD
    execute: ToolPolicy = ToolPolicy.FULL
    review: ToolPolicy = ToolPolicy.STANDARD
    verify: ToolPolicy = ToolPolicy.STANDARD
    chat: ToolPolicy = ToolPolicy.STANDARD


class VerifyConfig(_Frozen):
    test_command: str | None = None
    timeout: float = 600.0


class StateConfig(_Frozen):
    on_corrupt: Literal["halt", "archive"] = "halt"


class Configuration(_Frozen):
    """
    Process-wide settings, resolved once and never mutated.
    All paths are absolute.
    """

    repo_root: Path
    mpca_dir: Path
    specs_dir: Path
    trees_dir: Path
    claude_md: Path
    config_file: Path
    prompt_dirs: tuple[Path, ...] = ()
    git: GitConfig = Field(default_factory=GitConfig)
    review: ReviewConfig = Field(default_factory=ReviewConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    agent_modes: WorkflowModes = Field(default_factory=WorkflowModes)
    tool_sets: WorkflowTools = Field(default_factory=WorkflowTools)
    verify: VerifyConfig = Field(default_factory=VerifyConfig)
    state: StateConfig = Field(default_factory=StateConfig)

    @classmethod
    def for_repo(cls, repo_root: Path, **overrides: Any) -> "Configuration":
        """Build a configuration from built-in defaults only."""
        return _build(repo_root.resolve(), _deep_merge(_load_defaults(), overrides))

    def feature_dir(self, feature_slug: str) -> Path:
        return self.specs_dir / feature_slug

    def worktree_path(self, feature_slug: str) -> Path:
        return self.trees_dir / feature_slug

    def mode_for(self, workflow: str) -> AgentMode:
        return getattr(self.agent_modes, _known(workflow))

    def policy_for(self, workflow: str) -> ToolPolicy:
        return getattr(self.tool_sets, _known(workflow))


def _known(workflow: str) -> str:
    if workflow not in WORKFLOWS:
        raise ValueError(f"Unknown workflow: {workflow}. Known: {list(WORKFLOWS)}")
    return workflow


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

_DEFAULT_CONFIG_PATH = Path(__file__).parent / "config.yaml"

_ENV_OVERRIDES = {
    "MPCA_ENDPOINT": ("agent", "endpoint"),
    "MPCA_AGENT_TIMEOUT": ("agent", "timeout"),
}


def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge override into base."""
    merged = base.copy()
    for key, value in override.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigParseError(path, str(e)) from e
    if not isinstance(data, dict):
        raise ConfigParseError(path, "top level must be a mapping")
    return data


def _load_defaults() -> dict[str, Any]:
    return _read_yaml(_DEFAULT_CONFIG_PATH)


def _env_overrides() -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    for var, (section, key) in _ENV_OVERRIDES.items():
        value = os.environ.get(var)
        if value:
            overrides.setdefault(section, {})[key] = value

    # One model for every workflow
    model = os.environ.get("MPCA_MODEL")
    if model:
        overrides["agent_modes"] = {wf: {"model": model} for wf in WORKFLOWS}
    return overrides


def _build(repo_root: Path, raw: dict[str, Any]) -> Configuration:
    raw = dict(raw)
    ws = WorkspaceConfig(**raw.pop("workspace", {}) or {})
    prompt_dirs = (repo_root / ws.prompt_dir, Path(__file__).parent / "templates")

    try:
        return Configuration(
            repo_root=repo_root,
            mpca_dir=repo_root / ws.mpca_dir,
            specs_dir=repo_root / ws.specs_dir,
            trees_dir=repo_root / ws.trees_dir,
            claude_md=repo_root / ws.claude_md,
            config_file=repo_root / ws.mpca_dir / "config.yaml",
            prompt_dirs=prompt_dirs,
            **raw,
        )
    except ValidationError as e:
        for err in e.errors():
            if err["type"] == "missing":
                raise ConfigMissingField(".".join(str(p) for p in err["loc"])) from e
        raise ConfigInvalid(f"invalid configuration: {e}") from e


def load_config(repo_root: Path, config_path: Path | None = None) -> Configuration:
    """
    Load config by merging:
      1. Built-in defaults (mpca/config.yaml)
      2. Repo-level overrides (<repo>/.mpca/config.yaml, or config_path)
      3. Environment variable overrides (MPCA_ENDPOINT, MPCA_MODEL, ...)
    """
    repo_root = repo_root.resolve()

    # 1. Built-in defaults
    base = _load_defaults()

    # 2. Repo overrides
    if config_path is not None:
        if not config_path.exists():
            raise ConfigNotFound(config_path)
        base = _deep_merge(base, _read_yaml(config_path))
    else:
        repo_config = repo_root / ".mpca" / "config.yaml"
        if repo_config.exists():
            base = _deep_merge(base, _read_yaml(repo_config))

    # 3. Env overrides
    base = _deep_merge(base, _env_overrides())

    try:
        return _build(repo_root, base)
    except ValidationError as e:
        # WorkspaceConfig is validated before the main model
        raise ConfigInvalid(f"invalid workspace configuration: {e}") from e


def validate_api_keys() -> dict[str, bool]:
    """Check which API keys are available."""
    return {
        "ANTHROPIC_API_KEY": bool(os.environ.get("ANTHROPIC_API_KEY")),
        "OPENAI_API_KEY":    bool(os.environ.get("OPENAI_API_KEY")),
        "GOOGLE_API_KEY":    bool(os.environ.get("GOOGLE_API_KEY")),
        "GEMINI_API_KEY":    bool(os.environ.get("GEMINI_API_KEY")),
    }
