from pathlib import Path

import pydantic
import pytest

from mpca.config_loader import Configuration, load_config
from mpca.errors import ConfigInvalid, ConfigNotFound, ConfigParseError
from mpca.policy import ToolPolicy


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for var in ("MPCA_ENDPOINT", "MPCA_MODEL", "MPCA_AGENT_TIMEOUT"):
        monkeypatch.delenv(var, raising=False)


def test_defaults(repo):
    config = load_config(repo)
    assert config.repo_root == repo
    assert config.mpca_dir == repo / ".mpca"
    assert config.specs_dir == repo / ".mpca" / "specs"
    assert config.trees_dir == repo / ".trees"
    assert config.claude_md == repo / "CLAUDE.md"
    assert config.prompt_dirs[0] == repo / ".mpca" / "prompts"
    assert config.git.auto_commit is True
    assert config.git.branch_for("add-caching") == "feature/add-caching"
    assert config.state.on_corrupt == "halt"
    assert config.verify.test_command is None


def test_default_tool_sets(repo):
    config = load_config(repo)
    assert config.policy_for("init") == ToolPolicy.MINIMAL
    assert config.policy_for("plan") == ToolPolicy.STANDARD
    assert config.policy_for("execute") == ToolPolicy.FULL
    assert config.policy_for("verify") == ToolPolicy.STANDARD
    assert config.policy_for("review") == ToolPolicy.STANDARD
    assert config.policy_for("chat") == ToolPolicy.STANDARD


def test_unknown_workflow(repo):
    with pytest.raises(ValueError, match="Unknown workflow"):
        load_config(repo).policy_for("deploy")


def test_repo_overrides_merge(repo):
    (repo / ".mpca").mkdir()
    (repo / ".mpca" / "config.yaml").write_text(
        "git:\n"
        "  auto_commit: false\n"
        "tool_sets:\n"
        "  execute: standard\n"
        "agent_modes:\n"
        "  plan:\n"
        "    temperature: 0.9\n"
        "state:\n"
        "  on_corrupt: archive\n"
    )
    config = load_config(repo)
    assert config.git.auto_commit is False
    assert config.git.branch_naming == "feature/{feature_slug}"
    assert config.policy_for("execute") == ToolPolicy.STANDARD
    assert config.mode_for("plan").temperature == 0.9
    assert config.mode_for("plan").max_tokens == 8192
    assert config.state.on_corrupt == "archive"


def test_env_overrides(repo, monkeypatch):
    monkeypatch.setenv("MPCA_MODEL", "openai/gpt-4o")
    monkeypatch.setenv("MPCA_ENDPOINT", "http://localhost:4000")
    config = load_config(repo)
    assert config.mode_for("execute").model == "openai/gpt-4o"
    assert config.mode_for("chat").model == "openai/gpt-4o"
    assert config.agent.endpoint == "http://localhost:4000"


def test_configuration_is_frozen(repo):
    config = load_config(repo)
    with pytest.raises(pydantic.ValidationError):
        config.trees_dir = Path("/elsewhere")


def test_broken_yaml(repo):
    (repo / ".mpca").mkdir()
    (repo / ".mpca" / "config.yaml").write_text("git: [unclosed\n")
    with pytest.raises(ConfigParseError):
        load_config(repo)


def test_invalid_value(repo):
    (repo / ".mpca").mkdir()
    (repo / ".mpca" / "config.yaml").write_text("tool_sets:\n  execute: everything\n")
    with pytest.raises(ConfigInvalid):
        load_config(repo)


def test_unknown_key_is_invalid(repo):
    (repo / ".mpca").mkdir()
    (repo / ".mpca" / "config.yaml").write_text("git:\n  autocommit: false\n")
    with pytest.raises(ConfigInvalid):
        load_config(repo)


def test_explicit_config_path_must_exist(repo):
    with pytest.raises(ConfigNotFound):
        load_config(repo, repo / "nope.yaml")


def test_for_repo_overrides(repo):
    config = Configuration.for_repo(repo, verify={"test_command": "make check"})
    assert config.verify.test_command == "make check"
    assert config.verify.timeout == 600
