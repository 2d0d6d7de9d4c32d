import shutil
import subprocess

import pytest
from typer.testing import CliRunner

from mpca import __version__
from mpca.cli import app

runner = CliRunner()


@pytest.fixture
def git_repo(tmp_path):
    path = tmp_path / "repo"
    path.mkdir()
    subprocess.run(["git", "init", "-q"], cwd=path, check=True)
    return path


def test_version():
    result = runner.invoke(app, ["--version"])
    assert result.exit_code == 0
    assert f"MPCA v{__version__}" in result.stdout


def test_status_without_features(tmp_path):
    result = runner.invoke(app, ["status", "--repo", str(tmp_path)])
    assert result.exit_code == 0
    assert "API Keys" in result.stdout
    assert "No features yet" in result.stdout


def test_plan_before_init_reports_error(tmp_path):
    result = runner.invoke(app, ["plan", "add-caching", "--repo", str(tmp_path)])
    assert result.exit_code == 1
    assert "Error (not_initialized)" in result.stdout


def test_invalid_slug_reports_error(tmp_path):
    result = runner.invoke(app, ["run", "Add_Caching", "--repo", str(tmp_path)])
    assert result.exit_code == 1
    assert "Error (invalid_slug)" in result.stdout


def test_missing_repository(tmp_path):
    result = runner.invoke(app, ["status", "--repo", str(tmp_path / "nope")])
    assert result.exit_code == 1
    assert "Repository not found" in result.stdout


@pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")
def test_init_and_status(git_repo):
    result = runner.invoke(app, ["init", "--feature", "add-caching", "--repo", str(git_repo)])
    assert result.exit_code == 0, result.stdout
    assert "Initialized MPCA" in result.stdout
    assert (git_repo / ".mpca" / "config.yaml").exists()
    assert (git_repo / ".mpca" / "specs" / "add-caching" / "state.toml").exists()
    assert ".trees/" in (git_repo / ".gitignore").read_text()

    result = runner.invoke(app, ["status", "--repo", str(git_repo)])
    assert result.exit_code == 0
    assert "add-caching" in result.stdout
    assert "Init" in result.stdout

    result = runner.invoke(app, ["init", "--repo", str(git_repo)])
    assert result.exit_code == 1
    assert "Error (already_initialized)" in result.stdout


@pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")
def test_resume_with_nothing_in_flight(git_repo):
    runner.invoke(app, ["init", "--feature", "add-caching", "--repo", str(git_repo)])
    result = runner.invoke(app, ["resume", "add-caching", "--repo", str(git_repo)])
    assert result.exit_code == 0
    assert "Nothing to resume" in result.stdout
