import pytest

from mpca.errors import InvalidTemplateContext, TemplateNotFound, TemplateRenderError
from mpca.prompts import PromptContext, PromptManager


def test_builtin_templates_are_listed(prompts):
    names = prompts.list_templates()
    for expected in ("plan", "execute", "review", "claude_md", "verification_report", "specs/verify"):
        assert expected in names


def test_render_plan(prompts, repo):
    text = prompts.render("plan", PromptContext(
        repo_root=str(repo),
        feature_slug="add-caching",
        spec_paths=["/x/README.md", "/x/verify.md"],
    ))
    assert 'feature called "add-caching"' in text
    assert "- /x/verify.md" in text


def test_render_resume_variant(prompts, repo):
    text = prompts.render("plan", PromptContext(repo_root=str(repo), feature_slug="add-caching", resume=True))
    assert "resuming" in text


def test_extra_vars_reach_the_template(prompts, repo):
    text = prompts.render("execute", PromptContext(
        repo_root=str(repo),
        feature_slug="add-caching",
        extra={"worktree": "/trees/add-caching", "branch": "feature/add-caching"},
    ))
    assert "Worktree: /trees/add-caching" in text
    assert "Branch: feature/add-caching" in text


def test_missing_template(prompts):
    with pytest.raises(TemplateNotFound):
        prompts.render("nope", {})


def test_missing_variable(prompts):
    with pytest.raises(InvalidTemplateContext):
        prompts.render("specs/readme", {})


def test_repo_templates_shadow_builtins(tmp_path, config):
    override = tmp_path / "prompts"
    override.mkdir()
    (override / "plan.j2").write_text("custom plan for {{ feature_slug }}")
    (override / "broken.j2").write_text("{% if %}")
    manager = PromptManager([override, *config.prompt_dirs[1:]])

    assert manager.render("plan", {"feature_slug": "add-caching"}) == "custom plan for add-caching"
    with pytest.raises(TemplateRenderError):
        manager.render("broken", {})
