"""
Init workflow: prepare a repository for MPCA.

Creates .mpca/, the specs and trees dirs, a commented repo config,
ignores the trees dir, and adds an MPCA section to CLAUDE.md.
Every step leaves existing user content alone.
"""

from __future__ import annotations

from loguru import logger

from mpca.errors import AlreadyInitialized, PathNotFound
from mpca.executor import Step, StepContext, Workflow
from mpca.state import Phase
from mpca.workflows.common import check_repository, make_dir, relative_to_repo


CLAUDE_MD_MARKER = "<!-- mpca -->"

DEFAULT_REPO_CONFIG = """# MPCA repo-level config overrides
# These merge with the built-in defaults.

# Pick models per workflow:
# agent_modes:
#   plan:
#     model: "anthropic/claude-sonnet-4-20250514"
#   execute:
#     model: "openai/gpt-4o"

# Restrict what a workflow may touch (minimal | standard | full):
# tool_sets:
#   execute: full

# Verification:
# verify:
#   test_command: "cargo test --all"
#   timeout: 600

# What to do with a damaged state.toml (halt | archive):
# state:
#   on_corrupt: halt
"""


def _guard(ctx: StepContext) -> None:
    if ctx.options.get("force"):
        return
    if ctx.tools.exists(ctx.config.mpca_dir):
        raise AlreadyInitialized(ctx.config.mpca_dir)


def _write_config(ctx: StepContext) -> None:
    path = ctx.config.config_file
    if ctx.tools.exists(path):
        logger.info(f"[EXEC] Keeping existing {path}")
        return
    ctx.tools.write(path, DEFAULT_REPO_CONFIG)


def _update_gitignore(ctx: StepContext) -> None:
    path = ctx.config.repo_root / ".gitignore"
    entry = relative_to_repo(ctx, ctx.config.trees_dir).rstrip("/") + "/"

    try:
        content = ctx.tools.read(path)
    except PathNotFound:
        ctx.tools.write(path, f"# MPCA\n{entry}\n")
        return

    if entry in (line.strip() for line in content.splitlines()):
        return
    if content and not content.endswith("\n"):
        content += "\n"
    ctx.tools.write(path, f"{content}\n# MPCA\n{entry}\n")


def _update_claude_md(ctx: StepContext) -> None:
    path = ctx.config.claude_md
    section = ctx.prompts.render("claude_md", {
        "specs_dir": relative_to_repo(ctx, ctx.config.specs_dir),
        "trees_dir": relative_to_repo(ctx, ctx.config.trees_dir),
    })

    try:
        content = ctx.tools.read(path)
    except PathNotFound:
        ctx.tools.write(path, f"# {ctx.config.repo_root.name}\n\n{section}")
        return

    if CLAUDE_MD_MARKER in content:
        logger.info(f"[EXEC] {path.name} already has an MPCA section")
        return
    if not content.endswith("\n"):
        content += "\n"
    ctx.tools.write(path, f"{content}\n{section}")


def _build_steps(ctx: StepContext) -> list[Step]:
    return [
        check_repository(),
        make_dir("create-mpca-dir", lambda c: c.config.mpca_dir),
        make_dir("create-specs-dir", lambda c: c.config.specs_dir),
        make_dir("create-trees-dir", lambda c: c.config.trees_dir),
        Step("write-config", _write_config),
        Step("update-gitignore", _update_gitignore),
        Step("update-claude-md", _update_claude_md),
    ]


INIT = Workflow(
    name="init",
    target=Phase.INIT,
    build_steps=_build_steps,
    preflight=_guard,
)
