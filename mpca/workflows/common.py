"""
Helpers shared by the workflow step lists.
"""

from __future__ import annotations

from pathlib import Path

from loguru import logger

from mpca.errors import NotGitRepository, NotInitialized
from mpca.executor import Step, StepContext
from mpca.prompts import PromptContext


# (file name under specs/, template used for its placeholder)
SPEC_DOCS: tuple[tuple[str, str], ...] = (
    ("README.md", "specs/readme"),
    ("requirements.md", "specs/requirements"),
    ("design.md", "specs/design"),
    ("verify.md", "specs/verify"),
)


def spec_paths(ctx: StepContext) -> list[str]:
    return [str(ctx.specs_dir / name) for name, _ in SPEC_DOCS]


def prompt_context(ctx: StepContext, **extra) -> PromptContext:
    return PromptContext(
        repo_root=str(ctx.config.repo_root),
        feature_slug=ctx.feature_slug or "",
        spec_paths=spec_paths(ctx) if ctx.feature_slug else [],
        resume=ctx.resume,
        extra=extra,
    )


def relative_to_repo(ctx: StepContext, path: Path) -> str:
    try:
        return path.relative_to(ctx.config.repo_root).as_posix()
    except ValueError:
        return str(path)


def require_initialized(ctx: StepContext) -> None:
    if not ctx.tools.exists(ctx.config.mpca_dir):
        raise NotInitialized(ctx.config.mpca_dir)


def _check_repository(ctx: StepContext) -> None:
    if not ctx.tools.is_repo(ctx.config.repo_root):
        raise NotGitRepository(ctx.config.repo_root)
    logger.debug(f"[EXEC] {ctx.config.repo_root} is a git repository")


def check_repository() -> Step:
    return Step("check-repository", _check_repository)


def make_dir(name: str, path_of) -> Step:
    """mkdir -p as a step. Existing directories count as success."""

    def _run(ctx: StepContext) -> None:
        ctx.tools.mkdir_all(path_of(ctx))

    return Step(name, _run)
