"""
Execute workflow: implement a planned feature in its own worktree.
"""

from __future__ import annotations

from loguru import logger

from mpca.errors import FeatureNotFound, WorktreeExists
from mpca.executor import Step, StepContext, Workflow
from mpca.state import Phase
from mpca.workflows.common import check_repository, prompt_context


def _check_specs(ctx: StepContext) -> None:
    if not ctx.tools.exists(ctx.specs_dir):
        raise FeatureNotFound(ctx.slug)


def _create_worktree(ctx: StepContext) -> None:
    branch = ctx.config.git.branch_for(ctx.slug)
    try:
        path = ctx.tools.create_worktree(ctx.slug, branch)
    except WorktreeExists as e:
        # Left over from an earlier attempt; reuse it
        logger.info(f"[EXEC] Reusing worktree {e.path}")
        return
    logger.info(f"[EXEC] Working in {path} on {branch}")


def _implementation_exchange(ctx: StepContext) -> None:
    prompt = ctx.prompts.render("execute", prompt_context(
        ctx,
        worktree=str(ctx.config.worktree_path(ctx.slug)),
        branch=ctx.config.git.branch_for(ctx.slug),
    ))
    reply = ctx.tools.send(prompt)
    ctx.tools.write(
        ctx.docs_dir / "execution_notes.md",
        f"# Execution Notes: {ctx.slug}\n\n{reply.content.strip()}\n",
    )
    ctx.outputs["reply"] = reply.content


def _commit(ctx: StepContext) -> None:
    sha = ctx.tools.commit(f"mpca: implement {ctx.slug}", ctx.config.worktree_path(ctx.slug))
    if sha is None:
        logger.info(f"[EXEC] Nothing to commit for {ctx.slug}")
    ctx.outputs["commit"] = sha


def _build_steps(ctx: StepContext) -> list[Step]:
    steps = [
        Step("check-specs", _check_specs),
        check_repository(),
        Step("create-worktree", _create_worktree),
        Step("implementation-exchange", _implementation_exchange),
    ]
    if ctx.config.git.auto_commit:
        steps.append(Step("commit", _commit))
    return steps


EXECUTE = Workflow(
    name="execute",
    target=Phase.RUN,
    build_steps=_build_steps,
)
