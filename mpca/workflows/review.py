"""
Review and chat: agent workflows that do not move a feature's phase.
"""

from __future__ import annotations

from loguru import logger

from mpca.executor import Step, StepContext, Workflow
from mpca.state import Phase
from mpca.workflows.common import prompt_context


REVIEW_FILE = "review.md"


def _review_exchange(ctx: StepContext) -> None:
    worktree = ctx.config.worktree_path(ctx.slug)
    cwd = worktree if ctx.tools.exists(worktree) else ctx.config.repo_root

    prompt = ctx.prompts.render("review", prompt_context(
        ctx,
        reviewers=list(ctx.config.review.reviewers),
        status=ctx.tools.status(cwd),
        diff=ctx.tools.diff(cwd),
    ))
    reply = ctx.tools.send(prompt)
    ctx.tools.write(
        ctx.feature_dir / REVIEW_FILE,
        f"# Review: {ctx.slug}\n\n{reply.content.strip()}\n",
    )
    ctx.outputs["reply"] = reply.content


def _build_review_steps(ctx: StepContext) -> list[Step]:
    if not ctx.config.review.enabled:
        logger.info("[EXEC] Review is disabled in config")
        return []
    return [Step("review-exchange", _review_exchange)]


REVIEW = Workflow(
    name="review",
    target=None,
    build_steps=_build_review_steps,
    requires=(Phase.RUN, Phase.VERIFY),
)


def _chat_exchange(ctx: StepContext) -> None:
    reply = ctx.tools.send(ctx.options["message"])
    ctx.outputs["reply"] = reply.content
    ctx.outputs["cost"] = reply.cost


CHAT = Workflow(
    name="chat",
    target=None,
    build_steps=lambda ctx: [Step("chat-exchange", _chat_exchange)],
)
