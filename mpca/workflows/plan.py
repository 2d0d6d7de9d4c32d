"""
Plan workflow: draft a feature's spec documents.

Lays out <specs_dir>/<slug>/{specs,docs}, writes placeholder docs
(never overwriting), then has one planning exchange with the agent.
With a session front-end the exchange becomes an interactive
conversation whose transcript is saved instead.
"""

from __future__ import annotations

import asyncio

from loguru import logger

from mpca.executor import Step, StepContext, Workflow
from mpca.session import PlanningSession, drive
from mpca.state import Phase
from mpca.workflows.common import (
    SPEC_DOCS,
    check_repository,
    make_dir,
    prompt_context,
    require_initialized,
)


def _placeholder(filename: str, template: str) -> Step:

    def _run(ctx: StepContext) -> None:
        path = ctx.specs_dir / filename
        if ctx.tools.exists(path):
            logger.info(f"[EXEC] Keeping existing {path.name}")
            return
        ctx.tools.write(path, ctx.prompts.render(template, {"feature_slug": ctx.slug}))

    return Step(f"write-{filename.lower()}", _run)


def _planning_exchange(ctx: StepContext) -> None:
    prompt = ctx.prompts.render("plan", prompt_context(ctx))
    reply = ctx.tools.send(prompt)
    ctx.tools.write(
        ctx.docs_dir / "planning_notes.md",
        f"# Planning Notes: {ctx.slug}\n\n{reply.content.strip()}\n",
    )
    ctx.outputs["reply"] = reply.content


def _planning_session(ctx: StepContext) -> None:
    frontend = ctx.options["session"]
    session = PlanningSession(
        ctx.tools.send,
        initial_prompt=ctx.prompts.render("plan", prompt_context(ctx)),
    )
    asyncio.run(drive(session, frontend))

    ctx.tools.write(
        ctx.docs_dir / "planning_session.md",
        session.render_transcript(f"Planning Session: {ctx.slug}"),
    )
    ctx.outputs["transcript"] = session.transcript
    logger.info(f"[EXEC] Planning session for {ctx.slug}: {len(session.replies)} exchanges")

    # A session that ended on an agent failure has not produced a plan
    if session.error is not None:
        raise session.error


def _build_steps(ctx: StepContext) -> list[Step]:
    steps = [
        check_repository(),
        make_dir("create-specs-dir", lambda c: c.specs_dir),
        make_dir("create-docs-dir", lambda c: c.docs_dir),
    ]
    steps += [_placeholder(name, template) for name, template in SPEC_DOCS]

    if ctx.options.get("session") is not None:
        steps.append(Step("planning-session", _planning_session))
    else:
        steps.append(Step("planning-exchange", _planning_exchange))
    return steps


PLAN = Workflow(
    name="plan",
    target=Phase.PLAN,
    build_steps=_build_steps,
    creates_feature=True,
    preflight=require_initialized,
)
