"""
MPCA Executor: The Orchestration Loop

One executor run = one workflow invocation for one feature.

It is NOT smart. It is deterministic:
  - Resolve the feature's RunState (load, or create for init/plan)
  - Refuse illegal phase transitions before touching anything
  - Resolve the workflow's ToolPolicy once; every adapter call is
    checked against it before dispatch
  - Run the ordered steps, persisting RunState after each one, so the
    on-disk record is always a clean checkpoint
  - On failure, persist a failure marker and stop; on success, enter
    the target phase

A resumed run skips every step below the persisted step counter.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

from loguru import logger

from mpca.adapters.shell import CommandResult, CommandStream, Shell
from mpca.adapters.storage import Storage
from mpca.adapters.vcs import VCS
from mpca.agent import Agent, AgentReply
from mpca.config_loader import Configuration
from mpca.errors import (
    CorruptedState,
    FeatureNotFound,
    FeatureNotReady,
    MPCAError,
    PolicyViolation,
    StateMissing,
    UnexpectedError,
)
from mpca.event_bus import EventBus
from mpca.policy import Capability, ToolPolicy
from mpca.prompts import PromptManager
from mpca.state import Phase, RunState, RunStateStore, has_reached, is_retry, transition, validate_slug


AgentFactory = Callable[[str], Agent]


# ---------------------------------------------------------------------------
# Toolbox: policy pre-flight in front of every adapter
# ---------------------------------------------------------------------------

class Toolbox:
    """
    The only door from a workflow step to the adapters. Each call checks
    the workflow's ToolPolicy first; a denied call raises PolicyViolation
    and never reaches the adapter.
    """

    def __init__(
        self,
        workflow: str,
        policy: ToolPolicy,
        storage: Storage,
        vcs: VCS,
        shell: Shell,
        agent_factory: AgentFactory,
    ):
        self.workflow = workflow
        self.policy = policy
        self._storage = storage
        self._vcs = vcs
        self._shell = shell
        self._agent_factory = agent_factory
        self._agent: Agent | None = None
        self._exchanges: list[AgentReply] = []
        self._exchange_lock = threading.Lock()

    def _check(self, capability: Capability) -> None:
        if not self.policy.grants(capability):
            logger.warning(f"[EXEC] Denied {capability.value} for {self.workflow} ({self.policy.value})")
            raise PolicyViolation(capability.value, self.policy.value, self.workflow)

    # -- storage --

    def read(self, path: Path) -> str:
        self._check(Capability.STORAGE_READ)
        return self._storage.read(path)

    def exists(self, path: Path) -> bool:
        self._check(Capability.STORAGE_READ)
        return self._storage.exists(path)

    def write(self, path: Path, text: str) -> None:
        self._check(Capability.STORAGE_WRITE)
        self._storage.write(path, text)

    def mkdir_all(self, path: Path) -> None:
        self._check(Capability.STORAGE_MKDIR)
        self._storage.mkdir_all(path)

    def list(self, path: Path) -> list[str]:
        self._check(Capability.STORAGE_LIST)
        return self._storage.list(path)

    # -- version control --

    def is_repo(self, path: Path | None = None) -> bool:
        self._check(Capability.VCS_INSPECT)
        return self._vcs.is_repo(path)

    def status(self, cwd: Path | None = None) -> str:
        self._check(Capability.VCS_INSPECT)
        return self._vcs.status(cwd)

    def diff(self, cwd: Path | None = None) -> str:
        self._check(Capability.VCS_INSPECT)
        return self._vcs.diff(cwd)

    def create_worktree(self, name: str, branch: str) -> Path:
        self._check(Capability.VCS_WORKTREE)
        return self._vcs.create_worktree(name, branch)

    def remove_worktree(self, name: str, force: bool = False) -> None:
        self._check(Capability.VCS_WORKTREE)
        self._vcs.remove_worktree(name, force)

    def commit(self, message: str, cwd: Path | None = None) -> str | None:
        self._check(Capability.VCS_COMMIT)
        return self._vcs.commit(message, cwd)

    # -- commands --

    def run(self, cmd: str, args: list[str], cwd: Path, timeout: float | None = None) -> CommandResult:
        self._check(Capability.COMMAND_RUN)
        return self._shell.run(cmd, args, cwd, timeout)

    def stream(
        self,
        cmd: str,
        args: list[str],
        cwd: Path,
        cancel: threading.Event | None = None,
        timeout: float | None = None,
    ) -> CommandStream:
        self._check(Capability.COMMAND_STREAM)
        return self._shell.stream(cmd, args, cwd, cancel, timeout)

    # -- agent --

    def send(self, prompt: str) -> AgentReply:
        self._check(Capability.AGENT_SEND)
        if self._agent is None:
            self._agent = self._agent_factory(self.workflow)
        reply = self._agent.send(prompt)
        with self._exchange_lock:
            self._exchanges.append(reply)
        return reply

    def take_exchanges(self) -> list[AgentReply]:
        """Exchanges since the last call, for accounting against the step."""
        with self._exchange_lock:
            taken, self._exchanges = self._exchanges, []
        return taken

    def close(self) -> None:
        if self._agent is not None:
            self._agent.close()
            self._agent = None


# ---------------------------------------------------------------------------
# Steps
# ---------------------------------------------------------------------------

@dataclass
class StepContext:
    """What a step may touch. Steps never see the RunState or the store."""
    config: Configuration
    tools: Toolbox
    prompts: PromptManager
    feature_slug: str | None = None
    resume: bool = False
    options: dict[str, Any] = field(default_factory=dict)
    outputs: dict[str, Any] = field(default_factory=dict)

    @property
    def slug(self) -> str:
        if self.feature_slug is None:
            raise ValueError(f"{self.tools.workflow} step needs a feature slug")
        return self.feature_slug

    @property
    def feature_dir(self) -> Path:
        return self.config.feature_dir(self.slug)

    @property
    def specs_dir(self) -> Path:
        return self.feature_dir / "specs"

    @property
    def docs_dir(self) -> Path:
        return self.feature_dir / "docs"


@dataclass
class Step:
    """One externally visible unit of work. Must be safe to retry."""
    name: str
    run: Callable[[StepContext], None]


@dataclass
class Workflow:
    """
    A named, ordered list of steps. `target` is the phase the workflow
    moves a feature into; phase-free workflows (review, chat) leave it
    None and may instead name the phases they `require`.
    """
    name: str
    target: Phase | None
    build_steps: Callable[[StepContext], list[Step]]
    creates_feature: bool = False
    preflight: Callable[[StepContext], None] | None = None
    requires: tuple[Phase, ...] = ()


# ---------------------------------------------------------------------------
# Executor
# ---------------------------------------------------------------------------

class WorkflowExecutor:

    def __init__(
        self,
        workflow: Workflow,
        feature_slug: str | None,
        *,
        config: Configuration,
        store: RunStateStore,
        storage: Storage,
        vcs: VCS,
        shell: Shell,
        agent_factory: AgentFactory,
        prompts: PromptManager,
        bus: EventBus | None = None,
        options: dict[str, Any] | None = None,
    ):
        self.workflow = workflow
        self.feature_slug = feature_slug
        self.config = config
        self.store = store
        self.storage = storage
        self.vcs = vcs
        self.shell = shell
        self.agent_factory = agent_factory
        self.prompts = prompts
        self.bus = bus or EventBus()
        self.options = options or {}
        self.outputs: dict[str, Any] = {}

    def run(self) -> RunState | None:
        """
        Drive the workflow to its target phase. Returns the final RunState
        (None for a run without a feature). Raises the step's MPCAError,
        with slug/phase/step attached, after persisting it.
        """
        slug = self.feature_slug
        target = self.workflow.target

        if slug is not None:
            # Rejected slugs never reach an adapter
            validate_slug(slug)

        # Resolved once; never re-read mid-run
        policy = self.config.policy_for(self.workflow.name)
        tools = Toolbox(self.workflow.name, policy, self.storage, self.vcs, self.shell, self.agent_factory)
        ctx = StepContext(
            config=self.config,
            tools=tools,
            prompts=self.prompts,
            feature_slug=slug,
            options=self.options,
        )
        self.outputs = ctx.outputs

        try:
            if self.workflow.preflight is not None:
                try:
                    self.workflow.preflight(ctx)
                except MPCAError as e:
                    raise e.with_context(slug, target)

            state = self._enter(slug, target, ctx)
            if state is not None and target is not None and state.target_phase != target:
                logger.info(f"[EXEC] {slug} already reached {target.value} (at {state.phase.value}); nothing to do")
                return state

            tracked = state if target is not None else None
            steps = self.workflow.build_steps(ctx)
            for index, step in enumerate(steps):
                if tracked is not None and index < tracked.step:
                    logger.info(f"[EXEC] Skipping completed step {index} ({step.name})")
                    continue
                tracked = self._run_step(index, step, ctx, tracked)

            if tracked is not None:
                previous = tracked.phase
                state = self._save(tracked, RunState.complete)
                logger.info(f"[EXEC] {slug}: {previous.value} → {state.phase.value}")
                self._emit("phase_changed", {"from": previous.value, "to": state.phase.value})
        finally:
            tools.close()

        return state

    # -----------------------------------------------------------------------
    # Internals
    # -----------------------------------------------------------------------

    def _enter(self, slug: str | None, target: Phase | None, ctx: StepContext) -> RunState | None:
        """Load the feature's state and position it for this workflow."""
        if slug is None:
            return None

        state = self._resolve_state(slug)

        if target is None:
            if self.workflow.requires and state.phase not in self.workflow.requires:
                raise FeatureNotReady(
                    slug, state.phase, self.workflow.name,
                ).with_context(slug, state.phase, state.step)
            return state

        if state.target_phase == target:
            ctx.resume = True
            logger.info(
                f"[EXEC] Resuming {self.workflow.name} for {slug} at step {state.step}"
                + (f" after {state.failure.kind}" if state.failure else "")
            )
            return state

        # Already there or past it; leaves any later in-flight work untouched
        if has_reached(state.phase, target) and not is_retry(state.phase, target):
            return state

        try:
            transition(state.phase, target)
        except MPCAError as e:
            raise e.with_context(slug, state.phase, state.step)
        return self._save(state, lambda s: s.begin(target))

    def _resolve_state(self, slug: str) -> RunState:
        try:
            return self.store.load(slug)
        except StateMissing:
            if not self.workflow.creates_feature:
                raise FeatureNotFound(slug)
            return self.store.create(slug)
        except CorruptedState as e:
            if self.config.state.on_corrupt != "archive":
                raise
            logger.warning(f"[EXEC] {e}; archiving and starting {slug} over")
            self.store.archive(slug)
            return self.store.reset(slug)

    def _run_step(self, index: int, step: Step, ctx: StepContext, state: RunState | None) -> RunState | None:
        phase = self.workflow.target
        logger.debug(f"[EXEC] {self.workflow.name} step {index}: {step.name}")

        try:
            step.run(ctx)
        except MPCAError as e:
            self._fail(state, e.with_context(self.feature_slug, phase, index), step, ctx.tools.take_exchanges())
            raise
        except Exception as e:
            err = UnexpectedError(f"{step.name}: {e}").with_context(self.feature_slug, phase, index)
            self._fail(state, err, step, ctx.tools.take_exchanges())
            raise err from e

        exchanges = ctx.tools.take_exchanges()

        if state is not None:
            def _account(s: RunState) -> None:
                for reply in exchanges:
                    s.record_exchange(reply.cost)
                s.advance()

            try:
                state = self._save(state, _account)
            except MPCAError as e:
                raise e.with_context(self.feature_slug, phase, index)

        for reply in exchanges:
            self._emit("agent_exchange", {"step": index, "model": reply.model, "cost": reply.cost})
        self._emit("step_completed", {"step": index, "name": step.name})
        return state

    def _fail(self, state: RunState | None, err: MPCAError, step: Step, exchanges: list[AgentReply]) -> None:
        """
        Persist the failure marker. Exchanges the step paid for are still
        accounted, but the step counter does not move, so a resume repeats
        the step.
        """
        logger.error(f"[EXEC] {self.workflow.name} step '{step.name}' failed: {err}")
        for reply in exchanges:
            self._emit("agent_exchange", {"step": err.step, "model": reply.model, "cost": reply.cost})
        self._emit("step_failed", {"step": err.step, "name": step.name, "kind": err.kind, "message": err.message})
        if state is None:
            return

        def _mark(s: RunState) -> None:
            for reply in exchanges:
                s.record_exchange(reply.cost)
            s.fail(err.kind, err.message)

        try:
            self._save(state, _mark)
        except MPCAError:
            # The step error is what the caller needs to see
            logger.exception(f"[EXEC] Could not persist failure marker for {self.feature_slug}")

    def _save(self, state: RunState, mutate: Callable[[RunState], None]) -> RunState:
        """Apply `mutate` to a copy and persist it. Memory only moves on once disk has."""
        updated = state.model_copy(deep=True)
        mutate(updated)
        self.store.save(updated)
        return updated

    def _emit(self, event_type: str, payload: dict[str, Any]) -> None:
        self.bus.emit(event_type, self.workflow.name, payload, feature_slug=self.feature_slug)
