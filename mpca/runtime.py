"""
MPCA Runtime: The Composition Root

Holds the configuration, the adapters, the run-state store and the
prompt/agent collaborators. Each public operation builds one
WorkflowExecutor for one workflow and feature and returns what it
produced. No workflow logic lives here.
"""

from __future__ import annotations

import threading
from typing import Callable

from loguru import logger

from mpca.adapters.shell import LocalShell, Shell
from mpca.adapters.storage import LocalStorage, Storage
from mpca.adapters.vcs import GitAdapter, VCS
from mpca.agent import Agent, LiteLLMAgent
from mpca.config_loader import Configuration
from mpca.errors import FeatureAlreadyExists
from mpca.event_bus import EventBus, bus as default_bus
from mpca.executor import AgentFactory, Workflow, WorkflowExecutor
from mpca.prompts import PromptManager
from mpca.session import Frontend
from mpca.state import Phase, RunState, RunStateStore, validate_slug
from mpca.workflows import CHAT, EXECUTE, INIT, PLAN, REVIEW, VERIFY


# Workflow to re-invoke for an in-flight target phase
_RESUMABLE: dict[Phase, Workflow] = {
    Phase.PLAN: PLAN,
    Phase.RUN: EXECUTE,
    Phase.VERIFY: VERIFY,
}


class Runtime:

    def __init__(
        self,
        config: Configuration,
        storage: Storage | None = None,
        vcs: VCS | None = None,
        shell: Shell | None = None,
        agent_factory: AgentFactory | None = None,
        prompts: PromptManager | None = None,
        bus: EventBus | None = None,
    ):
        self.config = config
        self.storage = storage or LocalStorage(config.repo_root)
        self.vcs = vcs or GitAdapter(config.repo_root, config.trees_dir, config.git.base_branch)
        self.shell = shell or LocalShell()
        self.agent_factory = agent_factory or self._default_agent
        self.prompts = prompts or PromptManager(config.prompt_dirs)
        self.bus = bus or default_bus
        self.store = RunStateStore(self.storage, config.specs_dir)

    def _default_agent(self, workflow: str) -> Agent:
        return LiteLLMAgent(
            self.config.mode_for(workflow),
            endpoint=self.config.agent.endpoint,
            timeout=self.config.agent.timeout,
        )

    def _executor(self, workflow: Workflow, feature_slug: str | None, **options) -> WorkflowExecutor:
        return WorkflowExecutor(
            workflow,
            feature_slug,
            config=self.config,
            store=self.store,
            storage=self.storage,
            vcs=self.vcs,
            shell=self.shell,
            agent_factory=self.agent_factory,
            prompts=self.prompts,
            bus=self.bus,
            options=options,
        )

    # -----------------------------------------------------------------------
    # Workflows
    # -----------------------------------------------------------------------

    def init_project(self, feature_slug: str | None = None, force: bool = False) -> RunState | None:
        """
        Prepare the repository. With a feature slug, also create that
        feature's RunState at Init (or return the existing one); the
        project steps are skipped when the repo is already set up.
        """
        if feature_slug is not None:
            validate_slug(feature_slug)

        initialized = self.storage.exists(self.config.mpca_dir)
        if feature_slug is None or force or not initialized:
            self._executor(INIT, None, force=force).run()

        if feature_slug is None:
            return None
        try:
            return self.store.create(feature_slug)
        except FeatureAlreadyExists:
            logger.info(f"[RUNTIME] Feature {feature_slug} already exists")
            return self.store.load(feature_slug)

    def plan_feature(self, feature_slug: str, session: Frontend | None = None) -> RunState:
        return self._executor(PLAN, feature_slug, session=session).run()

    def run_feature(self, feature_slug: str) -> RunState:
        return self._executor(EXECUTE, feature_slug).run()

    def verify_feature(
        self,
        feature_slug: str,
        on_output: Callable[[str], None] | None = None,
        cancel: threading.Event | None = None,
    ) -> RunState:
        return self._executor(VERIFY, feature_slug, on_output=on_output, cancel=cancel).run()

    def review_feature(self, feature_slug: str) -> str | None:
        executor = self._executor(REVIEW, feature_slug)
        executor.run()
        return executor.outputs.get("reply")

    def chat(self, message: str) -> str:
        executor = self._executor(CHAT, None, message=message)
        executor.run()
        return executor.outputs["reply"]

    def resume_feature(self, feature_slug: str) -> RunState | None:
        """Re-invoke the in-flight workflow. None when nothing is in flight."""
        state = self.store.load(feature_slug)
        workflow = _RESUMABLE.get(state.target_phase) if state.target_phase else None
        if workflow is None:
            logger.info(f"[RUNTIME] Nothing to resume for {feature_slug} (at {state.phase.value})")
            return None
        logger.info(f"[RUNTIME] Resuming {workflow.name} for {feature_slug} at step {state.step}")
        return self._executor(workflow, feature_slug).run()

    # -----------------------------------------------------------------------
    # Queries
    # -----------------------------------------------------------------------

    def status(self, feature_slug: str) -> RunState:
        return self.store.load(feature_slug)

    def list_features(self) -> list[str]:
        return self.store.list_features()
