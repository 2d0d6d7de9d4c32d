from __future__ import annotations

from pathlib import Path

import pytest

from mpca.adapters import MemoryStorage, MemoryVCS, ScriptedCommand, ScriptedShell
from mpca.agent import AgentReply, ScriptedAgent
from mpca.config_loader import Configuration
from mpca.event_bus import EventBus, MPCAEvent
from mpca.prompts import PromptManager
from mpca.runtime import Runtime


CARGO_PASS = (
    "running 10 tests\n"
    "test result: ok. 10 passed; 0 failed; 0 ignored; 0 measured; 0 filtered out\n"
)

CARGO_FAIL = (
    "running 10 tests\n"
    "test cache::tests::evicts_oldest ... FAILED\n"
    "test cache::tests::ttl_expires ... FAILED\n"
    "test result: FAILED. 8 passed; 2 failed; 0 ignored; 0 measured; 0 filtered out\n"
)


class ScriptedAgents:
    """
    Agent factory for the runtime. Every workflow run gets a fresh
    ScriptedAgent loaded with the replies scripted for that workflow.
    """

    def __init__(self, default_cost: float = 0.01):
        self.default_cost = default_cost
        self.scripts: dict[str, list] = {}
        self.created: list[tuple[str, ScriptedAgent]] = []

    def script(self, workflow: str, *replies: AgentReply | str | Exception) -> None:
        self.scripts.setdefault(workflow, []).extend(replies)

    def __call__(self, workflow: str) -> ScriptedAgent:
        agent = ScriptedAgent(self.scripts.pop(workflow, []), default_cost=self.default_cost)
        self.created.append((workflow, agent))
        return agent

    def prompts(self, workflow: str) -> list[str]:
        return [p for wf, agent in self.created if wf == workflow for p in agent.prompts]


@pytest.fixture
def repo(tmp_path) -> Path:
    path = tmp_path / "repo"
    path.mkdir()
    return path.resolve()


@pytest.fixture
def config(repo) -> Configuration:
    return Configuration.for_repo(repo, verify={"test_command": "cargo test"})


@pytest.fixture
def storage() -> MemoryStorage:
    return MemoryStorage()


@pytest.fixture
def vcs(config) -> MemoryVCS:
    return MemoryVCS(config.trees_dir)


@pytest.fixture
def shell() -> ScriptedShell:
    return ScriptedShell(ScriptedCommand(exit_code=0, output=CARGO_PASS))


@pytest.fixture
def agents() -> ScriptedAgents:
    return ScriptedAgents()


@pytest.fixture
def prompts(config) -> PromptManager:
    return PromptManager(config.prompt_dirs)


@pytest.fixture
def events() -> list[MPCAEvent]:
    return []


@pytest.fixture
def bus(events) -> EventBus:
    test_bus = EventBus()
    test_bus.subscribe(events.append)
    return test_bus


@pytest.fixture
def runtime(config, storage, vcs, shell, agents, prompts, bus) -> Runtime:
    return Runtime(
        config,
        storage=storage,
        vcs=vcs,
        shell=shell,
        agent_factory=agents,
        prompts=prompts,
        bus=bus,
    )


@pytest.fixture
def initialized(runtime) -> Runtime:
    runtime.init_project()
    return runtime


@pytest.fixture
def planned(initialized) -> Runtime:
    initialized.plan_feature("add-caching")
    return initialized
