import asyncio
import time

import pytest

from mpca.agent import ScriptedAgent
from mpca.errors import AgentRateLimited, AgentTransportError
from mpca.session import CHANNEL_CAPACITY, PlanningSession, drive


async def _wait_for(predicate, session, timeout=10.0):
    """Drain the agent channel until `predicate()` holds."""
    drained = []
    deadline = time.monotonic() + timeout
    while not predicate():
        assert time.monotonic() < deadline, "session did not settle"
        drained.extend(session.drain())
        await asyncio.sleep(0.01)
    drained.extend(session.drain())
    return drained


def test_rapid_input_never_blocks():
    agent = ScriptedAgent(delay=0.05)

    async def scenario():
        session = PlanningSession(agent.send)
        await session.start()

        started = time.monotonic()
        accepted = [session.submit(f"message {i}") for i in range(40)]
        elapsed = time.monotonic() - started

        await _wait_for(lambda: len(session.replies) == sum(accepted), session)
        await session.quit()
        return session, accepted, elapsed

    session, accepted, elapsed = asyncio.run(scenario())

    assert elapsed < 0.5
    # The channel holds CHANNEL_CAPACITY; the rest are reported busy
    assert CHANNEL_CAPACITY <= sum(accepted) < 40
    assert accepted[-1] is False
    assert session.busy
    assert len(agent.prompts) == sum(accepted)
    assert not session.running


def test_accepts_again_once_drained():
    agent = ScriptedAgent()

    async def scenario():
        session = PlanningSession(agent.send, capacity=1)
        assert session.submit("one")
        assert not session.submit("two")
        await session.start()
        await _wait_for(lambda: len(session.replies) == 1, session)
        assert session.submit("three")
        await _wait_for(lambda: len(session.replies) == 2, session)
        await session.quit()
        return session

    session = asyncio.run(scenario())
    assert not session.busy
    assert agent.prompts == ["one", "three"]


def test_quit_drops_unsent_messages():
    agent = ScriptedAgent(delay=0.02)

    async def scenario():
        session = PlanningSession(agent.send, initial_prompt="Plan add-caching.")
        await session.start()
        for text in ("a", "b", "c"):
            session.submit(text)
        await session.quit()
        return session

    session = asyncio.run(scenario())

    # The opening exchange finishes; queued input never reaches the agent
    assert agent.prompts == ["Plan add-caching."]
    roles = [m.role for m in session.transcript]
    assert roles.count("dropped") == 3
    assert roles.count("assistant") == 1
    assert [m.content for m in session.transcript if m.role == "dropped"] == ["a", "b", "c"]
    assert not session.running


def test_quit_is_prompt_under_a_full_channel():
    agent = ScriptedAgent(delay=0.1)

    async def scenario():
        session = PlanningSession(agent.send)
        await session.start()
        for i in range(40):
            session.submit(f"message {i}")
        await asyncio.sleep(0.05)
        started = time.monotonic()
        await session.quit()
        return time.monotonic() - started

    elapsed = asyncio.run(scenario())
    assert elapsed < 1.0
    # Only the exchange already underway was sent
    assert len(agent.prompts) <= 1


def test_recoverable_errors_are_retried():
    agent = ScriptedAgent([AgentRateLimited("slow down"), "Here is a plan."])

    async def scenario():
        session = PlanningSession(agent.send, retry_wait_max=1.0)
        await session.start()
        session.submit("hello")
        messages = await _wait_for(lambda: session.replies, session)
        await session.quit()
        return messages

    messages = asyncio.run(scenario())
    assert [m.content for m in messages] == ["Here is a plan."]
    assert len(agent.prompts) == 2


def test_agent_errors_are_reported_and_session_continues():
    agent = ScriptedAgent([AgentTransportError("connection reset"), "second try"])

    async def scenario():
        session = PlanningSession(agent.send)
        await session.start()
        session.submit("first")
        session.submit("second")
        messages = await _wait_for(lambda: session.replies, session)
        await session.quit()
        return messages

    messages = asyncio.run(scenario())
    assert [m.role for m in messages] == ["error", "assistant"]
    assert "connection reset" in messages[0].content


def test_drive_quits_when_frontend_fails():
    agent = ScriptedAgent()
    seen = {}

    async def frontend(session):
        seen["session"] = session
        raise RuntimeError("terminal closed")

    with pytest.raises(RuntimeError):
        asyncio.run(drive(PlanningSession(agent.send), frontend))

    assert not seen["session"].running


def test_render_transcript():
    agent = ScriptedAgent(["Use an LRU cache."])

    async def scenario():
        session = PlanningSession(agent.send)
        await session.start()
        session.submit("How should we cache?")
        await _wait_for(lambda: session.replies, session)
        await session.quit()
        return session

    text = asyncio.run(scenario()).render_transcript("Planning Session: add-caching")
    assert text.startswith("# Planning Session: add-caching\n")
    assert "## User (" in text
    assert "## Assistant (" in text
    assert text.index("How should we cache?") < text.index("Use an LRU cache.")
