"""
MPCA Interactive Session

The agent runs as its own asyncio task and talks to the front-end over
two one-way channels:

    user → agent    bounded; the front-end only ever put_nowait()s, so a
                    full channel shows up as "busy", never as a hang
    agent → user    bounded; drained by the front-end on every pass

Quitting drops the user messages the agent has not picked up, sends a
sentinel, and waits for the agent task to disconnect and finish.
`error` holds the last agent failure, cleared by the next good exchange.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable

from loguru import logger
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from mpca.agent import AgentReply
from mpca.errors import AgentError, RecoverableAgentError


CHANNEL_CAPACITY = 32

_QUIT = object()


@dataclass
class SessionMessage:
    role: str  # "user" | "assistant" | "error" | "dropped"
    content: str
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


SendFn = Callable[[str], AgentReply]
Frontend = Callable[["PlanningSession"], Awaitable[None]]


class PlanningSession:
    """
    Bridges a blocking `send(prompt) -> AgentReply` into an async
    conversation. The blocking call runs in a worker thread so the event
    loop stays free for input handling and redraws.
    """

    def __init__(
        self,
        send: SendFn,
        initial_prompt: str | None = None,
        capacity: int = CHANNEL_CAPACITY,
        retry_attempts: int = 3,
        retry_wait_max: float = 10.0,
    ):
        self._send = send
        self.initial_prompt = initial_prompt
        self.retry_attempts = retry_attempts
        self.retry_wait_max = retry_wait_max
        self.to_agent: asyncio.Queue = asyncio.Queue(maxsize=capacity)
        self.to_user: asyncio.Queue = asyncio.Queue(maxsize=capacity)
        self.transcript: list[SessionMessage] = []
        self.replies: list[AgentReply] = []
        self.busy = False
        self.error: AgentError | None = None
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._agent_loop(), name="mpca-agent")
            logger.debug("[SESSION] Agent task started")

    # -----------------------------------------------------------------------
    # Front-end side
    # -----------------------------------------------------------------------

    def submit(self, text: str) -> bool:
        """Queue a user message without waiting. False means the agent is busy."""
        try:
            self.to_agent.put_nowait(text)
        except asyncio.QueueFull:
            self.busy = True
            logger.debug("[SESSION] Agent channel full; input rejected")
            return False
        self.busy = False
        self.transcript.append(SessionMessage("user", text))
        return True

    def drain(self, limit: int | None = None) -> list[SessionMessage]:
        """Take every pending agent message (up to `limit`) without waiting."""
        drained: list[SessionMessage] = []
        while limit is None or len(drained) < limit:
            try:
                drained.append(self.to_user.get_nowait())
            except asyncio.QueueEmpty:
                break
        return drained

    async def quit(self) -> None:
        """
        Ask the agent to disconnect and wait for it to finish. Messages it
        has not picked up yet are dropped; an exchange already underway
        completes.
        """
        if self._task is None:
            return
        if not self._task.done():
            while True:
                try:
                    pending = self.to_agent.get_nowait()
                except asyncio.QueueEmpty:
                    break
                self.transcript.append(SessionMessage("dropped", pending))
            await self.to_agent.put(_QUIT)
        try:
            await self._task
        finally:
            self._task = None
        logger.debug("[SESSION] Agent task finished")

    # -----------------------------------------------------------------------
    # Agent side
    # -----------------------------------------------------------------------

    async def _agent_loop(self) -> None:
        if self.initial_prompt:
            await self._exchange(self.initial_prompt)

        while True:
            message = await self.to_agent.get()
            if message is _QUIT:
                break
            await self._exchange(message)

    async def _exchange(self, prompt: str) -> None:
        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception_type(RecoverableAgentError),
                stop=stop_after_attempt(self.retry_attempts),
                wait=wait_exponential(min=1, max=self.retry_wait_max),
                reraise=True,
            ):
                with attempt:
                    reply = await asyncio.to_thread(self._send, prompt)
        except AgentError as e:
            logger.error(f"[SESSION] Exchange failed: {e}")
            self.error = e
            await self._publish(SessionMessage("error", f"Error: {e}"))
            return

        self.error = None
        self.replies.append(reply)
        await self._publish(SessionMessage("assistant", reply.content))

    async def _publish(self, message: SessionMessage) -> None:
        self.transcript.append(message)
        await self.to_user.put(message)

    # -----------------------------------------------------------------------
    # Transcript
    # -----------------------------------------------------------------------

    def render_transcript(self, title: str) -> str:
        lines = [f"# {title}", ""]
        for msg in self.transcript:
            lines.append(f"## {msg.role.capitalize()} ({msg.timestamp})")
            lines.append("")
            lines.append(msg.content.strip())
            lines.append("")
        return "\n".join(lines)


async def drive(session: PlanningSession, frontend: Frontend) -> None:
    """Run a front-end against a session, always shutting the agent down."""
    await session.start()
    try:
        await frontend(session)
    finally:
        await session.quit()
