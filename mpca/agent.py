"""
MPCA Agent: Vendor-Agnostic Conversational Endpoint

One exchange = one prompt in, one reply out. Calls go through LiteLLM
so the orchestrator never knows which vendor is answering. Failures
come back typed: auth, rate-limit and timeout are recoverable (the
front-end may wait and resend), transport errors are not. Nothing in
here retries.
"""

from __future__ import annotations

import threading
import time
from abc import ABC, abstractmethod
from typing import Any

import litellm
from loguru import logger
from pydantic import BaseModel

from mpca.config_loader import AgentMode
from mpca.errors import (
    AgentAuthError,
    AgentError,
    AgentRateLimited,
    AgentTimeout,
    AgentTransportError,
)


SYSTEM_PROMPT = (
    "You are the planning and implementation partner inside MPCA, a tool that "
    "drives one software feature at a time through plan, run and verify phases. "
    "Be concrete. Prefer small, verifiable steps."
)

CODE_PRESET = (
    "You are working inside a git repository. When you propose changes, name "
    "every file you touch and keep diffs minimal. Never invent APIs."
)


class AgentReply(BaseModel):
    content: str
    model: str = ""
    tokens_used: int = 0
    cost: float = 0.0
    latency_ms: int = 0


class Agent(ABC):
    """Capability contract for the external conversational agent."""

    @abstractmethod
    def send(self, prompt: str) -> AgentReply:
        ...

    def close(self) -> None:
        """Disconnect. Safe to call more than once."""


# ---------------------------------------------------------------------------
# Model capability helpers
# ---------------------------------------------------------------------------

def _is_gpt5_model(model: str) -> bool:
    """GPT-5 family models have restricted parameter support."""
    normalized = model.lower().replace("openai/", "")
    return normalized.startswith("gpt-5")


def _is_o_series_model(model: str) -> bool:
    """OpenAI o-series reasoning models don't support temperature."""
    normalized = model.lower().replace("openai/", "")
    return normalized.startswith("o1") or normalized.startswith("o3") or normalized.startswith("o4")


def _build_kwargs(
    mode: AgentMode,
    messages: list[dict[str, str]],
    endpoint: str | None,
    timeout: float,
) -> dict[str, Any]:
    """
    Build LiteLLM kwargs with per-model param filtering.
    Different model families support different parameters.
    """
    kwargs: dict[str, Any] = {
        "model": mode.model,
        "messages": messages,
        "max_tokens": mode.max_tokens,
        "timeout": timeout,
    }

    # GPT-5 and o-series models don't support arbitrary temperature
    if not _is_gpt5_model(mode.model) and not _is_o_series_model(mode.model):
        kwargs["temperature"] = mode.temperature

    if endpoint:
        kwargs["api_base"] = endpoint

    return kwargs


def _exchange_cost(response: Any) -> float:
    try:
        return float(litellm.completion_cost(completion_response=response))
    except Exception as e:  # unknown model pricing
        logger.debug(f"[AGENT] No cost data for response: {e}")
        return 0.0


# ---------------------------------------------------------------------------
# LiteLLM agent
# ---------------------------------------------------------------------------

class LiteLLMAgent(Agent):
    """
    Conversational agent backed by LiteLLM. Keeps the running message
    history so an interactive session reads as one conversation.
    """

    def __init__(
        self,
        mode: AgentMode,
        endpoint: str | None = None,
        timeout: float = 120.0,
        system_prompt: str = SYSTEM_PROMPT,
    ):
        self.mode = mode
        self.endpoint = endpoint
        self.timeout = timeout
        system = system_prompt
        if mode.use_code_preset:
            system = f"{system}\n\n{CODE_PRESET}"
        self.messages: list[dict[str, str]] = [{"role": "system", "content": system}]
        self._closed = False

        litellm.suppress_debug_info = True

    def send(self, prompt: str) -> AgentReply:
        if self._closed:
            raise AgentTransportError("agent connection is closed")

        messages = [*self.messages, {"role": "user", "content": prompt}]
        kwargs = _build_kwargs(self.mode, messages, self.endpoint, self.timeout)
        start = time.monotonic()

        logger.debug(f"[AGENT] → {self.mode.model} ({len(messages)} messages)")

        try:
            response = litellm.completion(**kwargs)
        except litellm.AuthenticationError as e:
            raise AgentAuthError(f"authentication failed for {self.mode.model}: {e}") from e
        except litellm.RateLimitError as e:
            raise AgentRateLimited(f"rate limited by {self.mode.model}: {e}") from e
        except litellm.Timeout as e:
            raise AgentTimeout(f"{self.mode.model} did not answer within {self.timeout:g}s") from e
        except (
            litellm.APIConnectionError,
            litellm.APIError,
            litellm.BadRequestError,
            litellm.ServiceUnavailableError,
            litellm.InternalServerError,
        ) as e:
            raise AgentTransportError(f"{self.mode.model} request failed: {e}") from e

        elapsed_ms = int((time.monotonic() - start) * 1000)
        content = response.choices[0].message.content or ""
        cost = _exchange_cost(response)
        tokens = getattr(getattr(response, "usage", None), "total_tokens", 0) or 0

        self.messages = [*messages, {"role": "assistant", "content": content}]

        logger.debug(f"[AGENT] ← {self.mode.model}: {tokens} tokens, ${cost:.4f}, {elapsed_ms}ms")

        return AgentReply(
            content=content,
            model=self.mode.model,
            tokens_used=tokens,
            cost=cost,
            latency_ms=elapsed_ms,
        )

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            logger.debug(f"[AGENT] Disconnected from {self.mode.model}")


# ---------------------------------------------------------------------------
# Scripted double
# ---------------------------------------------------------------------------

class ScriptedAgent(Agent):
    """
    Replays scripted replies (or raises scripted AgentErrors) in order,
    then falls back to an acknowledgement costing `default_cost`.
    Records every prompt it was sent.
    """

    def __init__(
        self,
        replies: list[AgentReply | str | AgentError] | None = None,
        default_cost: float = 0.01,
        delay: float = 0.0,
    ):
        self.replies = list(replies or [])
        self.default_cost = default_cost
        self.delay = delay
        self.prompts: list[str] = []
        self.closed = False
        self._lock = threading.Lock()

    def send(self, prompt: str) -> AgentReply:
        if self.closed:
            raise AgentTransportError("agent connection is closed")
        with self._lock:
            self.prompts.append(prompt)
            scripted = self.replies.pop(0) if self.replies else None
        if self.delay:
            time.sleep(self.delay)

        if isinstance(scripted, AgentError):
            raise scripted
        if isinstance(scripted, AgentReply):
            return scripted
        content = scripted if isinstance(scripted, str) else f"ack: {prompt[:60]}"
        return AgentReply(content=content, model="scripted", cost=self.default_cost, tokens_used=len(prompt.split()))

    def close(self) -> None:
        self.closed = True
