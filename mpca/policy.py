"""
MPCA Tool Policy

Per-workflow capability grants. A workflow resolves its ToolPolicy once
at execution start; every adapter call is checked against the grant
before it is dispatched.
"""

from __future__ import annotations

from enum import Enum


class Capability(str, Enum):
    STORAGE_READ = "storage.read"
    STORAGE_WRITE = "storage.write"
    STORAGE_MKDIR = "storage.mkdir"
    STORAGE_LIST = "storage.list"
    VCS_INSPECT = "vcs.inspect"
    VCS_WORKTREE = "vcs.worktree"
    VCS_COMMIT = "vcs.commit"
    COMMAND_RUN = "command.run"
    COMMAND_STREAM = "command.stream"
    AGENT_SEND = "agent.send"


class ToolPolicy(str, Enum):
    """Ordered grant levels: each one includes everything below it."""

    MINIMAL = "minimal"
    STANDARD = "standard"
    FULL = "full"

    @property
    def rank(self) -> int:
        return _ORDER.index(self)

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, ToolPolicy):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other: object) -> bool:
        if not isinstance(other, ToolPolicy):
            return NotImplemented
        return self.rank <= other.rank

    def grants(self, capability: Capability) -> bool:
        return capability in GRANTS[self]


_ORDER = [ToolPolicy.MINIMAL, ToolPolicy.STANDARD, ToolPolicy.FULL]

_MINIMAL = frozenset({
    Capability.STORAGE_READ,
    Capability.STORAGE_WRITE,
    Capability.STORAGE_MKDIR,
    Capability.STORAGE_LIST,
    Capability.VCS_INSPECT,
})

# Agent exchange and command execution on top of local file work.
_STANDARD = _MINIMAL | {
    Capability.AGENT_SEND,
    Capability.COMMAND_RUN,
    Capability.COMMAND_STREAM,
}

# Repository mutation.
_FULL = _STANDARD | {
    Capability.VCS_WORKTREE,
    Capability.VCS_COMMIT,
}

GRANTS: dict[ToolPolicy, frozenset[Capability]] = {
    ToolPolicy.MINIMAL: _MINIMAL,
    ToolPolicy.STANDARD: frozenset(_STANDARD),
    ToolPolicy.FULL: frozenset(_FULL),
}
