"""
MPCA Adapters

Capability boundaries between the orchestrator and the outside world.
Each has a real implementation and an in-memory double that records
calls and returns scripted outcomes.
"""

from mpca.adapters.shell import (
    CommandResult,
    CommandStream,
    LocalShell,
    ScriptedCommand,
    ScriptedShell,
    Shell,
)
from mpca.adapters.storage import LocalStorage, MemoryStorage, Storage
from mpca.adapters.vcs import GitAdapter, MemoryVCS, VCS

__all__ = [
    "CommandResult",
    "CommandStream",
    "GitAdapter",
    "LocalShell",
    "LocalStorage",
    "MemoryStorage",
    "MemoryVCS",
    "ScriptedCommand",
    "ScriptedShell",
    "Shell",
    "Storage",
    "VCS",
]
