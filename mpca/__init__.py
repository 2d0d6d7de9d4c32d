"""
MPCA: Multi-Phase Coding Agent

Drives a feature through init, plan, run and verify against a git
repository, persisting a resumable RunState after every step.
"""

from mpca.identity import __codename__, __tagline__, __version__

__all__ = ["__codename__", "__tagline__", "__version__"]
