"""
MPCA Workflows

Each workflow is a named, ordered list of idempotent steps. The
executor owns ordering, persistence and resume; the modules here only
say what each step does.
"""

from mpca.executor import Workflow
from mpca.state import Phase
from mpca.workflows.execute import EXECUTE
from mpca.workflows.init import INIT
from mpca.workflows.plan import PLAN
from mpca.workflows.review import CHAT, REVIEW
from mpca.workflows.verify import VERIFY, TestResults, detect_test_command, parse_test_output

REGISTRY: dict[str, Workflow] = {wf.name: wf for wf in (INIT, PLAN, EXECUTE, VERIFY, REVIEW, CHAT)}

# Phase a workflow drives toward → workflow
BY_TARGET: dict[Phase, Workflow] = {
    wf.target: wf for wf in REGISTRY.values() if wf.target is not None
}

__all__ = [
    "BY_TARGET",
    "CHAT",
    "EXECUTE",
    "INIT",
    "PLAN",
    "REGISTRY",
    "REVIEW",
    "TestResults",
    "VERIFY",
    "detect_test_command",
    "parse_test_output",
]
