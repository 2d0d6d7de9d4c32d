"""
Verify workflow: prove a feature against its verification spec.

  1. Load specs/verify.md (missing → VerificationSpecMissing)
  2. Run the test command in the feature's worktree (or the repo root),
     save the raw output and a Markdown report, and fail the step when
     any test failed

The test command comes from config (verify.test_command) or is
detected from the files at the working directory. With an output
callback the command is streamed and can be cancelled mid-run.
"""

from __future__ import annotations

import re
import shlex
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from loguru import logger

from mpca.errors import (
    CommandTimeout,
    PathNotFound,
    TestsFailed,
    VerificationFailed,
    VerificationSpecMissing,
    VerificationTimeout,
)
from mpca.executor import Step, StepContext, Workflow
from mpca.state import Phase


TEST_OUTPUT_LOG = "last_test_output.log"
REPORT_FILE = "verification_report.md"

# Marker file → test command, first match wins
_TEST_COMMANDS: tuple[tuple[tuple[str, ...], str], ...] = (
    (("Cargo.toml",), "cargo test"),
    (("package.json",), "npm test"),
    (("pyproject.toml", "setup.py"), "python -m pytest"),
    (("go.mod",), "go test ./..."),
    (("Makefile",), "make test"),
)


# ---------------------------------------------------------------------------
# Test output parsing
# ---------------------------------------------------------------------------

@dataclass
class TestResults:
    __test__ = False

    passed: int = 0
    failed: int = 0
    ignored: int = 0
    exit_code: int = 0
    parsed: bool = False

    @property
    def total(self) -> int:
        return self.passed + self.failed + self.ignored

    @property
    def ok(self) -> bool:
        return self.failed == 0 and self.exit_code == 0


_CARGO_LINE = "test result:"
_PYTEST_SUMMARY = re.compile(r"^=+ (?P<body>.+?) in [\d.]+s\b.*=+$")
_COUNT = re.compile(r"(\d+) (passed|failed|ignored|skipped|errors?|xfailed|xpassed)\b")

# pytest/cargo word → TestResults field
_BUCKETS = {
    "passed": "passed",
    "xpassed": "passed",
    "failed": "failed",
    "error": "failed",
    "errors": "failed",
    "ignored": "ignored",
    "skipped": "ignored",
    "xfailed": "ignored",
}


def parse_test_output(output: str, exit_code: int = 0) -> TestResults:
    """
    Sum the counts from every cargo `test result:` line (one per test
    binary), or take them from pytest's final summary line.
    """
    results = TestResults(exit_code=exit_code)

    for line in output.splitlines():
        line = line.strip()
        if _CARGO_LINE in line:
            body = line.split(_CARGO_LINE, 1)[1]
        else:
            match = _PYTEST_SUMMARY.match(line)
            if not match:
                continue
            body = match.group("body")

        counts = _COUNT.findall(body)
        if not counts:
            continue
        results.parsed = True
        for number, word in counts:
            field = _BUCKETS[word]
            setattr(results, field, getattr(results, field) + int(number))

    return results


def detect_test_command(ctx: StepContext, cwd: Path) -> str | None:
    """Auto-detect the test command based on the working directory's contents."""
    for markers, command in _TEST_COMMANDS:
        if any(ctx.tools.exists(cwd / marker) for marker in markers):
            return command
    return None


# ---------------------------------------------------------------------------
# Steps
# ---------------------------------------------------------------------------

def _read_verify_spec(ctx: StepContext) -> str:
    path = ctx.specs_dir / "verify.md"
    try:
        return ctx.tools.read(path)
    except PathNotFound as e:
        raise VerificationSpecMissing(ctx.slug, path) from e


def _load_verify_spec(ctx: StepContext) -> None:
    spec = _read_verify_spec(ctx)
    logger.debug(f"[EXEC] Loaded verify spec for {ctx.slug} ({len(spec)} chars)")


def _working_dir(ctx: StepContext) -> Path:
    worktree = ctx.config.worktree_path(ctx.slug)
    if ctx.tools.exists(worktree):
        return worktree
    return ctx.config.repo_root


def _execute(ctx: StepContext, command: str, cwd: Path) -> tuple[int, str]:
    cmd, *args = shlex.split(command)
    timeout = ctx.config.verify.timeout
    on_output = ctx.options.get("on_output")

    try:
        if on_output is None:
            result = ctx.tools.run(cmd, args, cwd, timeout)
            return result.exit_code, result.output

        stream = ctx.tools.stream(cmd, args, cwd, ctx.options.get("cancel"), timeout)
        chunks: list[str] = []
        for chunk in stream:
            chunks.append(chunk)
            on_output(chunk)
        return stream.exit_code or 0, "".join(chunks)
    except CommandTimeout as e:
        raise VerificationTimeout(command, timeout) from e


def _collect_evidence(ctx: StepContext, cwd: Path) -> list[str]:
    candidates = [
        cwd / "target" / "nextest" / "default" / "junit.xml",
        cwd / "target" / "test-results.xml",
        ctx.feature_dir / TEST_OUTPUT_LOG,
        ctx.feature_dir / "build.log",
        ctx.feature_dir / "test.log",
        ctx.feature_dir / "verification.log",
    ]
    return [str(p) for p in candidates if ctx.tools.exists(p)]


def _run_tests(ctx: StepContext) -> None:
    verify_spec = _read_verify_spec(ctx)
    cwd = _working_dir(ctx)

    command = ctx.config.verify.test_command or detect_test_command(ctx, cwd)
    if not command:
        raise VerificationFailed(f"no test command configured or detected in {cwd}")

    logger.info(f"[EXEC] Verifying {ctx.slug}: {command} (cwd={cwd})")
    exit_code, output = _execute(ctx, command, cwd)
    ctx.tools.write(ctx.feature_dir / TEST_OUTPUT_LOG, output)

    results = parse_test_output(output, exit_code)
    report = ctx.prompts.render("verification_report", {
        "feature_slug": ctx.slug,
        "passed_all": results.ok,
        "generated_at": datetime.now(timezone.utc).isoformat(),
        "command": command,
        "results": results,
        "verify_spec": verify_spec.strip(),
        "evidence": _collect_evidence(ctx, cwd),
    })
    ctx.tools.write(ctx.feature_dir / REPORT_FILE, report)
    ctx.outputs["results"] = results

    logger.info(
        f"[EXEC] {ctx.slug}: {results.passed} passed, {results.failed} failed, "
        f"{results.ignored} ignored (exit {exit_code})"
    )
    if results.failed:
        raise TestsFailed(results.failed, results.total)
    if exit_code != 0:
        raise VerificationFailed(f"test command exited with {exit_code}: {command}")


def _build_steps(ctx: StepContext) -> list[Step]:
    return [
        Step("load-verify-spec", _load_verify_spec),
        Step("run-tests", _run_tests),
    ]


VERIFY = Workflow(
    name="verify",
    target=Phase.VERIFY,
    build_steps=_build_steps,
)
