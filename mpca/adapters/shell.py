"""
MPCA Command Adapter

Runs external commands either to completion (verify/test steps) or as
a lazy stream of output chunks for live relay to a front-end. A stream
watches a cancel event while draining; on cancel the whole process
group is killed so nothing is left orphaned.
"""

from __future__ import annotations

import os
import queue
import shlex
import signal
import subprocess
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Generator, Iterator

from loguru import logger

from mpca.errors import CommandCancelled, CommandTimeout, MPCAError, ShellCommandFailed, ToolExecutionError


@dataclass
class CommandResult:
    exit_code: int
    output: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class CommandStream:
    """
    Lazy, finite, single-use iterator over output chunks.
    `exit_code` is set once the stream is exhausted.
    """

    def __init__(self, command: str, source: Generator[str, None, int]):
        self.command = command
        self.exit_code: int | None = None
        self._source = source

    def __iter__(self) -> Iterator[str]:
        if self.exit_code is not None:
            return
        self.exit_code = yield from self._source

    def close(self) -> None:
        self._source.close()


def render_command(cmd: str, args: list[str]) -> str:
    return shlex.join([cmd, *args])


class Shell(ABC):
    """Capability contract for command execution."""

    @abstractmethod
    def run(self, cmd: str, args: list[str], cwd: Path, timeout: float | None = None) -> CommandResult:
        """
        Block until the command exits. Output is stdout and stderr combined.
        Raises ShellCommandFailed when the process dies on a signal.
        """
        ...

    @abstractmethod
    def stream(
        self,
        cmd: str,
        args: list[str],
        cwd: Path,
        cancel: threading.Event | None = None,
        timeout: float | None = None,
    ) -> CommandStream:
        """
        Start the command and return its output as a CommandStream.
        Draining raises CommandCancelled once `cancel` is set, and
        CommandTimeout past `timeout`, and ShellCommandFailed if the
        process dies on a signal.
        """
        ...


# ---------------------------------------------------------------------------
# Subprocess implementation
# ---------------------------------------------------------------------------

_POLL_SECONDS = 0.05
_EOF = object()


class LocalShell(Shell):

    def run(self, cmd: str, args: list[str], cwd: Path, timeout: float | None = None) -> CommandResult:
        command = render_command(cmd, args)
        logger.debug(f"[SHELL] run: {command} (cwd={cwd})")
        try:
            result = subprocess.run(
                [cmd, *args],
                cwd=cwd,
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except FileNotFoundError as e:
            raise ToolExecutionError(f"command not found: {cmd}") from e
        except PermissionError as e:
            raise ToolExecutionError(f"command not executable: {cmd}") from e
        except subprocess.TimeoutExpired as e:
            raise CommandTimeout(command, timeout or 0) from e

        output = result.stdout
        if result.stderr:
            output = f"{output}\n{result.stderr}" if output else result.stderr
        logger.debug(f"[SHELL] exit {result.returncode}: {command}")
        if result.returncode < 0:
            raise ShellCommandFailed(command, result.returncode, output)
        return CommandResult(exit_code=result.returncode, output=output)

    def stream(
        self,
        cmd: str,
        args: list[str],
        cwd: Path,
        cancel: threading.Event | None = None,
        timeout: float | None = None,
    ) -> CommandStream:
        command = render_command(cmd, args)
        logger.debug(f"[SHELL] stream: {command} (cwd={cwd})")
        try:
            proc = subprocess.Popen(
                [cmd, *args],
                cwd=cwd,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                start_new_session=True,
            )
        except FileNotFoundError as e:
            raise ToolExecutionError(f"command not found: {cmd}") from e
        except PermissionError as e:
            raise ToolExecutionError(f"command not executable: {cmd}") from e

        return CommandStream(command, _drain(proc, command, cancel, timeout))


def _drain(
    proc: subprocess.Popen,
    command: str,
    cancel: threading.Event | None,
    timeout: float | None,
) -> Generator[str, None, int]:
    chunks: queue.Queue = queue.Queue()

    def _reader() -> None:
        assert proc.stdout is not None
        for line in proc.stdout:
            chunks.put(line)
        chunks.put(_EOF)

    reader = threading.Thread(target=_reader, name=f"mpca-stream-{proc.pid}", daemon=True)
    reader.start()
    waited = 0.0

    try:
        while True:
            if cancel is not None and cancel.is_set():
                _kill_group(proc)
                raise CommandCancelled(command)
            if timeout is not None and waited >= timeout:
                _kill_group(proc)
                raise CommandTimeout(command, timeout)
            try:
                chunk = chunks.get(timeout=_POLL_SECONDS)
            except queue.Empty:
                waited += _POLL_SECONDS
                continue
            if chunk is _EOF:
                break
            yield chunk
        exit_code = proc.wait()
        logger.debug(f"[SHELL] exit {exit_code}: {command}")
        if exit_code < 0:
            raise ShellCommandFailed(command, exit_code)
        return exit_code
    finally:
        # Consumer stopped early or an error escaped
        if proc.poll() is None:
            _kill_group(proc)
        reader.join(timeout=1)


def _kill_group(proc: subprocess.Popen) -> None:
    try:
        os.killpg(proc.pid, signal.SIGTERM)
    except ProcessLookupError:
        return
    try:
        proc.wait(timeout=5)
    except subprocess.TimeoutExpired:
        os.killpg(proc.pid, signal.SIGKILL)
        proc.wait()
    logger.warning(f"[SHELL] Killed process group {proc.pid}")


# ---------------------------------------------------------------------------
# Scripted double
# ---------------------------------------------------------------------------

@dataclass
class ScriptedCommand:
    exit_code: int = 0
    output: str = ""
    chunks: list[str] = field(default_factory=list)
    error: MPCAError | None = None


class ScriptedShell(Shell):
    """
    Returns scripted results keyed by program name, falling back to
    `default`. The last scripted result for a program repeats. Records
    (mode, rendered command, cwd) per call.

        shell.script("cargo", ScriptedCommand(exit_code=101, output=CARGO_FAIL))
    """

    def __init__(self, default: ScriptedCommand | None = None):
        self.default = default or ScriptedCommand()
        self.scripts: dict[str, list[ScriptedCommand]] = {}
        self.calls: list[tuple[str, str, Path]] = []
        self.cancelled: list[str] = []

    def script(self, cmd: str, *results: ScriptedCommand) -> None:
        self.scripts.setdefault(cmd, []).extend(results)

    def _next(self, cmd: str) -> ScriptedCommand:
        pending = self.scripts.get(cmd)
        if pending:
            return pending.pop(0) if len(pending) > 1 else pending[0]
        return self.default

    def run(self, cmd: str, args: list[str], cwd: Path, timeout: float | None = None) -> CommandResult:
        command = render_command(cmd, args)
        self.calls.append(("run", command, cwd))
        scripted = self._next(cmd)
        if scripted.error is not None:
            raise scripted.error
        output = scripted.output or "".join(scripted.chunks)
        return CommandResult(exit_code=scripted.exit_code, output=output)

    def stream(
        self,
        cmd: str,
        args: list[str],
        cwd: Path,
        cancel: threading.Event | None = None,
        timeout: float | None = None,
    ) -> CommandStream:
        command = render_command(cmd, args)
        self.calls.append(("stream", command, cwd))
        scripted = self._next(cmd)
        if scripted.error is not None:
            raise scripted.error
        return CommandStream(command, self._emit(command, scripted, cancel))

    def _emit(
        self,
        command: str,
        scripted: ScriptedCommand,
        cancel: threading.Event | None,
    ) -> Generator[str, None, int]:
        chunks = scripted.chunks or scripted.output.splitlines(keepends=True)
        for chunk in chunks:
            if cancel is not None and cancel.is_set():
                self.cancelled.append(command)
                raise CommandCancelled(command)
            yield chunk
        return scripted.exit_code
