"""
MPCA CLI: The Interface

One command per workflow:
  mpca init [--feature SLUG] [--force]   prepare the repo (and a feature)
  mpca plan SLUG [--interactive]         draft the feature's specs
  mpca run SLUG                          implement it in a worktree
  mpca verify SLUG                       run the tests named in verify.md
  mpca review SLUG                       ask the agent for a review

Plus utilities:
  mpca resume SLUG     continue an interrupted workflow
  mpca status [SLUG]   show run state and API key readiness
  mpca chat [MESSAGE]  free-form exchange, no phase tracking
"""

from __future__ import annotations

import asyncio
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

import typer
from dotenv import load_dotenv
from loguru import logger
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from mpca.config_loader import load_config, validate_api_keys
from mpca.errors import CorruptedState, MPCAError, RecoverableAgentError
from mpca.identity import BANNER, __codename__, __tagline__, __version__
from mpca.runtime import Runtime
from mpca.session import PlanningSession, SessionMessage
from mpca.state import Phase, RunState

# Load .env from current directory or home
load_dotenv()
load_dotenv(Path.home() / ".mpca" / ".env")

app = typer.Typer(
    name="mpca",
    help=f"{__codename__}: {__tagline__}\nMulti-phase coding agent.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

console = Console()

_PHASE_COLORS = {
    Phase.INIT: "dim",
    Phase.PLAN: "cyan",
    Phase.RUN: "yellow",
    Phase.VERIFY: "green",
}

_QUIT_WORDS = {"/done", "/quit", "/exit"}


def version_callback(value: bool):
    if value:
        console.print(f"{__codename__} v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        callback=version_callback,
        is_eager=True,
        help="Show the version and exit.",
    ),
):
    pass


# ---------------------------------------------------------------------------
# Shared options and helpers
# ---------------------------------------------------------------------------

RepoOption = typer.Option(Path("."), "--repo", "-r", help="Path to the target repository")
VerboseOption = typer.Option(False, "--verbose", "-v", help="Enable debug logging")


def _print_banner():
    console.print(f"[bright_cyan]{BANNER}[/]")
    console.print(f"  [dim]v{__version__} · {__tagline__}[/]\n")


def _runtime(repo: Path) -> Runtime:
    repo = repo.resolve()
    if not repo.exists():
        console.print(f"[red]Repository not found: {repo}[/]")
        raise typer.Exit(1)
    return Runtime(load_config(repo))


@contextmanager
def _reported() -> Iterator[None]:
    """Print MPCA errors in red and exit 1 instead of dumping a traceback."""
    try:
        yield
    except MPCAError as e:
        console.print(f"[bold red]Error ({e.kind}):[/] {escape(str(e))}")
        raise typer.Exit(1)


def _print_state(state: RunState) -> None:
    color = _PHASE_COLORS.get(state.phase, "white")
    lines = [
        f"Phase:   [{color}]{state.phase.value}[/]",
        f"Step:    {state.step}",
        f"Turns:   {state.turns}",
        f"Cost:    ${state.cost_usd:.4f}",
        f"Updated: {state.updated_at[:19]}",
    ]
    if state.target_phase is not None:
        lines.append(f"In flight toward: {state.target_phase.value}")
    if state.failure is not None:
        lines.append(
            f"[red]Failed at step {state.failure.step} ({state.failure.kind}): "
            f"{escape(state.failure.message)}[/]"
        )
    border = "red" if state.failure else color
    console.print(Panel("\n".join(lines), title=state.feature_slug, border_style=border))


def _agent_retrying() -> Retrying:
    return Retrying(
        retry=retry_if_exception_type(RecoverableAgentError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(min=1, max=10),
        before_sleep=lambda rs: console.print(
            f"[yellow]Agent unavailable ({rs.outcome.exception().kind}); retrying...[/]"
        ),
        reraise=True,
    )


def _print_message(msg: SessionMessage) -> None:
    if msg.role == "assistant":
        console.print(Panel(escape(msg.content.strip()), title="agent", border_style="cyan"))
    elif msg.role == "error":
        console.print(f"[red]{escape(msg.content)}[/]")


async def _terminal_session(session: PlanningSession) -> None:
    """
    Poll keyboard input and agent replies in the same loop pass. Input is
    read in a worker thread so a slow agent never blocks a keystroke.
    """
    console.print("[dim]Talk to the planner. Type /done to finish.[/]")
    pending: asyncio.Task | None = None

    while True:
        for msg in session.drain():
            _print_message(msg)

        if pending is None:
            pending = asyncio.create_task(asyncio.to_thread(console.input, "[bold cyan]you>[/] "))
        done, _ = await asyncio.wait({pending}, timeout=0.1)
        if not done:
            continue

        try:
            text = pending.result().strip()
        except EOFError:
            break
        finally:
            pending = None

        if text in _QUIT_WORDS:
            break
        if text and not session.submit(text):
            console.print("[yellow]Agent is busy; message not sent. Try again shortly.[/]")

    for msg in session.drain():
        _print_message(msg)


def _configure_logging(verbose: bool) -> None:
    logger.remove()
    if verbose:
        logger.add(
            lambda msg: console.print(f"[dim]{escape(msg)}[/]", highlight=False, end=""),
            level="DEBUG",
            format="{time:HH:mm:ss} | {level:<7} | {message}",
        )
    else:
        logger.add(
            lambda msg: console.print(f"[dim]{escape(msg)}[/]", highlight=False, end=""),
            level="WARNING",
            format="{message}",
        )


# ---------------------------------------------------------------------------
# Workflow commands
# ---------------------------------------------------------------------------

@app.command()
def init(
    feature: Optional[str] = typer.Option(None, "--feature", "-f", help="Also create this feature's run state"),
    force: bool = typer.Option(False, "--force", help="Repair an already initialized project"),
    repo: Path = RepoOption,
    verbose: bool = VerboseOption,
):
    """Initialize MPCA in a git repository."""
    _print_banner()
    _configure_logging(verbose)
    runtime = _runtime(repo)

    with _reported():
        state = runtime.init_project(feature, force=force)

    config = runtime.config
    console.print(f"[green]✅ Initialized MPCA in {config.mpca_dir}[/]")
    console.print(f"  Config:  {config.config_file}")
    console.print(f"  Specs:   {config.specs_dir}")
    console.print(f"  Trees:   {config.trees_dir}")
    if state is not None:
        _print_state(state)


@app.command()
def plan(
    slug: str = typer.Argument(..., help="Feature slug, e.g. add-caching"),
    interactive: bool = typer.Option(False, "--interactive", "-i", help="Plan in a live conversation"),
    repo: Path = RepoOption,
    verbose: bool = VerboseOption,
):
    """Draft the feature's README, requirements, design and verify docs."""
    _print_banner()
    _configure_logging(verbose)
    runtime = _runtime(repo)

    with _reported():
        state = runtime.plan_feature(slug, session=_terminal_session if interactive else None)

    console.print(f"[green]✅ Planned {slug}[/]  specs: {runtime.config.feature_dir(slug) / 'specs'}")
    _print_state(state)


@app.command()
def run(
    slug: str = typer.Argument(..., help="Feature slug"),
    repo: Path = RepoOption,
    verbose: bool = VerboseOption,
):
    """Implement a planned feature in its own worktree."""
    _print_banner()
    _configure_logging(verbose)
    runtime = _runtime(repo)

    with _reported():
        state = runtime.run_feature(slug)

    console.print(f"[green]✅ Ran {slug}[/]  worktree: {runtime.config.worktree_path(slug)}")
    _print_state(state)


@app.command()
def verify(
    slug: str = typer.Argument(..., help="Feature slug"),
    repo: Path = RepoOption,
    verbose: bool = VerboseOption,
):
    """Run the feature's tests and write a verification report. Ctrl-C cancels."""
    _print_banner()
    _configure_logging(verbose)
    runtime = _runtime(repo)

    cancel = threading.Event()
    outcome: dict = {}

    def _work():
        try:
            outcome["state"] = runtime.verify_feature(
                slug,
                on_output=lambda chunk: console.print(chunk, end="", markup=False, highlight=False),
                cancel=cancel,
            )
        except MPCAError as e:
            outcome["error"] = e

    worker = threading.Thread(target=_work, name="mpca-verify")
    worker.start()
    try:
        while worker.is_alive():
            worker.join(0.1)
    except KeyboardInterrupt:
        console.print("\n[yellow]Cancelling tests...[/]")
        cancel.set()
        worker.join()

    with _reported():
        if "error" in outcome:
            raise outcome["error"]

    console.print(f"[green]✅ Verified {slug}[/]")
    _print_state(outcome["state"])


@app.command()
def review(
    slug: str = typer.Argument(..., help="Feature slug"),
    repo: Path = RepoOption,
    verbose: bool = VerboseOption,
):
    """Ask the agent to review the feature's changes."""
    _print_banner()
    _configure_logging(verbose)
    runtime = _runtime(repo)

    with _reported():
        reply = runtime.review_feature(slug)

    if reply is None:
        console.print("[dim]Review is disabled for this repository.[/]")
        return
    console.print(Panel(escape(reply.strip()), title=f"Review: {slug}", border_style="magenta"))


@app.command()
def chat(
    message: Optional[str] = typer.Argument(None, help="Message to send (prompted when omitted)"),
    repo: Path = RepoOption,
    verbose: bool = VerboseOption,
):
    """Send one free-form message to the agent."""
    _configure_logging(verbose)
    runtime = _runtime(repo)

    if not message:
        message = typer.prompt(">>")
    if not message.strip():
        console.print("[red]No message provided.[/]")
        raise typer.Exit(1)

    with _reported():
        for attempt in _agent_retrying():
            with attempt:
                reply = runtime.chat(message)

    console.print(Panel(escape(reply.strip()), title="agent", border_style="cyan"))


# ---------------------------------------------------------------------------
# Utilities
# ---------------------------------------------------------------------------

@app.command()
def resume(
    slug: str = typer.Argument(..., help="Feature slug"),
    repo: Path = RepoOption,
    verbose: bool = VerboseOption,
):
    """Continue the workflow a feature was interrupted in."""
    _print_banner()
    _configure_logging(verbose)
    runtime = _runtime(repo)

    with _reported():
        state = runtime.resume_feature(slug)
        if state is None:
            console.print(f"[dim]Nothing to resume for {slug}.[/]")
            state = runtime.status(slug)

    _print_state(state)


@app.command()
def status(
    slug: Optional[str] = typer.Argument(None, help="Feature slug (all features when omitted)"),
    repo: Path = RepoOption,
    verbose: bool = VerboseOption,
):
    """Show feature run state and API key readiness."""
    _print_banner()
    _configure_logging(verbose)

    keys = validate_api_keys()
    key_table = Table(title="API Keys", border_style="cyan")
    key_table.add_column("Key")
    key_table.add_column("Status")
    for key, available in keys.items():
        status_str = "[green]✓ Available[/]" if available else "[red]✗ Missing[/]"
        key_table.add_row(key, status_str)
    console.print(key_table)

    runtime = _runtime(repo)

    if slug:
        with _reported():
            _print_state(runtime.status(slug))
        return

    with _reported():
        features = runtime.list_features()
    if not features:
        console.print("[dim]No features yet. Start one with: mpca plan <slug>[/]")
        return

    table = Table(title="Features", border_style="cyan")
    table.add_column("Feature")
    table.add_column("Phase")
    table.add_column("Step")
    table.add_column("Turns")
    table.add_column("Cost")
    table.add_column("Notes")

    for name in features:
        try:
            state = runtime.status(name)
        except CorruptedState as e:
            table.add_row(name, "[red]?[/]", "", "", "", f"[red]{escape(e.message)}[/]")
            continue
        color = _PHASE_COLORS.get(state.phase, "white")
        notes = ""
        if state.target_phase is not None:
            notes += f"→ {state.target_phase.value} "
        if state.failure is not None:
            notes += f"[red]{state.failure.kind}[/]"
        table.add_row(
            name,
            f"[{color}]{state.phase.value}[/]",
            str(state.step),
            str(state.turns),
            f"${state.cost_usd:.4f}",
            notes,
        )
    console.print(table)


# ---------------------------------------------------------------------------
# Entry
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    app()
