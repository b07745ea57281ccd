"""Human decision points of the phase loop.

Every gate prints its context and reads one choice. Without an interactive
stdin a gate resolves to its safe choice, and a fired cancel token resolves
any pending gate to abort.
"""

from __future__ import annotations

import asyncio
import sys
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Literal

import typer

from agent_relay.shared.cancel import CancelToken

LineReader = Callable[[str], Awaitable[str | None]]


async def read_stdin_line(prompt: str) -> str | None:
    """Read one line from stdin without blocking the event loop; None on EOF."""

    typer.echo(prompt, nl=False)
    loop = asyncio.get_running_loop()
    future: asyncio.Future[str | None] = loop.create_future()
    fd = sys.stdin.fileno()

    def on_readable() -> None:
        line = sys.stdin.readline()
        if not future.done():
            future.set_result(line.rstrip("\n") if line else None)

    loop.add_reader(fd, on_readable)
    try:
        return await future
    finally:
        loop.remove_reader(fd)


@dataclass
class GateIO:
    interactive: bool
    read_line: LineReader = read_stdin_line
    echo: Callable[[str], None] = typer.echo
    cancel: CancelToken | None = None

    @classmethod
    def from_terminal(cls, cancel: CancelToken | None = None) -> "GateIO":
        return cls(interactive=sys.stdin.isatty(), cancel=cancel)

    async def ask(self, prompt: str) -> str | None:
        """The lowered answer, or None when cancelled or stdin closed."""

        if self.cancel is not None and self.cancel.cancelled:
            return None
        read = asyncio.ensure_future(self.read_line(prompt))
        if self.cancel is None:
            answer = await read
        else:
            waiter = asyncio.ensure_future(self.cancel.wait())
            done, _ = await asyncio.wait({read, waiter}, return_when=asyncio.FIRST_COMPLETED)
            for task in (read, waiter):
                if task not in done:
                    task.cancel()
            if read not in done:
                return None
            answer = read.result()
        return None if answer is None else answer.strip().lower()


@dataclass(frozen=True)
class PhaseSummary:
    phase: str
    title: str = ""
    commit: str | None = None
    quality_passed: bool = True
    review_readiness: str | None = None
    duration_ms: int | None = None


@dataclass(frozen=True)
class EscalationItem:
    id: str
    title: str
    reason: str


@dataclass(frozen=True)
class EscalationEvent:
    reason: str
    iteration: int
    items: tuple[EscalationItem, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class EscalationResponse:
    action: Literal["continue", "approve", "abort"]
    guidance: str | None = None


def format_duration(duration_ms: int) -> str:
    seconds = round(duration_ms / 1000)
    minutes = seconds // 60
    return f"{minutes}m {seconds % 60}s" if minutes else f"{seconds}s"


def _non_interactive(io: GateIO) -> bool:
    if io.interactive:
        return False
    io.echo("  Non-interactive mode detected, aborting.")
    return True


async def phase_gate(summary: PhaseSummary, io: GateIO) -> Literal["continue", "review", "abort"]:
    heading = f"Phase {summary.phase}: {summary.title}" if summary.title else f"Phase {summary.phase}"
    io.echo("")
    io.echo(f"  {heading} complete")
    if summary.commit:
        io.echo(f"  Commit: {summary.commit[:8]}")
    io.echo(f"  Quality gates: {'PASSED' if summary.quality_passed else 'FAILED'}")
    if summary.review_readiness:
        io.echo(f"  Review verdict: {summary.review_readiness}")
    if summary.duration_ms is not None:
        io.echo(f"  Duration: {format_duration(summary.duration_ms)}")
    io.echo("  c = continue to next phase, r = review changes first, q = abort")
    if _non_interactive(io):
        return "abort"
    choice = await io.ask("  Choice [c/r/q]: ")
    if choice in ("c", "continue"):
        return "continue"
    if choice in ("r", "review"):
        return "review"
    return "abort"


async def escalation_gate(event: EscalationEvent, io: GateIO) -> EscalationResponse:
    io.echo("")
    io.echo("  === Escalation: human review required ===")
    io.echo(f"  Reason: {event.reason}")
    if event.items:
        io.echo("  Items requiring attention:")
        for item in event.items:
            io.echo(f"    - [{item.id}] {item.title}: {item.reason}")
    io.echo("  c = continue with guidance, a = approve and move on, q = abort")
    if _non_interactive(io):
        return EscalationResponse("abort")
    choice = await io.ask("  Choice [c/a/q]: ")
    if choice in ("a", "approve"):
        return EscalationResponse("approve")
    if choice in ("c", "continue"):
        guidance = await io.ask("  Guidance (optional, press Enter to skip): ")
        if guidance is None and io.cancel is not None and io.cancel.cancelled:
            return EscalationResponse("abort")
        return EscalationResponse("continue", guidance or None)
    return EscalationResponse("abort")


async def resume_gate(run_id: str, phase: str | None, state: str | None, io: GateIO) -> Literal["resume", "new", "abort"]:
    io.echo("")
    io.echo(f"  Found interrupted run {run_id[:8]} at phase {phase or '?'}, state {state or '?'}.")
    io.echo("  r = resume where it left off, n = start a new run, q = abort")
    if not io.interactive:
        io.echo("  Non-interactive mode detected, starting a new run.")
        return "new"
    choice = await io.ask("  Choice [r/n/q]: ")
    if choice in ("r", "resume"):
        return "resume"
    if choice in ("n", "new"):
        return "new"
    return "abort"


async def stale_lock_gate(pid: int | None, started_at: str | None, io: GateIO) -> Literal["steal", "abort"]:
    io.echo("")
    if pid is None:
        io.echo("  Unreadable lock file found for this plan.")
    else:
        io.echo(f"  Stale lock: pid {pid} (started {started_at}) is no longer running.")
    io.echo("  s = steal the lock and proceed, q = abort")
    if _non_interactive(io):
        return "abort"
    choice = await io.ask("  Choice [s/q]: ")
    return "steal" if choice in ("s", "steal") else "abort"
