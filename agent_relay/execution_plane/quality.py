"""Quality gates: configured shell commands that must pass after each author step."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Sequence
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from agent_relay.execution_plane.agent.process import (
    drain_tasks,
    spawn_process,
    terminate_process,
    wait_for_exit,
)
from agent_relay.shared.cancel import CancelToken
from agent_relay.shared.paths import ensure_secure_dir, slugify

logger = logging.getLogger(__name__)

MAX_INLINE_OUTPUT = 4096
TRUNCATION_NOTICE = "\n... [truncated, see full log file]"
DEFAULT_QUALITY_TIMEOUT = 300.0


@dataclass(frozen=True)
class QualityCommandResult:
    command: str
    passed: bool
    output: str
    output_path: str
    duration_ms: int
    exit_code: int | None = None


@dataclass(frozen=True)
class QualityResult:
    passed: bool
    results: tuple[QualityCommandResult, ...] = field(default_factory=tuple)

    def results_payload(self) -> list[dict[str, Any]]:
        return [asdict(result) for result in self.results]


def truncate_output(output: str, limit: int = MAX_INLINE_OUTPUT) -> str:
    if len(output) <= limit:
        return output
    return output[:limit] + TRUNCATION_NOTICE


def quality_log_path(log_dir: Path, phase: str, attempt: int, command: str) -> Path:
    return log_dir / f"quality-phase{slugify(phase)}-attempt{attempt}-{slugify(command, 60)}.log"


async def _read_all(stream: asyncio.StreamReader | None, chunks: list[bytes]) -> None:
    if stream is None:
        return
    while True:
        chunk = await stream.read(65536)
        if not chunk:
            return
        chunks.append(chunk)


async def run_quality_command(
    command: str,
    workdir: Path,
    *,
    log_dir: Path,
    phase: str,
    attempt: int,
    timeout_seconds: float = DEFAULT_QUALITY_TIMEOUT,
    grace_seconds: float = 2.0,
    cancel: CancelToken | None = None,
) -> QualityCommandResult:
    log_path = quality_log_path(log_dir, phase, attempt, command)
    started = time.monotonic()

    def finish(passed: bool, output: str, exit_code: int | None) -> QualityCommandResult:
        log_path.write_text(output, encoding="utf-8")
        return QualityCommandResult(
            command=command,
            passed=passed,
            output=truncate_output(output),
            output_path=str(log_path),
            duration_ms=int((time.monotonic() - started) * 1000),
            exit_code=exit_code,
        )

    try:
        proc = await spawn_process(["sh", "-c", command], workdir, stdin_pipe=False)
    except OSError as exc:
        return finish(False, f"[ERROR] {exc}", None)

    stdout_chunks: list[bytes] = []
    stderr_chunks: list[bytes] = []
    readers = [
        asyncio.ensure_future(_read_all(proc.stdout, stdout_chunks)),
        asyncio.ensure_future(_read_all(proc.stderr, stderr_chunks)),
    ]
    exit_task = asyncio.ensure_future(wait_for_exit(proc))
    waiters: set[asyncio.Future] = {exit_task}
    cancel_task = None
    if cancel is not None:
        cancel_task = asyncio.ensure_future(cancel.wait())
        waiters.add(cancel_task)
    done, _ = await asyncio.wait(waiters, timeout=timeout_seconds, return_when=asyncio.FIRST_COMPLETED)
    if cancel_task is not None and not cancel_task.done():
        cancel_task.cancel()

    if exit_task not in done:
        exit_task.cancel()
        await terminate_process(proc, grace_seconds)
        await drain_tasks(readers, 1.0)
        if cancel_task is not None and cancel_task in done:
            return finish(False, f"[CANCELLED] {command}", proc.returncode)
        logger.warning("quality gate timed out after %.0fs: %s", timeout_seconds, command)
        return finish(False, f"[TIMEOUT] Command timed out after {round(timeout_seconds)}s: {command}", proc.returncode)

    exit_code = exit_task.result()
    await drain_tasks(readers, 1.0)
    stdout = b"".join(stdout_chunks).decode("utf-8", errors="replace")
    stderr = b"".join(stderr_chunks).decode("utf-8", errors="replace")
    output = stdout + (f"\n--- stderr ---\n{stderr}" if stderr else "")
    return finish(exit_code == 0, output, exit_code)


async def run_quality_gates(
    commands: Sequence[str],
    workdir: Path,
    *,
    log_dir: Path,
    phase: str,
    attempt: int,
    timeout_seconds: float = DEFAULT_QUALITY_TIMEOUT,
    cancel: CancelToken | None = None,
) -> QualityResult:
    """Run every command in order; a failure does not stop the rest."""

    ensure_secure_dir(log_dir)
    results: list[QualityCommandResult] = []
    for command in commands:
        if cancel is not None and cancel.cancelled:
            break
        results.append(
            await run_quality_command(
                command,
                workdir,
                log_dir=log_dir,
                phase=phase,
                attempt=attempt,
                timeout_seconds=timeout_seconds,
                cancel=cancel,
            )
        )
    passed = len(results) == len(commands) and all(result.passed for result in results)
    return QualityResult(passed=passed, results=tuple(results))
