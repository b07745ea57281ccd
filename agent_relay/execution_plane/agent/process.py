"""Child process plumbing: spawn, escalate termination, read lines, bound draining."""

from __future__ import annotations

import asyncio
import logging
import os
import signal
from collections.abc import AsyncIterator, Iterable, Sequence
from pathlib import Path

logger = logging.getLogger(__name__)

STREAM_LIMIT = 16 * 1024 * 1024


async def spawn_process(
    argv: Sequence[str],
    cwd: Path,
    *,
    stdin_pipe: bool = True,
    env: dict[str, str] | None = None,
) -> asyncio.subprocess.Process:
    """Start ``argv`` in its own process group with piped stdout/stderr."""

    return await asyncio.create_subprocess_exec(
        *argv,
        cwd=str(cwd),
        stdin=asyncio.subprocess.PIPE if stdin_pipe else asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        env=env,
        start_new_session=True,
        limit=STREAM_LIMIT,
    )


def signal_process_group(proc: asyncio.subprocess.Process, signum: int) -> None:
    if proc.returncode is not None:
        return
    try:
        os.killpg(proc.pid, signum)
    except ProcessLookupError:
        pass
    except PermissionError:
        try:
            proc.send_signal(signum)
        except ProcessLookupError:
            pass


async def wait_for_exit(proc: asyncio.subprocess.Process, poll_interval: float = 0.05) -> int:
    """Return once the child has exited, even if a descendant still holds its pipes open."""

    waiter = asyncio.ensure_future(proc.wait())
    try:
        while not waiter.done():
            if proc.returncode is not None:
                return proc.returncode
            await asyncio.wait({waiter}, timeout=poll_interval)
        return waiter.result()
    finally:
        if not waiter.done():
            waiter.cancel()


async def terminate_process(proc: asyncio.subprocess.Process, grace_seconds: float) -> int | None:
    """SIGTERM the group, wait ``grace_seconds``, then SIGKILL it."""

    if proc.returncode is not None:
        return proc.returncode
    signal_process_group(proc, signal.SIGTERM)
    try:
        await asyncio.wait_for(wait_for_exit(proc), timeout=grace_seconds)
    except asyncio.TimeoutError:
        logger.warning("process %s ignored SIGTERM for %.1fs; killing", proc.pid, grace_seconds)
        signal_process_group(proc, signal.SIGKILL)
        try:
            await asyncio.wait_for(wait_for_exit(proc), timeout=max(grace_seconds, 1.0))
        except asyncio.TimeoutError:
            logger.error("process %s did not exit after SIGKILL", proc.pid)
    return proc.returncode


async def iter_lines(stream: asyncio.StreamReader) -> AsyncIterator[str]:
    while True:
        try:
            raw = await stream.readline()
        except ValueError:
            logger.warning("dropped a stream line longer than %d bytes", STREAM_LIMIT)
            continue
        if not raw:
            return
        yield raw.decode("utf-8", errors="replace").rstrip("\r\n")


async def drain_tasks(tasks: Iterable[asyncio.Task], timeout: float) -> None:
    """Wait up to ``timeout`` for ``tasks``; cancel stragglers and log their failures."""

    tasks = [task for task in tasks if task is not None]
    if not tasks:
        return
    done, pending = await asyncio.wait(tasks, timeout=max(0.0, timeout))
    for task in pending:
        task.cancel()
    if pending:
        logger.debug("cancelled %d stream readers still running after drain bound", len(pending))
        await asyncio.gather(*pending, return_exceptions=True)
    for task in done:
        if not task.cancelled() and task.exception() is not None:
            logger.warning("stream reader failed: %s", task.exception())
