"""Ownership of the terminal between headless rendering and an interactive viewer.

Three controllers share one surface. Whoever does not own the terminal must
not write to it, so headless rendering is gated on ``not controller.active``.
Session selection and toasts are best-effort: they retry on a fixed schedule
and never raise when the viewer is absent.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

import typer

from agent_relay.execution_plane.console.viewer_client import ViewerClient

logger = logging.getLogger(__name__)

SELECT_SESSION_RETRY_DELAYS = (0.0, 0.08, 0.16, 0.32, 0.5, 0.8, 1.2)
OWNED_SELECT_RETRY_INTERVAL = 1.0
OWNED_API_TIMEOUT = 0.75
EXTERNAL_API_TIMEOUT = 0.25
EXTERNAL_SYNC_INTERVAL = 0.5
USER_CANCEL_EXIT_CODES = {130, 143, -2, -15}


@dataclass(frozen=True)
class ExitInfo:
    code: int | None
    is_user_cancellation: bool


ExitHandler = Callable[[ExitInfo], None]


@dataclass(frozen=True)
class ConsoleMode:
    enabled: bool
    reason: str


def resolve_console_mode(*, requested: bool, quiet: bool, is_tty: bool) -> ConsoleMode:
    if quiet:
        return ConsoleMode(False, "quiet output requested")
    if not requested:
        return ConsoleMode(False, "viewer not requested")
    if not is_tty:
        return ConsoleMode(False, "stdout is not a terminal")
    return ConsoleMode(True, "viewer requested")


class ConsoleController(Protocol):
    @property
    def active(self) -> bool: ...

    async def select_session(self, session_id: str, directory: str | None = None) -> None: ...

    async def show_toast(self, message: str, variant: str = "info") -> None: ...

    def on_exit(self, handler: ExitHandler) -> Callable[[], None]: ...

    async def wait_exited(self) -> ExitInfo | None: ...

    def kill(self) -> None: ...


def _noop() -> None:
    return None


class DisabledConsoleController:
    """No viewer. Every call is a no-op and ``wait_exited`` returns at once."""

    active = False

    async def select_session(self, session_id: str, directory: str | None = None) -> None:
        return None

    async def show_toast(self, message: str, variant: str = "info") -> None:
        return None

    def on_exit(self, handler: ExitHandler) -> Callable[[], None]:
        return _noop

    async def wait_exited(self) -> ExitInfo | None:
        return None

    def kill(self) -> None:
        return None


async def _call_client(func: Callable[..., bool], *args: object, timeout: float) -> bool:
    try:
        return await asyncio.wait_for(asyncio.to_thread(func, *args, timeout), timeout + 0.5)
    except asyncio.TimeoutError:
        return False


class ExternalConsoleController:
    """A viewer the user attaches from another terminal.

    Prints an attach hint, then keeps trying to select the current session in
    the background. The first successful selection marks the controller
    active; a failed toast marks it detached again and restarts the sync.
    """

    def __init__(
        self,
        client: ViewerClient,
        workdir: Path | str,
        *,
        attach_hint: str | None = None,
        sync_interval: float = EXTERNAL_SYNC_INTERVAL,
        api_timeout: float = EXTERNAL_API_TIMEOUT,
    ) -> None:
        self.client = client
        self.workdir = str(workdir)
        self.sync_interval = sync_interval
        self.api_timeout = api_timeout
        self._active = False
        self._killed = False
        self._target: tuple[str, str | None] | None = None
        self._sync_task: asyncio.Task | None = None
        self._stopped = asyncio.Event()
        hint = attach_hint or f"Attach a viewer in another terminal: attach {client.base_url} --dir {self.workdir}"
        typer.echo(hint, err=True)

    @property
    def active(self) -> bool:
        return self._active

    async def select_session(self, session_id: str, directory: str | None = None) -> None:
        if self._killed:
            return
        self._target = (session_id, directory)
        if self._active and await self._select_once(session_id, directory):
            return
        self._active = False
        self._ensure_sync()

    async def show_toast(self, message: str, variant: str = "info") -> None:
        if not self._active:
            return
        if not await _call_client(self.client.show_toast, message, variant, timeout=self.api_timeout):
            logger.debug("viewer detached; resuming session sync")
            self._active = False
            self._ensure_sync()

    def on_exit(self, handler: ExitHandler) -> Callable[[], None]:
        return _noop

    async def wait_exited(self) -> ExitInfo | None:
        await self._stopped.wait()
        return None

    def kill(self) -> None:
        if self._killed:
            return
        self._killed = True
        self._active = False
        if self._sync_task is not None and not self._sync_task.done():
            self._sync_task.cancel()
        self._stopped.set()

    def _ensure_sync(self) -> None:
        if self._sync_task is None or self._sync_task.done():
            self._sync_task = asyncio.get_running_loop().create_task(self._sync_loop())

    async def _select_once(self, session_id: str, directory: str | None) -> bool:
        if directory and await _call_client(
            self.client.select_session, session_id, directory, timeout=self.api_timeout
        ):
            return True
        return await _call_client(self.client.select_session, session_id, None, timeout=self.api_timeout)

    async def _sync_loop(self) -> None:
        while not self._killed and self._target is not None:
            target = self._target
            if await self._select_once(*target):
                if target == self._target:
                    self._active = True
                    return
                continue
            await asyncio.sleep(self.sync_interval)


class OwnedConsoleController:
    """A viewer process this runtime spawned; it owns the terminal while alive."""

    def __init__(
        self,
        proc: asyncio.subprocess.Process,
        client: ViewerClient,
        *,
        retry_delays: Sequence[float] = SELECT_SESSION_RETRY_DELAYS,
        retry_interval: float = OWNED_SELECT_RETRY_INTERVAL,
        api_timeout: float = OWNED_API_TIMEOUT,
    ) -> None:
        self.proc = proc
        self.client = client
        self.retry_delays = tuple(retry_delays)
        self.retry_interval = retry_interval
        self.api_timeout = api_timeout
        self.exit_info: ExitInfo | None = None
        self._handlers: list[ExitHandler] = []
        self._exited = asyncio.Event()
        self._target: tuple[str, str | None] | None = None
        self._select_task: asyncio.Task | None = None
        self._monitor_task = asyncio.get_running_loop().create_task(self._monitor())

    @property
    def active(self) -> bool:
        return self.exit_info is None

    async def select_session(self, session_id: str, directory: str | None = None) -> None:
        if not self.active:
            return
        self._target = (session_id, directory)
        if self._select_task is None or self._select_task.done():
            self._select_task = asyncio.get_running_loop().create_task(self._select_loop())

    async def show_toast(self, message: str, variant: str = "info") -> None:
        if not self.active:
            return
        if not await _call_client(self.client.show_toast, message, variant, timeout=self.api_timeout):
            logger.debug("toast not delivered: %s", message)

    def on_exit(self, handler: ExitHandler) -> Callable[[], None]:
        if self.exit_info is not None:
            handler(self.exit_info)
            return _noop
        self._handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return unsubscribe

    async def wait_exited(self) -> ExitInfo | None:
        await self._exited.wait()
        return self.exit_info

    def kill(self) -> None:
        if self._select_task is not None and not self._select_task.done():
            self._select_task.cancel()
        if self.proc.returncode is not None:
            return
        try:
            self.proc.terminate()
        except ProcessLookupError:
            pass

    async def _monitor(self) -> None:
        code = await self.proc.wait()
        self.exit_info = ExitInfo(code=code, is_user_cancellation=code in USER_CANCEL_EXIT_CODES)
        handlers, self._handlers = self._handlers, []
        for handler in handlers:
            try:
                handler(self.exit_info)
            except Exception:
                logger.exception("console exit handler failed")
        self._exited.set()

    async def _try_with_retries(self, session_id: str, directory: str | None) -> bool:
        for delay in self.retry_delays:
            if not self.active or self._target != (session_id, directory):
                return False
            if delay:
                await asyncio.sleep(delay)
            if directory and await _call_client(
                self.client.select_session, session_id, directory, timeout=self.api_timeout
            ):
                return True
            if await _call_client(self.client.select_session, session_id, None, timeout=self.api_timeout):
                return True
        return False

    async def _select_loop(self) -> None:
        while self.active and self._target is not None:
            target = self._target
            if await self._try_with_retries(*target) and target == self._target:
                return
            if target != self._target:
                continue
            await asyncio.sleep(self.retry_interval)


async def spawn_owned_console(
    argv: Sequence[str], client: ViewerClient, cwd: Path | str
) -> OwnedConsoleController:
    """Start the viewer with this process's stdio and wrap it in a controller."""

    proc = await asyncio.create_subprocess_exec(*argv, cwd=str(cwd))
    return OwnedConsoleController(proc, client)


async def create_console_controller(
    *,
    mode: ConsoleMode,
    viewer_command: Sequence[str],
    viewer_url: str,
    workdir: Path,
) -> ConsoleController:
    """Owned when a viewer command is configured, external when only a URL is."""

    if not mode.enabled or not viewer_url:
        return DisabledConsoleController()
    client = ViewerClient(viewer_url)
    if viewer_command:
        argv = [part.replace("{url}", viewer_url).replace("{workdir}", str(workdir)) for part in viewer_command]
        try:
            return await spawn_owned_console(argv, client, workdir)
        except OSError as exc:
            logger.warning("could not start viewer %s: %s", argv[0], exc)
            return DisabledConsoleController()
    return ExternalConsoleController(client, workdir)
