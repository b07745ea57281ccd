"""Cooperative cancellation shared by the adapter, gates, and console controller."""

from __future__ import annotations

import asyncio
import logging
import signal

logger = logging.getLogger(__name__)


class CancelToken:
    """Set-once cancellation flag; ``cancel`` may be called any number of times."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        if self._event.is_set():
            return
        self.reason = reason
        logger.info("cancellation requested: %s", reason)
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()


def install_signal_handlers(token: CancelToken) -> None:
    """Route SIGINT and SIGTERM into ``token`` for the running event loop."""

    loop = asyncio.get_running_loop()
    for signum, reason in ((signal.SIGINT, "interrupted"), (signal.SIGTERM, "terminated")):
        try:
            loop.add_signal_handler(signum, token.cancel, reason)
        except (NotImplementedError, RuntimeError):
            logger.debug("signal handler for %s not supported here", signum)


def remove_signal_handlers() -> None:
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.remove_signal_handler(signum)
        except (NotImplementedError, RuntimeError):
            pass
