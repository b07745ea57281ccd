"""Permission arbiter: answers agent tool-approval requests according to a policy."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal, Protocol

from agent_relay.execution_plane.agent.event_hub import Subscription
from agent_relay.execution_plane.agent.events import PermissionRequested, StreamRecord
from agent_relay.shared.paths import is_path_in_workdir

logger = logging.getLogger(__name__)

PolicyMode = Literal["auto-approve-all", "tui-native", "workdir-scoped"]

PATH_TOOLS = {"fs_read", "fs_write", "fs_edit", "read", "write", "edit"}
PATH_ARGUMENT_KEYS = ("path", "filePath")

NON_INTERACTIVE_NO_FLAG_ERROR = (
    "agent-relay is running non-interactively but no permission policy was specified.\n"
    "  Use --auto to auto-approve all tool permissions, or\n"
    "  ensure stdin is a TTY for interactive mode."
)
REJECT_HINT = "Re-run with the console attached or --auto if appropriate."


class PermissionTransport(Protocol):
    def subscribe(self) -> Subscription[StreamRecord]: ...

    async def reply_permission(self, request_id: str, reply: str, message: str | None = None) -> None: ...


@dataclass(frozen=True)
class PermissionPolicy:
    mode: PolicyMode
    workdir: Path | None = None

    @classmethod
    def auto_approve_all(cls) -> "PermissionPolicy":
        return cls(mode="auto-approve-all")

    @classmethod
    def tui_native(cls) -> "PermissionPolicy":
        return cls(mode="tui-native")

    @classmethod
    def workdir_scoped(cls, workdir: Path | str) -> "PermissionPolicy":
        return cls(mode="workdir-scoped", workdir=Path(workdir))


@dataclass(frozen=True)
class PermissionDecision:
    request_id: str
    reply: Literal["once", "reject"]
    message: str | None = None


class PermissionPolicyError(ValueError):
    pass


def select_permission_policy(
    *, auto_approve: bool, console_active: bool, interactive: bool, workdir: Path
) -> PermissionPolicy:
    if auto_approve:
        return PermissionPolicy.auto_approve_all()
    if console_active:
        return PermissionPolicy.tui_native()
    if interactive:
        return PermissionPolicy.workdir_scoped(workdir)
    raise PermissionPolicyError(NON_INTERACTIVE_NO_FLAG_ERROR)


def extract_path(tool: str, arguments: dict[str, Any]) -> str | None:
    """Single file path a tool call touches, or None when it cannot be reduced to one."""

    if tool not in PATH_TOOLS:
        return None
    for key in PATH_ARGUMENT_KEYS:
        value = arguments.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def decide(policy: PermissionPolicy, request: PermissionRequested) -> PermissionDecision | None:
    if policy.mode == "tui-native":
        return None
    if policy.mode == "auto-approve-all":
        return PermissionDecision(request.request_id, "once")

    path = extract_path(request.tool, request.arguments)
    if path is not None and policy.workdir is not None and is_path_in_workdir(path, policy.workdir):
        return PermissionDecision(request.request_id, "once")
    if path is not None:
        reason = f"Rejected permission outside workdir scope: {path}"
    else:
        reason = "Rejected permission requiring explicit approval in headless mode"
    return PermissionDecision(request.request_id, "reject", f"{reason}. {REJECT_HINT}")


class PermissionArbiter:
    """Subscribes to the agent stream and replies to every permission request.

    ``start`` and ``stop`` are idempotent; after ``stop`` the subscription is
    closed and removed from the transport.
    """

    def __init__(self, transport: PermissionTransport, policy: PermissionPolicy) -> None:
        self.transport = transport
        self.policy = policy
        self.decisions: list[PermissionDecision] = []
        self._subscription: Subscription[StreamRecord] | None = None
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._subscription is not None

    def start(self) -> None:
        if self._subscription is not None or self.policy.mode == "tui-native":
            return
        self._subscription = self.transport.subscribe()
        self._task = asyncio.get_running_loop().create_task(self._run(self._subscription))

    def stop(self) -> None:
        subscription, task = self._subscription, self._task
        self._subscription = None
        self._task = None
        if subscription is not None:
            subscription.close()
        if task is not None and not task.done():
            task.cancel()

    async def _run(self, subscription: Subscription[StreamRecord]) -> None:
        async for record in subscription:
            if not isinstance(record.event, PermissionRequested):
                continue
            try:
                decision = decide(self.policy, record.event)
            except Exception as exc:
                logger.exception("permission decision for %s failed", record.event.request_id)
                decision = PermissionDecision(
                    record.event.request_id,
                    "reject",
                    f"Rejected permission after policy error: {exc}. {REJECT_HINT}",
                )
            if decision is None:
                continue
            self.decisions.append(decision)
            if decision.reply == "reject":
                logger.warning("%s", decision.message)
            try:
                await self.transport.reply_permission(decision.request_id, decision.reply, decision.message)
            except (ConnectionError, OSError) as exc:
                logger.debug("permission reply for %s not delivered: %s", decision.request_id, exc)
