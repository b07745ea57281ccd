from __future__ import annotations

import asyncio
import logging
from pathlib import Path

import pytest

from agent_relay.execution_plane.agent.event_hub import EventHub, Subscription
from agent_relay.execution_plane.agent.events import PermissionRequested, SessionCreated, StreamRecord
from agent_relay.execution_plane.permissions import (
    NON_INTERACTIVE_NO_FLAG_ERROR,
    PermissionArbiter,
    PermissionPolicy,
    PermissionPolicyError,
    decide,
    extract_path,
    select_permission_policy,
)
from agent_relay.shared.paths import is_path_in_workdir


class FakeTransport:
    def __init__(self, fail: bool = False) -> None:
        self.hub: EventHub[StreamRecord] = EventHub()
        self.replies: list[tuple[str, str, str | None]] = []
        self.fail = fail

    def subscribe(self) -> Subscription[StreamRecord]:
        return self.hub.subscribe()

    async def reply_permission(self, request_id: str, reply: str, message: str | None = None) -> None:
        if self.fail:
            raise ConnectionError("agent stdin closed")
        self.replies.append((request_id, reply, message))


def _ask(request_id: str, tool: str, **arguments: object) -> PermissionRequested:
    return PermissionRequested(request_id=request_id, tool=tool, arguments=dict(arguments))


def test_workdir_containment(tmp_path: Path) -> None:
    workdir = tmp_path / "work"
    (workdir / "src").mkdir(parents=True)
    outside = tmp_path / "outside"
    outside.mkdir()
    (workdir / "escape").symlink_to(outside)

    assert is_path_in_workdir("src/main.py", workdir)
    assert is_path_in_workdir(workdir / "new" / "file.txt", workdir)
    assert not is_path_in_workdir("../outside/x", workdir)
    assert not is_path_in_workdir("src/../../outside/x", workdir)
    assert not is_path_in_workdir("escape/secret.txt", workdir)
    assert not is_path_in_workdir("/etc/passwd", workdir)


def test_extract_path_only_for_file_tools() -> None:
    assert extract_path("fs_write", {"path": "a.txt"}) == "a.txt"
    assert extract_path("edit", {"filePath": "b.txt"}) == "b.txt"
    assert extract_path("bash", {"path": "a.txt"}) is None
    assert extract_path("read", {"path": ""}) is None


def test_decide_per_policy(tmp_path: Path) -> None:
    scoped = PermissionPolicy.workdir_scoped(tmp_path)

    assert decide(PermissionPolicy.tui_native(), _ask("p0", "bash")) is None
    assert decide(PermissionPolicy.auto_approve_all(), _ask("p1", "bash")).reply == "once"
    assert decide(scoped, _ask("p2", "fs_read", path="notes.md")).reply == "once"

    outside = decide(scoped, _ask("p3", "fs_write", path="../elsewhere.txt"))
    assert outside.reply == "reject"
    assert "outside workdir scope: ../elsewhere.txt" in outside.message

    shell = decide(scoped, _ask("p4", "bash", command="rm -rf /"))
    assert shell.reply == "reject"
    assert "explicit approval in headless mode" in shell.message


@pytest.mark.parametrize(
    ("auto_approve", "console_active", "interactive", "mode"),
    [
        (True, True, True, "auto-approve-all"),
        (False, True, False, "tui-native"),
        (False, False, True, "workdir-scoped"),
    ],
)
def test_select_permission_policy(
    tmp_path: Path, auto_approve: bool, console_active: bool, interactive: bool, mode: str
) -> None:
    policy = select_permission_policy(
        auto_approve=auto_approve, console_active=console_active, interactive=interactive, workdir=tmp_path
    )
    assert policy.mode == mode


def test_non_interactive_without_flag_is_refused(tmp_path: Path) -> None:
    with pytest.raises(PermissionPolicyError) as excinfo:
        select_permission_policy(auto_approve=False, console_active=False, interactive=False, workdir=tmp_path)
    assert str(excinfo.value) == NON_INTERACTIVE_NO_FLAG_ERROR


def test_arbiter_replies_and_ignores_other_events(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    transport = FakeTransport()

    async def scenario() -> PermissionArbiter:
        arbiter = PermissionArbiter(transport, PermissionPolicy.workdir_scoped(tmp_path))
        arbiter.start()
        transport.hub.publish(StreamRecord("{}", SessionCreated("ses_1")))
        transport.hub.publish(StreamRecord("{}", _ask("p1", "fs_read", path="ok.txt")))
        transport.hub.publish(StreamRecord("{}", _ask("p2", "bash", command="curl")))
        for _ in range(20):
            await asyncio.sleep(0)
        arbiter.stop()
        return arbiter

    with caplog.at_level(logging.WARNING):
        arbiter = asyncio.run(scenario())

    assert [(request_id, reply) for request_id, reply, _ in transport.replies] == [("p1", "once"), ("p2", "reject")]
    assert len(arbiter.decisions) == 2
    assert "explicit approval" in caplog.text
    assert transport.hub.subscriber_count == 0


def test_arbiter_start_stop_are_idempotent(tmp_path: Path) -> None:
    transport = FakeTransport()

    async def scenario() -> None:
        arbiter = PermissionArbiter(transport, PermissionPolicy.auto_approve_all())
        arbiter.start()
        arbiter.start()
        assert transport.hub.subscriber_count == 1
        assert arbiter.running
        arbiter.stop()
        arbiter.stop()
        assert not arbiter.running

    asyncio.run(scenario())
    assert transport.hub.subscriber_count == 0


def test_tui_native_never_subscribes() -> None:
    transport = FakeTransport()

    async def scenario() -> None:
        arbiter = PermissionArbiter(transport, PermissionPolicy.tui_native())
        arbiter.start()
        assert not arbiter.running

    asyncio.run(scenario())
    assert transport.hub.subscriber_count == 0


def test_undeliverable_reply_is_tolerated() -> None:
    transport = FakeTransport(fail=True)

    async def scenario() -> PermissionArbiter:
        arbiter = PermissionArbiter(transport, PermissionPolicy.auto_approve_all())
        arbiter.start()
        transport.hub.publish(StreamRecord("{}", _ask("p1", "bash")))
        transport.hub.publish(StreamRecord("{}", _ask("p2", "bash")))
        for _ in range(20):
            await asyncio.sleep(0)
        arbiter.stop()
        return arbiter

    arbiter = asyncio.run(scenario())
    assert [decision.request_id for decision in arbiter.decisions] == ["p1", "p2"]


def test_unresolvable_path_is_outside_workdir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    def looping_resolve(self: Path, strict: bool = False) -> Path:
        raise RuntimeError(f"Symlink loop from {str(self)!r}")

    monkeypatch.setattr(Path, "resolve", looping_resolve)

    assert not is_path_in_workdir("loop/x", tmp_path)
    decision = decide(PermissionPolicy.workdir_scoped(tmp_path), _ask("p1", "read", path="loop/x"))
    assert decision.reply == "reject"
    assert "outside workdir scope: loop/x" in decision.message


def test_arbiter_keeps_answering_after_unresolvable_path(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    (tmp_path / "loop").symlink_to(tmp_path / "loop")
    transport = FakeTransport()
    real_decide = decide

    def flaky_decide(policy: PermissionPolicy, request: PermissionRequested):
        if request.request_id == "boom":
            raise RuntimeError("policy exploded")
        return real_decide(policy, request)

    monkeypatch.setattr("agent_relay.execution_plane.permissions.decide", flaky_decide)

    async def scenario() -> None:
        arbiter = PermissionArbiter(transport, PermissionPolicy.workdir_scoped(tmp_path))
        arbiter.start()
        transport.hub.publish(StreamRecord("{}", _ask("p1", "read", path="loop/x")))
        transport.hub.publish(StreamRecord("{}", _ask("boom", "read", path="ok.txt")))
        transport.hub.publish(StreamRecord("{}", _ask("p2", "read", path="ok.txt")))
        for _ in range(20):
            await asyncio.sleep(0)
        arbiter.stop()

    asyncio.run(scenario())

    replies = {request_id: reply for request_id, reply, _ in transport.replies}
    assert set(replies) == {"p1", "boom", "p2"}
    assert replies["boom"] == "reject"
    assert replies["p2"] == "once"
