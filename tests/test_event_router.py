from __future__ import annotations

from agent_relay.execution_plane.agent.events import parse_event
from agent_relay.execution_plane.render.event_router import BoundedIdSet, EventRouter, incremental_append


class RecordingSink:
    def __init__(self) -> None:
        self.calls: list[tuple[str, str]] = []

    def write_text(self, delta: str) -> None:
        self.calls.append(("text", delta))

    def write_thinking(self, delta: str) -> None:
        self.calls.append(("thinking", delta))

    def write_line(self, text: str, dim: bool = False) -> None:
        self.calls.append(("dim" if dim else "line", text))


def _part(part: dict, delta: str | None = None) -> dict:
    props: dict = {"part": part}
    if delta is not None:
        props["delta"] = delta
    return {"type": "message.part.updated", "properties": props}


def _tool(status: str, **state: object) -> dict:
    return _part({"id": "tool-1", "type": "tool", "tool": "bash", "state": {"status": status, **state}})


def _route(router: EventRouter, sink: RecordingSink, *records: dict) -> None:
    for record in records:
        router.route(parse_event(record), sink)


def test_full_text_snapshots_only_emit_the_increment() -> None:
    router, sink = EventRouter(), RecordingSink()

    _route(
        router,
        sink,
        _part({"id": "p1", "type": "text", "text": "Hello"}),
        _part({"id": "p1", "type": "text", "text": "Hello, wor"}),
        _part({"id": "p1", "type": "text", "text": "Hello, wor"}),
        _part({"id": "p1", "type": "text", "text": "Hello, world"}),
    )

    assert sink.calls == [("text", "Hello"), ("text", ", wor"), ("text", "ld")]


def test_legacy_delta_is_suppressed_once_update_deltas_streamed() -> None:
    router, sink = EventRouter(), RecordingSink()

    _route(
        router,
        sink,
        _part({"id": "p1", "type": "text"}, delta="Hi"),
        {"type": "message.part.delta", "properties": {"partID": "p1", "delta": "Hi"}},
    )

    assert sink.calls == [("text", "Hi")]


def test_snapshot_after_delta_only_updates_prints_the_remainder() -> None:
    router, sink = EventRouter(), RecordingSink()

    _route(
        router,
        sink,
        _part({"id": "p1", "type": "text"}, delta="Hel"),
        _part({"id": "p1", "type": "text"}, delta="lo"),
        _part({"id": "p1", "type": "text", "text": "Hello world"}),
    )

    assert sink.calls == [("text", "Hel"), ("text", "lo"), ("text", " world")]


def test_legacy_delta_routes_by_registered_part_type() -> None:
    router, sink = EventRouter(show_reasoning=True), RecordingSink()

    _route(
        router,
        sink,
        _part({"id": "t", "type": "text"}),
        _part({"id": "r", "type": "reasoning"}),
        {"type": "message.part.delta", "properties": {"partID": "t", "delta": "answer"}},
        {"type": "message.part.delta", "properties": {"partID": "r", "delta": "hmm"}},
        {"type": "message.part.delta", "properties": {"partID": "unknown", "delta": "?"}},
    )

    assert sink.calls == [("text", "answer"), ("thinking", "hmm")]


def test_reasoning_hidden_unless_enabled() -> None:
    router, sink = EventRouter(), RecordingSink()

    _route(router, sink, _part({"id": "r", "type": "reasoning"}, delta="secret thoughts"))

    assert sink.calls == []


def test_repeated_running_tool_event_renders_once_until_completed() -> None:
    router, sink = EventRouter(), RecordingSink()
    running = _tool("running", input={"command": "ls"}, metadata={"tick": 1})

    _route(router, sink, running, _tool("running", input={"command": "ls"}, metadata={"tick": 2}))
    assert sink.calls == [("dim", "bash: ls")]

    _route(router, sink, _tool("completed", input={"command": "ls"}, output="a.txt\nb.txt"), running)
    assert sink.calls == [("dim", "bash: ls"), ("dim", "a.txt b.txt"), ("dim", "bash: ls")]


def test_tool_errors_and_session_errors_are_not_dimmed() -> None:
    router, sink = EventRouter(), RecordingSink()

    _route(
        router,
        sink,
        _tool("error", error="exit 2"),
        {"type": "session.error", "properties": {"error": "rate limited"}},
    )

    assert sink.calls == [("line", "! bash: exit 2"), ("line", "! rate limited")]


def test_unknown_events_are_dropped() -> None:
    router, sink = EventRouter(), RecordingSink()

    _route(
        router,
        sink,
        {"type": "file.watcher.updated", "properties": {"file": "x"}},
        {"type": "brand_new_kind"},
        _part({"id": "s", "type": "step-finish", "tokens": {"input": 1}}),
        {"type": "result", "result": "done"},
    )

    assert sink.calls == []


def test_bounded_id_set_evicts_oldest_and_refreshes_on_readd() -> None:
    ids = BoundedIdSet(max_size=3)
    for item in ("a", "b", "c"):
        ids.add(item)
    ids.add("a")
    ids.add("d")

    assert list(ids) == ["c", "a", "d"]
    assert "b" not in ids


def test_router_dedup_state_stays_bounded() -> None:
    router, sink = EventRouter(max_tracked=8), RecordingSink()

    for index in range(100):
        _route(router, sink, _part({"id": f"p{index}", "type": "text"}, delta="."))

    assert len(router.updated_delta_part_ids) == 8
    assert len(router.text_part_ids) == 8

    for index in range(100):
        _route(router, sink, _part({"id": f"t{index}", "type": "tool", "tool": "bash", "state": {"status": "running"}}))

    assert len(router.running_tool_signatures) == 8


def test_incremental_append() -> None:
    assert incremental_append("", "abc") == "abc"
    assert incremental_append("abc", "abcdef") == "def"
    assert incremental_append("abc", "abc") == ""
    assert incremental_append("abc", "xyz") == ""
