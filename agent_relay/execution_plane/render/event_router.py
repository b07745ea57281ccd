"""Routes decoded agent events to a :class:`StreamWriter`.

The router keeps just enough per-invocation state to print every piece of
agent text once: which parts are text or reasoning, the last full snapshot of
each part, which parts already streamed through update events, and the last
``running`` signature of each tool call.
"""

from __future__ import annotations

import json
from collections import OrderedDict
from collections.abc import Iterator
from typing import Protocol

from agent_relay.execution_plane.agent.events import (
    AgentEvent,
    PartDelta,
    PartUpdated,
    ToolPartUpdated,
)
from agent_relay.execution_plane.render.formatter import format_event

MAX_TRACKED_PART_IDS = 4096


class TextSink(Protocol):
    def write_text(self, delta: str) -> None: ...

    def write_thinking(self, delta: str) -> None: ...

    def write_line(self, text: str, dim: bool = False) -> None: ...


class BoundedIdSet:
    """Insertion-ordered set that evicts the oldest id past ``max_size``."""

    def __init__(self, max_size: int = MAX_TRACKED_PART_IDS) -> None:
        self.max_size = max_size
        self._items: OrderedDict[str, None] = OrderedDict()

    def add(self, item: str) -> None:
        if item in self._items:
            self._items.move_to_end(item)
        else:
            self._items[item] = None
        while len(self._items) > self.max_size:
            self._items.popitem(last=False)

    def __contains__(self, item: object) -> bool:
        return item in self._items

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[str]:
        return iter(self._items)


class BoundedTextMap:
    def __init__(self, max_size: int = MAX_TRACKED_PART_IDS) -> None:
        self.max_size = max_size
        self._items: OrderedDict[str, str] = OrderedDict()

    def get(self, key: str, default: str = "") -> str:
        return self._items.get(key, default)

    def set(self, key: str, value: str) -> None:
        self._items[key] = value
        self._items.move_to_end(key)
        while len(self._items) > self.max_size:
            self._items.popitem(last=False)

    def pop(self, key: str) -> None:
        self._items.pop(key, None)

    def __len__(self) -> int:
        return len(self._items)


def incremental_append(previous: str, current: str) -> str:
    """The part of ``current`` not yet printed, or "" when it does not extend ``previous``."""

    if not current:
        return ""
    if not previous:
        return current
    if current.startswith(previous) and len(current) > len(previous):
        return current[len(previous) :]
    return ""


def tool_signature(event: ToolPartUpdated) -> str:
    try:
        encoded = json.dumps(event.input, sort_keys=True, default=str)
    except ValueError:
        encoded = repr(event.input)
    return f"{event.tool}:{event.status or ''}:{encoded}"


class EventRouter:
    def __init__(self, show_reasoning: bool = False, max_tracked: int = MAX_TRACKED_PART_IDS) -> None:
        self.show_reasoning = show_reasoning
        self.text_part_ids = BoundedIdSet(max_tracked)
        self.reasoning_part_ids = BoundedIdSet(max_tracked)
        self.part_text_by_id = BoundedTextMap(max_tracked)
        self.updated_delta_part_ids = BoundedIdSet(max_tracked)
        self.running_tool_signatures = BoundedTextMap(max_tracked)

    def route(self, event: AgentEvent, sink: TextSink) -> None:
        if isinstance(event, PartUpdated):
            self._route_part(event, sink)
            return
        if isinstance(event, PartDelta):
            self._route_delta(event, sink)
            return
        if isinstance(event, ToolPartUpdated) and self._suppress_tool(event):
            return
        formatted = format_event(event)
        if formatted is not None:
            sink.write_line(formatted.text, dim=formatted.dim)

    def _suppress_tool(self, event: ToolPartUpdated) -> bool:
        if event.key is None:
            return False
        if event.status == "running":
            signature = tool_signature(event)
            if self.running_tool_signatures.get(event.key) == signature:
                return True
            self.running_tool_signatures.set(event.key, signature)
        elif event.status in ("completed", "error"):
            self.running_tool_signatures.pop(event.key)
        return False

    def _write(self, part_type: str, text: str, sink: TextSink) -> None:
        if part_type == "text":
            sink.write_text(text)
        elif self.show_reasoning:
            sink.write_thinking(text)

    def _route_part(self, event: PartUpdated, sink: TextSink) -> None:
        pid = event.part_id
        if pid is not None:
            if event.part_type == "text":
                self.text_part_ids.add(pid)
            else:
                self.reasoning_part_ids.add(pid)

        if event.delta:
            if pid is not None:
                self.updated_delta_part_ids.add(pid)
                if event.text is not None:
                    self.part_text_by_id.set(pid, event.text)
                else:
                    self.part_text_by_id.set(pid, self.part_text_by_id.get(pid) + event.delta)
            self._write(event.part_type, event.delta, sink)
            return

        if pid is None or event.text is None:
            return
        append = incremental_append(self.part_text_by_id.get(pid), event.text)
        self.part_text_by_id.set(pid, event.text)
        if append:
            self.updated_delta_part_ids.add(pid)
            self._write(event.part_type, append, sink)

    def _route_delta(self, event: PartDelta, sink: TextSink) -> None:
        pid = event.part_id
        if pid is None or not event.delta:
            return
        if pid in self.updated_delta_part_ids:
            return
        if pid in self.text_part_ids:
            sink.write_text(event.delta)
        elif pid in self.reasoning_part_ids and self.show_reasoning:
            sink.write_thinking(event.delta)
