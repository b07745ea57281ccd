"""Single-line console summaries for non-streaming agent events."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any

from agent_relay.execution_plane.agent.events import (
    AgentEvent,
    LegacyAssistantMessage,
    LegacyUserMessage,
    SessionError,
    ToolPartUpdated,
)

LARGE_STRING_THRESHOLD = 1024
TOOL_OUTPUT_MAX_SLICE = 500
SAFE_INPUT_LIMIT = 120

_WHITESPACE = re.compile(r"\s+")
_PATH_TOOLS = {"read", "write", "edit", "file_edit", "fs_read", "fs_write", "fs_edit"}


@dataclass(frozen=True)
class FormattedLine:
    text: str
    dim: bool


def tool_input_summary(tool: str, tool_input: Any) -> str:
    if not isinstance(tool_input, dict):
        return ""
    if tool == "bash":
        command = tool_input.get("command")
        return command if isinstance(command, str) else ""
    if tool in _PATH_TOOLS:
        for key in ("filePath", "path"):
            value = tool_input.get(key)
            if isinstance(value, str):
                return value
        return ""
    if tool in ("glob", "grep"):
        pattern = tool_input.get("pattern")
        return pattern if isinstance(pattern, str) else ""
    return "{" + ", ".join(tool_input) + "}" if tool_input else ""


def collapse_output(output: str, max_slice: int = TOOL_OUTPUT_MAX_SLICE) -> str:
    return _WHITESPACE.sub(" ", output[:max_slice]).strip()


def _clip(text: str, limit: int) -> str:
    return f"{text[:limit]}..." if len(text) > limit else text


def safe_input_summary(tool_input: Any, limit: int = SAFE_INPUT_LIMIT) -> str:
    """Render a tool input for display without materializing huge strings."""

    if not isinstance(tool_input, dict):
        try:
            return _clip(json.dumps(tool_input), limit)
        except (TypeError, ValueError):
            return str(tool_input)[:limit]
    keys = "{" + ", ".join(str(key) for key in tool_input) + "}"
    if any(isinstance(value, str) and len(value) > LARGE_STRING_THRESHOLD for value in tool_input.values()):
        return _clip(f"{keys} [large values]", limit)
    try:
        encoded = json.dumps(tool_input)
    except (TypeError, ValueError):
        return _clip(f"{keys} [unserializable]", limit)
    if len(encoded) > limit:
        return _clip(f"{keys} ({len(encoded)} chars)", limit)
    return encoded


def _format_tool(event: ToolPartUpdated) -> FormattedLine | None:
    if event.status == "running":
        label = event.title or event.tool
        summary = tool_input_summary(event.tool, event.input)
        return FormattedLine(f"{label}: {summary}" if summary else label, dim=True)
    if event.status == "completed":
        if isinstance(event.output, str) and event.output:
            collapsed = collapse_output(event.output)
            if collapsed:
                return FormattedLine(collapsed, dim=True)
        return None
    if event.status == "error" and isinstance(event.error, str):
        return FormattedLine(f"! {event.tool}: {event.error}", dim=False)
    return None


def _tool_result_text(block: dict[str, Any]) -> str:
    content = block.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list) and content and isinstance(content[0], dict):
        text = content[0].get("text")
        return text if isinstance(text, str) else ""
    return ""


def format_event(event: AgentEvent) -> FormattedLine | None:
    """Return the display line for an event, or None to keep it off the console."""

    if isinstance(event, ToolPartUpdated):
        return _format_tool(event)
    if isinstance(event, SessionError):
        return FormattedLine(f"! {event.message}", dim=False) if event.message else None
    if isinstance(event, LegacyAssistantMessage):
        lines = []
        for block in event.content:
            if block.get("type") == "text" and isinstance(block.get("text"), str) and block["text"]:
                lines.append(block["text"])
            elif block.get("type") == "tool_use":
                name = block.get("name") if isinstance(block.get("name"), str) else "unknown"
                lines.append(f"{name}: {safe_input_summary(block.get('input'))}")
        return FormattedLine("\n".join(lines), dim=False) if lines else None
    if isinstance(event, LegacyUserMessage):
        lines = []
        for block in event.content:
            if block.get("type") != "tool_result":
                continue
            collapsed = collapse_output(_tool_result_text(block))
            if collapsed:
                lines.append(collapsed)
        return FormattedLine("\n".join(lines), dim=True) if lines else None
    return None
