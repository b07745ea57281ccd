"""Closed set of agent stream events decoded from NDJSON records.

Every decoded record maps to exactly one variant. Record kinds this module
does not know about become :class:`Unrecognized` and are ignored downstream.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Union

RESULT_REQUIRED_FIELDS = ("result",)


@dataclass(frozen=True)
class SessionCreated:
    session_id: str


@dataclass(frozen=True)
class PartUpdated:
    """A text or reasoning part changed; carries a delta, a full snapshot, or both."""

    part_id: str | None
    part_type: str
    delta: str | None = None
    text: str | None = None


@dataclass(frozen=True)
class ToolPartUpdated:
    key: str | None
    tool: str
    status: str | None
    input: Any = None
    title: str | None = None
    output: Any = None
    error: Any = None


@dataclass(frozen=True)
class StepFinished:
    tokens_in: int | None = None
    tokens_out: int | None = None
    cost_usd: float | None = None


@dataclass(frozen=True)
class OtherPartUpdated:
    part_type: str | None


@dataclass(frozen=True)
class PartDelta:
    """Legacy flat delta addressed by part id only."""

    part_id: str | None
    delta: str | None


@dataclass(frozen=True)
class SessionError:
    message: str | None


@dataclass(frozen=True)
class PermissionRequested:
    request_id: str
    tool: str
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class LegacyAssistantMessage:
    content: tuple[dict[str, Any], ...]


@dataclass(frozen=True)
class LegacyUserMessage:
    content: tuple[dict[str, Any], ...]


@dataclass(frozen=True)
class LegacySystem:
    subtype: str | None
    session_id: str | None = None


@dataclass(frozen=True)
class ResultRecord:
    """Terminal record of one invocation."""

    subtype: str | None
    is_error: bool
    result: str | None
    structured_output: Any = None
    session_id: str | None = None
    duration_ms: int | None = None
    cost_usd: float | None = None
    tokens_in: int | None = None
    tokens_out: int | None = None
    missing_fields: tuple[str, ...] = ()


@dataclass(frozen=True)
class Unrecognized:
    type: str | None


AgentEvent = Union[
    SessionCreated,
    PartUpdated,
    ToolPartUpdated,
    StepFinished,
    OtherPartUpdated,
    PartDelta,
    SessionError,
    PermissionRequested,
    LegacyAssistantMessage,
    LegacyUserMessage,
    LegacySystem,
    ResultRecord,
    Unrecognized,
]


@dataclass(frozen=True)
class StreamRecord:
    """One stdout line as received plus its decoded event."""

    line: str
    event: AgentEvent


def _str(value: Any) -> str | None:
    return value if isinstance(value, str) and value else None


def _int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    return None


def _float(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    return None


def _content(message: Any) -> tuple[dict[str, Any], ...]:
    if not isinstance(message, dict):
        return ()
    content = message.get("content")
    if not isinstance(content, list):
        return ()
    return tuple(item for item in content if isinstance(item, dict))


def _parse_part(props: dict[str, Any]) -> AgentEvent:
    part = props.get("part")
    if not isinstance(part, dict):
        return OtherPartUpdated(part_type=None)
    part_type = _str(part.get("type"))
    if part_type in ("text", "reasoning"):
        delta = props.get("delta")
        text = part.get("text")
        return PartUpdated(
            part_id=_str(part.get("id")),
            part_type=part_type,
            delta=delta if isinstance(delta, str) else None,
            text=text if isinstance(text, str) else None,
        )
    if part_type == "tool":
        state = part.get("state") if isinstance(part.get("state"), dict) else {}
        return ToolPartUpdated(
            key=_str(part.get("id")) or _str(part.get("callID")),
            tool=_str(part.get("tool")) or "unknown",
            status=_str(state.get("status")),
            input=state.get("input"),
            title=_str(state.get("title")),
            output=state.get("output"),
            error=state.get("error"),
        )
    if part_type == "step-finish":
        tokens = part.get("tokens") if isinstance(part.get("tokens"), dict) else {}
        return StepFinished(
            tokens_in=_int(tokens.get("input")),
            tokens_out=_int(tokens.get("output")),
            cost_usd=_float(part.get("cost")),
        )
    return OtherPartUpdated(part_type=part_type)


def _parse_result(record: dict[str, Any]) -> ResultRecord:
    usage = record.get("usage") if isinstance(record.get("usage"), dict) else {}
    result = record.get("result")
    return ResultRecord(
        subtype=_str(record.get("subtype")),
        is_error=record.get("is_error") is True,
        result=result if isinstance(result, str) else None,
        structured_output=record.get("structured_output"),
        session_id=_str(record.get("session_id")),
        duration_ms=_int(record.get("duration_ms")),
        cost_usd=_float(record.get("total_cost_usd")),
        tokens_in=_int(usage.get("input_tokens")),
        tokens_out=_int(usage.get("output_tokens")),
        missing_fields=tuple(name for name in RESULT_REQUIRED_FIELDS if name not in record),
    )


def parse_event(record: Any) -> AgentEvent:
    """Map one decoded NDJSON record onto the event union."""

    if not isinstance(record, dict):
        return Unrecognized(type=None)
    kind = record.get("type")
    if not isinstance(kind, str):
        return Unrecognized(type=None)
    props = record.get("properties")
    if isinstance(props, dict):
        if kind == "session.created":
            info = props.get("info") if isinstance(props.get("info"), dict) else {}
            session_id = _str(info.get("id"))
            return SessionCreated(session_id) if session_id else Unrecognized(type=kind)
        if kind == "message.part.updated":
            return _parse_part(props)
        if kind == "message.part.delta":
            delta = props.get("delta")
            return PartDelta(
                part_id=_str(props.get("partID")),
                delta=delta if isinstance(delta, str) else None,
            )
        if kind == "session.error":
            error = props.get("error")
            if isinstance(error, dict):
                error = error.get("message") or error.get("name")
            return SessionError(message=_str(error))
        if kind in ("permission.asked", "permission.updated"):
            request_id = _str(props.get("id"))
            if request_id is None:
                return Unrecognized(type=kind)
            arguments = props.get("arguments")
            return PermissionRequested(
                request_id=request_id,
                tool=_str(props.get("tool")) or "unknown",
                arguments=arguments if isinstance(arguments, dict) else {},
            )
        return Unrecognized(type=kind)
    if kind == "assistant":
        return LegacyAssistantMessage(content=_content(record.get("message")))
    if kind == "user":
        return LegacyUserMessage(content=_content(record.get("message")))
    if kind == "system":
        return LegacySystem(subtype=_str(record.get("subtype")), session_id=_str(record.get("session_id")))
    if kind == "result":
        return _parse_result(record)
    return Unrecognized(type=kind)


def event_session_id(event: AgentEvent) -> str | None:
    if isinstance(event, SessionCreated):
        return event.session_id
    if isinstance(event, (LegacySystem, ResultRecord)):
        return event.session_id
    return None
