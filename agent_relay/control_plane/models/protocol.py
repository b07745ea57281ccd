"""Pydantic contracts for the author status and reviewer verdict signals."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError


class ProtocolViolation(Exception):
    """The agent's structured result broke a contract invariant.

    Always escalated to the caller, never coerced into a usable result.
    """

    def __init__(self, message: str, context: str = "") -> None:
        super().__init__(message)
        self.context = context


class AuthorStatus(BaseModel):
    """Outcome an author agent reports at the end of a turn."""

    model_config = ConfigDict(extra="ignore")

    result: Literal["complete", "needs_human", "failed"]
    commit: str | None = None
    reason: str | None = None
    notes: str | None = None


class VerdictItem(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(min_length=1)
    title: str
    action: Literal["auto_fix", "human_required"]
    reason: str
    priority: Literal["P0", "P1", "P2"] | None = None


class ReviewerVerdict(BaseModel):
    """Outcome a reviewer agent reports after reviewing a phase."""

    model_config = ConfigDict(extra="ignore")

    readiness: Literal["ready", "ready_with_corrections", "not_ready"]
    items: list[VerdictItem] = Field(default_factory=list)
    summary: str | None = None


def author_status_schema() -> dict[str, Any]:
    return AuthorStatus.model_json_schema()


def reviewer_verdict_schema() -> dict[str, Any]:
    return ReviewerVerdict.model_json_schema()


def assert_author_status(status: AuthorStatus, context: str, require_commit: bool = False) -> None:
    if status.result == "complete":
        if require_commit and not status.commit:
            raise ProtocolViolation(
                f"{context}: author reported complete without a commit reference "
                "(invariant violation). Escalating.",
                context,
            )
        return
    if not (status.reason or "").strip():
        raise ProtocolViolation(
            f"{context}: author reported {status.result} without a reason "
            "(invariant violation). Escalating.",
            context,
        )


def assert_reviewer_verdict(verdict: ReviewerVerdict, context: str) -> None:
    if verdict.readiness != "ready" and not verdict.items:
        raise ProtocolViolation(
            f"{context}: reviewer verdict is {verdict.readiness} with no items "
            "(invariant violation). Escalating.",
            context,
        )


def validate_author_status(
    payload: Any, context: str, require_commit: bool = False
) -> AuthorStatus:
    """Validate a decoded status payload, raising ProtocolViolation on any break."""

    if isinstance(payload, dict) and payload.get("result") == "completed":
        payload = {**payload, "result": "complete"}
    try:
        status = AuthorStatus.model_validate(payload)
    except ValidationError as exc:
        raise ProtocolViolation(f"{context}: malformed author status: {_first_error(exc)}", context) from exc
    assert_author_status(status, context, require_commit=require_commit)
    return status


def validate_reviewer_verdict(payload: Any, context: str) -> ReviewerVerdict:
    try:
        verdict = ReviewerVerdict.model_validate(payload)
    except ValidationError as exc:
        raise ProtocolViolation(f"{context}: malformed reviewer verdict: {_first_error(exc)}", context) from exc
    assert_reviewer_verdict(verdict, context)
    return verdict


def _first_error(exc: ValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return str(exc)
    first = errors[0]
    location = ".".join(str(part) for part in first.get("loc", ())) or "<root>"
    return f"{location}: {first.get('msg', 'invalid')}"
