from __future__ import annotations

import pytest

from agent_relay.control_plane.models.protocol import (
    AuthorStatus,
    ProtocolViolation,
    ReviewerVerdict,
    assert_author_status,
    assert_reviewer_verdict,
    author_status_schema,
    reviewer_verdict_schema,
    validate_author_status,
    validate_reviewer_verdict,
)


def test_complete_status_without_commit_is_accepted_unless_required() -> None:
    status = validate_author_status({"result": "complete"}, "author phase 1")
    assert status.commit is None

    with pytest.raises(ProtocolViolation, match="without a commit reference"):
        validate_author_status({"result": "complete"}, "author phase 1", require_commit=True)


@pytest.mark.parametrize("result", ["needs_human", "failed"])
def test_non_complete_status_requires_reason(result: str) -> None:
    with pytest.raises(ProtocolViolation, match=r"invariant violation\). Escalating\.") as excinfo:
        assert_author_status(AuthorStatus(result=result, reason="   "), "author phase 2")
    assert excinfo.value.context == "author phase 2"


def test_legacy_completed_value_is_normalized() -> None:
    status = validate_author_status({"result": "completed", "commit": "abc"}, "ctx")
    assert status.result == "complete"


def test_malformed_status_reports_first_error() -> None:
    with pytest.raises(ProtocolViolation, match="malformed author status: result"):
        validate_author_status({"result": "done"}, "ctx")


def test_non_ready_verdict_needs_items() -> None:
    with pytest.raises(ProtocolViolation, match="not_ready with no items"):
        assert_reviewer_verdict(ReviewerVerdict(readiness="not_ready"), "reviewer phase 1")

    verdict = validate_reviewer_verdict(
        {
            "readiness": "ready_with_corrections",
            "items": [{"id": "R1", "title": "Rename", "action": "auto_fix", "reason": "clarity"}],
            "extra": "ignored",
        },
        "reviewer phase 1",
    )
    assert verdict.items[0].id == "R1"


def test_verdict_item_ids_cannot_be_empty() -> None:
    with pytest.raises(ProtocolViolation, match="malformed reviewer verdict"):
        validate_reviewer_verdict(
            {"readiness": "not_ready", "items": [{"id": "", "title": "t", "action": "auto_fix", "reason": "r"}]},
            "ctx",
        )


def test_schemas_describe_the_signal_fields() -> None:
    assert "result" in author_status_schema()["properties"]
    assert author_status_schema()["required"] == ["result"]
    assert "readiness" in reviewer_verdict_schema()["properties"]
