from __future__ import annotations

import logging

import pytest

from agent_relay.execution_plane.agent.events import ResultRecord
from agent_relay.execution_plane.agent.signals import (
    MAX_SIGNAL_BLOCK_BYTES,
    extract_signal_block,
    resolve_signal_payload,
)


def test_last_status_block_wins() -> None:
    text = (
        "working\n<!-- relay:status\nresult: failed\nreason: first\n-->\n"
        "retrying\n<!-- relay:status\nresult: complete\ncommit: abc123\n-->\n"
    )
    assert extract_signal_block(text, "status") == {"result": "complete", "commit": "abc123"}


def test_kinds_do_not_mix() -> None:
    text = "<!-- relay:verdict\nreadiness: ready\n-->"
    assert extract_signal_block(text, "status") is None
    assert extract_signal_block(text, "verdict") == {"readiness": "ready"}


def test_oversized_block_is_rejected(caplog: pytest.LogCaptureFixture) -> None:
    filler = "x" * (MAX_SIGNAL_BLOCK_BYTES + 10)
    text = f"<!-- relay:status\nresult: complete\nnotes: {filler}\n-->"
    with caplog.at_level(logging.WARNING):
        assert extract_signal_block(text, "status") is None
    assert "rejected status block" in caplog.text


@pytest.mark.parametrize(
    "body",
    ["result: [unterminated\n", "- just\n- a list\n"],
)
def test_malformed_or_non_mapping_block_is_absent(body: str) -> None:
    assert extract_signal_block(f"<!-- relay:status\n{body}-->", "status") is None


def test_structured_output_beats_embedded_block() -> None:
    result = ResultRecord(
        subtype="success", is_error=False, result="done", structured_output={"result": "needs_human", "reason": "stuck"}
    )
    text = "<!-- relay:status\nresult: complete\n-->"
    assert resolve_signal_payload(result, text, "status") == {"result": "needs_human", "reason": "stuck"}
    assert resolve_signal_payload(None, text, "status") == {"result": "complete"}
