"""Locate the structured signal an agent returned.

Agents that support structured output put it on the terminal ``result``
record. Others embed a YAML block in their final text::

    <!-- relay:status
    result: complete
    commit: 1a2b3c4
    -->

The last block of the requested kind wins. Blocks larger than
``MAX_SIGNAL_BLOCK_BYTES`` or that do not decode to a mapping are rejected.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Literal

import yaml

from agent_relay.execution_plane.agent.events import ResultRecord

logger = logging.getLogger(__name__)

MAX_SIGNAL_BLOCK_BYTES = 64 * 1024

SignalKind = Literal["status", "verdict"]

_BLOCK_PATTERNS = {
    "status": re.compile(r"<!--\s*relay:status\s*\n(.*?)-->", re.DOTALL),
    "verdict": re.compile(r"<!--\s*relay:verdict\s*\n(.*?)-->", re.DOTALL),
}


def extract_signal_block(text: str, kind: SignalKind) -> dict[str, Any] | None:
    matches = _BLOCK_PATTERNS[kind].findall(text or "")
    if not matches:
        return None
    block = matches[-1]
    size = len(block.encode("utf-8"))
    if size > MAX_SIGNAL_BLOCK_BYTES:
        logger.warning("rejected %s block of %d bytes (limit %d)", kind, size, MAX_SIGNAL_BLOCK_BYTES)
        return None
    try:
        data = yaml.safe_load(block)
    except yaml.YAMLError as exc:
        logger.warning("rejected malformed %s block: %s", kind, exc)
        return None
    if not isinstance(data, dict):
        logger.warning("rejected %s block that is not a mapping", kind)
        return None
    return data


def resolve_signal_payload(
    result: ResultRecord | None, text: str, kind: SignalKind
) -> dict[str, Any] | None:
    """Structured output on the result record first, then an embedded block."""

    if result is not None and isinstance(result.structured_output, dict):
        return result.structured_output
    return extract_signal_block(text, kind)
