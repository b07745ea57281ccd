from __future__ import annotations

import math

import pytest

from agent_relay.execution_plane.render.ansi import COLOR, PLAIN, colors_enabled
from agent_relay.execution_plane.render.stream_writer import DEFAULT_WIDTH, MIN_WIDTH, StreamWriter, clamp_width


def _writer(width: int = 20, ansi=PLAIN) -> tuple[StreamWriter, list[str]]:
    chunks: list[str] = []
    return StreamWriter(width=width, write=chunks.append, ansi=ansi), chunks


def test_wrapped_lines_never_exceed_width_and_keep_word_order() -> None:
    writer, chunks = _writer(20)
    text = "one two three four five six"

    for start in range(0, len(text), 3):
        writer.write_text(text[start : start + 3])
    writer.end_block()

    output = "".join(chunks)
    lines = output.rstrip("\n").split("\n")
    assert len(lines) > 1
    assert all(len(line) <= 20 for line in lines)
    assert " ".join(lines).split() == text.split()
    assert all(line == line.rstrip() for line in lines)


def test_fenced_block_is_emitted_verbatim() -> None:
    writer, chunks = _writer(20)
    code = "```\n    deeply_indented_call(argument_one, argument_two)\n```\n"

    writer.write_text(code)
    writer.end_block()

    assert "    deeply_indented_call(argument_one, argument_two)\n" in "".join(chunks)


def test_leading_whitespace_of_a_line_is_preserved() -> None:
    writer, chunks = _writer(40)

    writer.write_text("list:\n  - item\n")
    writer.end_block()

    assert "".join(chunks) == "list:\n  - item\n"


def test_write_line_truncates_with_ellipsis() -> None:
    writer, chunks = _writer(20)

    writer.write_line("x" * 30)

    assert chunks == ["x" * 17 + "...\n"]


def test_write_line_closes_open_stream_first() -> None:
    writer, chunks = _writer(40)

    writer.write_text("partial")
    writer.write_line("bash: ls", dim=True)

    assert "".join(chunks) == "partial\nbash: ls\n"


def test_switching_style_closes_the_open_line() -> None:
    writer, chunks = _writer(40, ansi=COLOR)

    writer.write_thinking("pondering")
    writer.write_text("answer")
    writer.end_block()

    assert "".join(chunks) == "\x1b[2mpondering\n\x1b[0manswer\n"


@pytest.mark.parametrize("reported", [0, -5, math.inf, math.nan, 10**7, None, "wide"])
def test_width_falls_back_for_nonsense_values(reported: object) -> None:
    assert clamp_width(reported) == DEFAULT_WIDTH  # type: ignore[arg-type]


def test_width_has_a_floor() -> None:
    assert clamp_width(3) == MIN_WIDTH


@pytest.mark.parametrize(
    ("env", "tty", "expected"),
    [
        ({}, True, True),
        ({}, False, False),
        ({"NO_COLOR": ""}, True, False),
        ({"FORCE_COLOR": "1"}, False, True),
        ({"FORCE_COLOR": "0"}, True, False),
    ],
)
def test_colors_enabled(env: dict[str, str], tty: bool, expected: bool) -> None:
    assert colors_enabled(env, is_tty=tty) is expected
