"""Streaming word-wrap writer for headless console output.

Text arrives in arbitrary fragments. Words are buffered until a boundary is
seen, a line break is inserted before any word that would overflow the width,
and fenced code blocks (lines starting with three backticks) pass through
verbatim. Reasoning text is written dimmed.
"""

from __future__ import annotations

import math
import shutil
import sys
from collections.abc import Callable
from typing import Literal

from agent_relay.execution_plane.render.ansi import Ansi, resolve_ansi

DEFAULT_WIDTH = 80
MIN_WIDTH = 20
MAX_WIDTH = 1000

Style = Literal["text", "thinking", "idle"]


def clamp_width(width: float | int | None) -> int:
    """Fall back to a sane width when the terminal reports nonsense."""

    if width is None or not isinstance(width, (int, float)) or isinstance(width, bool):
        return DEFAULT_WIDTH
    if not math.isfinite(width) or width <= 0 or width > MAX_WIDTH:
        return DEFAULT_WIDTH
    return max(MIN_WIDTH, int(width))


def _stdout_write(text: str) -> None:
    sys.stdout.write(text)
    sys.stdout.flush()


class StreamWriter:
    def __init__(
        self,
        width: float | int | None = None,
        write: Callable[[str], None] | None = None,
        ansi: Ansi | None = None,
    ) -> None:
        if width is None:
            width = shutil.get_terminal_size(fallback=(DEFAULT_WIDTH, 24)).columns
        self.width = clamp_width(width)
        self._write = write or _stdout_write
        self.ansi = ansi if ansi is not None else resolve_ansi()
        self.col = 0
        self.word_buf = ""
        self.space_buf = ""
        self.style: Style = "idle"
        self.in_fence = False
        self.line_buf = ""

    def write_text(self, delta: str) -> None:
        self._set_style("text")
        self._stream(delta)

    def write_thinking(self, delta: str) -> None:
        self._set_style("thinking")
        self._stream(delta)

    def write_line(self, text: str, dim: bool = False) -> None:
        """Write one complete line, truncated to the width instead of wrapped."""

        self.end_block()
        line = self._truncate(text)
        if dim:
            self._write(f"{self.ansi.dim}{line}{self.ansi.reset}\n")
        else:
            self._write(f"{line}\n")

    def end_block(self) -> None:
        self.flush_word()
        if self.space_buf:
            self._emit(self.space_buf)
            self.space_buf = ""
        if self.col > 0:
            self._newline()
        if self.style == "thinking":
            self._write(self.ansi.reset)
        self.style = "idle"

    close = end_block

    def _set_style(self, style: Style) -> None:
        if self.style == style:
            return
        if self.style != "idle":
            self.flush_word()
            self.space_buf = ""
            if self.col > 0:
                self._newline()
        if self.style == "thinking":
            self._write(self.ansi.reset)
        if style == "thinking":
            self._write(self.ansi.dim)
        self.style = style

    def _stream(self, delta: str) -> None:
        for ch in delta:
            if ch == "\n":
                self.flush_word()
                self.space_buf = ""
                if self.line_buf.lstrip().startswith("```"):
                    self.in_fence = not self.in_fence
                self._newline()
            elif ch in (" ", "\t"):
                self.flush_word()
                self.space_buf += ch
            else:
                self.word_buf += ch

    def flush_word(self) -> None:
        if not self.word_buf:
            if self.in_fence and self.space_buf:
                self._emit(self.space_buf)
                self.space_buf = ""
            return

        overflow = self.col + len(self.space_buf) + len(self.word_buf) > self.width
        if not self.in_fence and self.col > 0 and overflow:
            self._newline()
            self._emit(self.word_buf)
        else:
            self._emit(self.space_buf + self.word_buf)
        self.space_buf = ""
        self.word_buf = ""

    def _emit(self, text: str) -> None:
        if not text:
            return
        self._write(text)
        self.col += len(text)
        self.line_buf += text

    def _newline(self) -> None:
        self._write("\n")
        self.col = 0
        self.line_buf = ""

    def _truncate(self, text: str) -> str:
        if len(text) <= self.width:
            return text
        return f"{text[: self.width - 3]}..."
