"""ANSI escape codes, honouring NO_COLOR / FORCE_COLOR."""

from __future__ import annotations

import os
import sys
from collections.abc import Mapping
from dataclasses import dataclass

DIM = "\x1b[2m"
RESET = "\x1b[0m"


@dataclass(frozen=True)
class Ansi:
    dim: str = ""
    reset: str = ""

    @property
    def enabled(self) -> bool:
        return bool(self.dim)


PLAIN = Ansi()
COLOR = Ansi(dim=DIM, reset=RESET)


def colors_enabled(env: Mapping[str, str] | None = None, is_tty: bool | None = None) -> bool:
    source = os.environ if env is None else env
    if "NO_COLOR" in source:
        return False
    force = source.get("FORCE_COLOR")
    if force is not None:
        return force != "0"
    if is_tty is None:
        is_tty = sys.stdout.isatty()
    return is_tty


def resolve_ansi(env: Mapping[str, str] | None = None, is_tty: bool | None = None) -> Ansi:
    return COLOR if colors_enabled(env, is_tty) else PLAIN
