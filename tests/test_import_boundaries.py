from __future__ import annotations

import ast
from pathlib import Path

PACKAGE_ROOT = Path(__file__).resolve().parents[1] / "agent_relay"


def _imported_modules(path: Path) -> list[str]:
    tree = ast.parse(path.read_text(encoding="utf-8"), filename=str(path))
    names: list[str] = []
    for node in ast.walk(tree):
        if isinstance(node, ast.Import):
            names.extend(alias.name for alias in node.names)
        elif isinstance(node, ast.ImportFrom):
            names.append(node.module or "")
    return names


def test_control_plane_does_not_import_render_or_console() -> None:
    forbidden = ("agent_relay.execution_plane.render", "agent_relay.execution_plane.console")
    for path in (PACKAGE_ROOT / "control_plane").rglob("*.py"):
        for name in _imported_modules(path):
            assert not name.startswith(forbidden), f"{path} imports {name}"


def test_shared_depends_on_nothing_else_in_the_package() -> None:
    for path in (PACKAGE_ROOT / "shared").rglob("*.py"):
        for name in _imported_modules(path):
            assert not name.startswith(("agent_relay.control_plane", "agent_relay.execution_plane")), (
                f"{path} imports {name}"
            )


def test_render_layer_does_not_reach_into_control_plane() -> None:
    for path in (PACKAGE_ROOT / "execution_plane" / "render").rglob("*.py"):
        for name in _imported_modules(path):
            assert not name.startswith("agent_relay.control_plane"), f"{path} imports {name}"
