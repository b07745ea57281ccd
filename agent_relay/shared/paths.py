"""Path helpers shared by the store, the lock, and the permission arbiter."""

from __future__ import annotations

import os
import re
import stat
import tempfile
from pathlib import Path

_SLUG_RE = re.compile(r"[^a-z0-9]+")


def canonicalize_plan_path(plan_path: Path | str) -> str:
    """Absolute, symlink-resolved plan path used as the store and lock key."""

    return str(Path(plan_path).expanduser().resolve())


def is_path_in_workdir(candidate: Path | str, workdir: Path | str) -> bool:
    """True when ``candidate`` (relative paths are taken from ``workdir``) stays inside it.

    Both sides are resolved through symlinks and ``..`` first; for paths that do
    not exist yet the deepest existing ancestor is resolved. A path that cannot
    be resolved (symlink loop, unreadable component) is treated as outside.
    """

    try:
        root = Path(workdir).resolve()
        target = Path(candidate).expanduser()
        if not target.is_absolute():
            target = root / target
        target.resolve().relative_to(root)
        return True
    except (OSError, RuntimeError, ValueError):
        return False


def ensure_secure_dir(path: Path) -> None:
    """Create directory with 0700 permissions (owner only)."""
    path.mkdir(parents=True, exist_ok=True)
    path.chmod(stat.S_IRWXU)


def write_text_atomic(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(text)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, path)
    except OSError:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise


def slugify(value: str, max_length: int = 40) -> str:
    slug = _SLUG_RE.sub("-", value.lower()).strip("-")
    return slug[:max_length].rstrip("-") or "item"


def invocation_log_path(log_dir: Path, run_id: str, role: str, phase: str, iteration: int) -> Path:
    return log_dir / run_id / f"{role}-phase{slugify(phase)}-iter{iteration}.ndjson"
