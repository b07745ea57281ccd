"""Per-plan lock files that keep two orchestrators off the same plan."""

from __future__ import annotations

import errno
import hashlib
import json
import logging
import os
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from agent_relay.shared.paths import canonicalize_plan_path, write_text_atomic

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LockInfo:
    pid: int
    started_at: str
    plan_path: str


@dataclass(frozen=True)
class LockResult:
    acquired: bool
    existing: LockInfo | None = None
    stale: bool = False


class PlanLockedError(RuntimeError):
    def __init__(self, result: LockResult) -> None:
        self.result = result
        if result.existing is None:
            detail = "lock file is unreadable"
        else:
            detail = f"held by pid {result.existing.pid} since {result.existing.started_at}"
        state = "stale lock" if result.stale else "plan is locked"
        super().__init__(f"{state}: {detail}")


def lock_path(lock_dir: Path, plan_path: str) -> Path:
    digest = hashlib.sha256(plan_path.encode("utf-8")).hexdigest()[:16]
    return lock_dir / f"{digest}.lock"


def is_pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except OSError as exc:
        return exc.errno == errno.EPERM
    return True


def read_lock_file(path: Path) -> LockInfo | None:
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return None
    if not isinstance(payload, dict):
        return None
    pid, started_at, plan = payload.get("pid"), payload.get("started_at"), payload.get("plan_path")
    if not isinstance(pid, int) or not isinstance(started_at, str) or not isinstance(plan, str):
        return None
    return LockInfo(pid=pid, started_at=started_at, plan_path=plan)


def _write_lock(path: Path, plan_path: str) -> None:
    info = {
        "pid": os.getpid(),
        "started_at": datetime.now(timezone.utc).isoformat(),
        "plan_path": plan_path,
    }
    write_text_atomic(path, json.dumps(info, indent=2))


def acquire_lock(lock_dir: Path, plan_path: Path | str, *, steal_stale: bool = False) -> LockResult:
    """Take the lock for ``plan_path``.

    Re-entrant for this process. A live foreign holder is refused. A lock whose
    holder is gone, or whose file cannot be read, is returned as ``stale`` and
    left in place unless ``steal_stale`` is set.
    """

    canonical = canonicalize_plan_path(plan_path)
    path = lock_path(lock_dir, canonical)
    lock_dir.mkdir(parents=True, exist_ok=True)

    if path.exists():
        existing = read_lock_file(path)
        if existing is not None and existing.pid == os.getpid():
            return LockResult(acquired=True, existing=existing)
        if existing is not None and is_pid_alive(existing.pid):
            return LockResult(acquired=False, existing=existing)
        if not steal_stale:
            return LockResult(acquired=False, existing=existing, stale=True)
        logger.warning(
            "stealing stale lock for %s (pid %s)", canonical, existing.pid if existing else "unknown"
        )
        _write_lock(path, canonical)
        return LockResult(acquired=True, existing=existing, stale=True)

    _write_lock(path, canonical)
    return LockResult(acquired=True)


def release_lock(lock_dir: Path, plan_path: Path | str) -> None:
    path = lock_path(lock_dir, canonicalize_plan_path(plan_path))
    path.unlink(missing_ok=True)


def is_locked(lock_dir: Path, plan_path: Path | str) -> tuple[bool, LockInfo | None, bool]:
    """``(locked, info, stale)`` for the plan; an unreadable lock file counts as unlocked."""

    path = lock_path(lock_dir, canonicalize_plan_path(plan_path))
    if not path.exists():
        return False, None, False
    info = read_lock_file(path)
    if info is None:
        return False, None, False
    return True, info, not is_pid_alive(info.pid)


@contextmanager
def hold_plan_lock(lock_dir: Path, plan_path: Path | str, *, steal_stale: bool = False) -> Iterator[LockResult]:
    result = acquire_lock(lock_dir, plan_path, steal_stale=steal_stale)
    if not result.acquired:
        raise PlanLockedError(result)
    reentrant = result.existing is not None and not result.stale
    try:
        yield result
    finally:
        if not reentrant:
            release_lock(lock_dir, plan_path)
