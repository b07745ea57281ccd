"""One shared store handle per resolved database path."""

from __future__ import annotations

import os
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from agent_relay.control_plane.db.db import RunStore


class StoreRegistry:
    """Reference-counted handles keyed by resolved path.

    A path opened twice returns the same :class:`RunStore`; the connection is
    closed once the last holder releases it.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._stores: dict[str, RunStore] = {}
        self._refs: dict[str, int] = {}

    @staticmethod
    def resolve(db_path: Path | str) -> str:
        raw = str(db_path)
        if raw == ":memory:":
            return raw
        return os.path.realpath(os.path.abspath(raw))

    def acquire(self, db_path: Path | str) -> RunStore:
        key = self.resolve(db_path)
        with self._lock:
            store = self._stores.get(key)
            if store is None:
                store = RunStore(key)
                self._stores[key] = store
                self._refs[key] = 0
            self._refs[key] += 1
            return store

    def release(self, db_path: Path | str) -> None:
        key = self.resolve(db_path)
        with self._lock:
            if key not in self._refs:
                return
            self._refs[key] -= 1
            if self._refs[key] <= 0:
                self._refs.pop(key)
                self._stores.pop(key).close()

    def is_open(self, db_path: Path | str) -> bool:
        return self.resolve(db_path) in self._stores

    @contextmanager
    def open(self, db_path: Path | str) -> Iterator[RunStore]:
        store = self.acquire(db_path)
        try:
            yield store
        finally:
            self.release(db_path)

    def close_all(self) -> None:
        with self._lock:
            for store in self._stores.values():
                store.close()
            self._stores.clear()
            self._refs.clear()
