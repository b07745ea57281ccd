"""Ordered, forward-only schema migrations for the run store."""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass


class MigrationError(RuntimeError):
    """A migration failed and was rolled back; the store cannot be trusted."""


@dataclass(frozen=True)
class Migration:
    version: int
    description: str
    statements: tuple[str, ...]


MIGRATIONS: tuple[Migration, ...] = (
    Migration(
        version=1,
        description="initial run ledger",
        statements=(
            """
            CREATE TABLE plans (
                plan_path TEXT PRIMARY KEY,
                worktree_path TEXT,
                branch TEXT,
                created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
                updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
            )
            """,
            """
            CREATE TABLE runs (
                id TEXT PRIMARY KEY,
                plan_path TEXT NOT NULL,
                review_path TEXT,
                command TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'active',
                current_phase TEXT,
                current_state TEXT,
                started_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
                completed_at TEXT
            )
            """,
            "CREATE INDEX idx_runs_plan_status ON runs(plan_path, status)",
            """
            CREATE TABLE run_events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                run_id TEXT NOT NULL,
                event_type TEXT NOT NULL,
                phase TEXT,
                iteration INTEGER,
                data_json TEXT,
                created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
                FOREIGN KEY(run_id) REFERENCES runs(id)
            )
            """,
            "CREATE INDEX idx_run_events_run ON run_events(run_id, id)",
            """
            CREATE TABLE agent_results (
                id TEXT NOT NULL,
                run_id TEXT NOT NULL,
                role TEXT NOT NULL,
                template TEXT NOT NULL,
                phase TEXT NOT NULL,
                iteration INTEGER NOT NULL,
                result_type TEXT NOT NULL,
                result_json TEXT NOT NULL,
                duration_ms INTEGER NOT NULL DEFAULT 0,
                log_path TEXT,
                session_id TEXT,
                model TEXT,
                tokens_in INTEGER,
                tokens_out INTEGER,
                cost_usd REAL,
                exit_code INTEGER,
                created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
                PRIMARY KEY(id),
                UNIQUE(run_id, role, phase, iteration, template),
                FOREIGN KEY(run_id) REFERENCES runs(id)
            )
            """,
            """
            CREATE TABLE quality_results (
                id TEXT NOT NULL PRIMARY KEY,
                run_id TEXT NOT NULL,
                phase TEXT NOT NULL,
                attempt INTEGER NOT NULL,
                passed INTEGER NOT NULL,
                results_json TEXT NOT NULL,
                duration_ms INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
                UNIQUE(run_id, phase, attempt),
                FOREIGN KEY(run_id) REFERENCES runs(id)
            )
            """,
        ),
    ),
    Migration(
        version=2,
        description="phase progress ledger",
        statements=(
            """
            CREATE TABLE phase_progress (
                plan_path TEXT NOT NULL,
                phase TEXT NOT NULL,
                implementation_done INTEGER NOT NULL DEFAULT 0,
                latest_review_readiness TEXT,
                review_approved INTEGER NOT NULL DEFAULT 0,
                blocked_reason TEXT,
                updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
                PRIMARY KEY(plan_path, phase)
            )
            """,
        ),
    ),
)


def current_version(conn: sqlite3.Connection) -> int:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_version (
            version INTEGER PRIMARY KEY,
            description TEXT NOT NULL,
            applied_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """
    )
    conn.commit()
    row = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
    return int(row[0]) if row and row[0] is not None else 0


def run_migrations(
    conn: sqlite3.Connection, migrations: tuple[Migration, ...] | list[Migration] = MIGRATIONS
) -> int:
    """Apply every migration newer than the recorded version, each in its own transaction.

    Returns the resulting schema version. A failing migration is rolled back and
    raised as :class:`MigrationError`; later migrations are not attempted.
    """

    version = current_version(conn)
    for migration in sorted(migrations, key=lambda item: item.version):
        if migration.version <= version:
            continue
        try:
            conn.execute("BEGIN")
            for statement in migration.statements:
                conn.execute(statement)
            conn.execute(
                "INSERT INTO schema_version (version, description) VALUES (?, ?)",
                (migration.version, migration.description),
            )
            conn.commit()
        except sqlite3.Error as exc:
            conn.rollback()
            raise MigrationError(
                f"Migration {migration.version} ({migration.description}) failed: {exc}. "
                "Database may be in an inconsistent state. Delete the DB file to reset."
            ) from exc
        version = migration.version
    return version
