"""SQLite persistence for runs, run events, agent and quality results."""

from __future__ import annotations

import json
import sqlite3
import uuid
from pathlib import Path
from typing import Any

from agent_relay.control_plane.db.migrations import MIGRATIONS, Migration, run_migrations

RUN_STATUSES = {"active", "completed", "aborted", "failed"}
TERMINAL_RUN_STATUSES = {"completed", "aborted", "failed"}
AGENT_ROLES = {"author", "reviewer"}
RESULT_TYPES = {"status", "verdict"}


class RunStore:
    """Durable ledger of runs, phases, iterations, and structured agent results."""

    def __init__(
        self,
        db_path: Path | str = ":memory:",
        migrations: tuple[Migration, ...] | list[Migration] = MIGRATIONS,
    ) -> None:
        self.db_path = str(db_path)
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self._configure_connection()
        self.schema_version = run_migrations(self.conn, migrations)

    def _configure_connection(self) -> None:
        """Single writer, write-ahead log, bounded wait on a busy database."""

        self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.execute("PRAGMA busy_timeout=5000")
        self.conn.execute("PRAGMA synchronous=NORMAL")
        self.conn.execute("PRAGMA foreign_keys=ON")
        self.conn.execute("PRAGMA temp_store=MEMORY")

    def close(self) -> None:
        self.conn.close()

    # plans

    def upsert_plan(
        self,
        plan_path: str,
        *,
        worktree_path: str | None = None,
        branch: str | None = None,
    ) -> None:
        """Insert or update a plan's worktree association.

        ``None`` keeps the stored value, an empty string clears it.
        """

        self.conn.execute(
            """
            INSERT INTO plans (plan_path, worktree_path, branch)
            VALUES (?, NULLIF(?, ''), NULLIF(?, ''))
            ON CONFLICT(plan_path) DO UPDATE SET
              worktree_path = CASE WHEN ? IS NULL THEN plans.worktree_path ELSE NULLIF(?, '') END,
              branch = CASE WHEN ? IS NULL THEN plans.branch ELSE NULLIF(?, '') END,
              updated_at = CURRENT_TIMESTAMP
            """,
            (plan_path, worktree_path, branch, worktree_path, worktree_path, branch, branch),
        )
        self.conn.commit()

    def get_plan(self, plan_path: str) -> dict[str, Any] | None:
        row = self.conn.execute(
            "SELECT plan_path, worktree_path, branch, created_at, updated_at FROM plans WHERE plan_path = ?",
            (plan_path,),
        ).fetchone()
        if row is None:
            return None
        return dict(row)

    # runs

    def create_run(
        self,
        *,
        plan_path: str,
        command: str,
        review_path: str | None = None,
        run_id: str | None = None,
    ) -> str:
        run_id = run_id or uuid.uuid4().hex
        self.conn.execute(
            "INSERT INTO runs (id, plan_path, review_path, command) VALUES (?, ?, ?, ?)",
            (run_id, plan_path, review_path, command),
        )
        self.conn.commit()
        return run_id

    def update_run_status(
        self,
        run_id: str,
        status: str,
        *,
        state: str | None = None,
        phase: str | None = None,
    ) -> None:
        if status not in RUN_STATUSES:
            raise ValueError("invalid_run_status")
        completed = 1 if status in TERMINAL_RUN_STATUSES else 0
        cur = self.conn.execute(
            """
            UPDATE runs
            SET status = ?,
                current_state = COALESCE(?, current_state),
                current_phase = COALESCE(?, current_phase),
                completed_at = CASE WHEN ? THEN CURRENT_TIMESTAMP ELSE completed_at END
            WHERE id = ?
            """,
            (status, state, phase, completed, run_id),
        )
        self.conn.commit()
        if int(cur.rowcount or 0) == 0:
            raise ValueError("run_not_found")

    def get_run(self, run_id: str) -> dict[str, Any] | None:
        row = self.conn.execute("SELECT * FROM runs WHERE id = ?", (run_id,)).fetchone()
        return dict(row) if row is not None else None

    def get_active_run(self, plan_path: str, command: str | None = None) -> dict[str, Any] | None:
        query = "SELECT * FROM runs WHERE plan_path = ? AND status = 'active'"
        args: list[Any] = [plan_path]
        if command is not None:
            query += " AND command = ?"
            args.append(command)
        row = self.conn.execute(query + " ORDER BY started_at DESC, rowid DESC LIMIT 1", args).fetchone()
        return dict(row) if row is not None else None

    def get_latest_run(self, plan_path: str) -> dict[str, Any] | None:
        row = self.conn.execute(
            "SELECT * FROM runs WHERE plan_path = ? ORDER BY started_at DESC, rowid DESC LIMIT 1",
            (plan_path,),
        ).fetchone()
        return dict(row) if row is not None else None

    def get_run_history(self, plan_path: str | None = None, limit: int = 20) -> list[dict[str, Any]]:
        where = "WHERE r.plan_path = ?" if plan_path is not None else ""
        args: list[Any] = [plan_path] if plan_path is not None else []
        args.append(int(limit))
        rows = self.conn.execute(
            f"""
            SELECT r.*,
                   (SELECT COUNT(*) FROM run_events e WHERE e.run_id = r.id) AS event_count,
                   (SELECT COUNT(*) FROM agent_results a WHERE a.run_id = r.id) AS agent_count
            FROM runs r
            {where}
            ORDER BY r.started_at DESC, r.rowid DESC
            LIMIT ?
            """,
            args,
        ).fetchall()
        return [dict(row) for row in rows]

    def get_run_metrics(self, run_id: str) -> dict[str, Any]:
        agent = self.conn.execute(
            """
            SELECT COUNT(*) AS invocations,
                   COALESCE(SUM(cost_usd), 0) AS cost_usd,
                   COALESCE(SUM(tokens_in), 0) AS tokens_in,
                   COALESCE(SUM(tokens_out), 0) AS tokens_out,
                   COALESCE(SUM(duration_ms), 0) AS agent_duration_ms
            FROM agent_results
            WHERE run_id = ?
            """,
            (run_id,),
        ).fetchone()
        quality = self.conn.execute(
            """
            SELECT COUNT(*) AS attempts, COALESCE(SUM(passed), 0) AS passes
            FROM quality_results
            WHERE run_id = ?
            """,
            (run_id,),
        ).fetchone()
        return {
            "run_id": run_id,
            "agent_invocations": int(agent["invocations"]),
            "cost_usd": float(agent["cost_usd"]),
            "tokens_in": int(agent["tokens_in"]),
            "tokens_out": int(agent["tokens_out"]),
            "agent_duration_ms": int(agent["agent_duration_ms"]),
            "quality_attempts": int(quality["attempts"]),
            "quality_passes": int(quality["passes"]),
        }

    # run events

    def append_run_event(
        self,
        run_id: str,
        event_type: str,
        *,
        phase: str | None = None,
        iteration: int | None = None,
        data: dict[str, Any] | None = None,
    ) -> int:
        cur = self.conn.execute(
            """
            INSERT INTO run_events (run_id, event_type, phase, iteration, data_json)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                run_id,
                event_type,
                phase,
                iteration,
                json.dumps(data, sort_keys=True) if data is not None else None,
            ),
        )
        self.conn.commit()
        return int(cur.lastrowid)

    def get_run_events(self, run_id: str) -> list[dict[str, Any]]:
        rows = self.conn.execute(
            "SELECT * FROM run_events WHERE run_id = ? ORDER BY id ASC", (run_id,)
        ).fetchall()
        return [self._event_row(row) for row in rows]

    def get_last_run_event(self, run_id: str) -> dict[str, Any] | None:
        row = self.conn.execute(
            "SELECT * FROM run_events WHERE run_id = ? ORDER BY id DESC LIMIT 1", (run_id,)
        ).fetchone()
        return self._event_row(row) if row is not None else None

    def _event_row(self, row: sqlite3.Row) -> dict[str, Any]:
        return {
            "id": int(row["id"]),
            "run_id": str(row["run_id"]),
            "event_type": str(row["event_type"]),
            "phase": row["phase"],
            "iteration": row["iteration"],
            "data": json.loads(row["data_json"]) if row["data_json"] else None,
            "created_at": str(row["created_at"]),
        }

    # agent results

    def upsert_agent_result(
        self,
        *,
        run_id: str,
        role: str,
        template: str,
        phase: str,
        iteration: int,
        result_type: str,
        result: dict[str, Any],
        duration_ms: int = 0,
        log_path: str | None = None,
        session_id: str | None = None,
        model: str | None = None,
        tokens_in: int | None = None,
        tokens_out: int | None = None,
        cost_usd: float | None = None,
        exit_code: int | None = None,
        result_id: str | None = None,
    ) -> str:
        """Record one invocation; a row with the same step key is replaced, id included."""

        if role not in AGENT_ROLES:
            raise ValueError("invalid_role")
        if result_type not in RESULT_TYPES:
            raise ValueError("invalid_result_type")
        result_id = result_id or uuid.uuid4().hex
        self.conn.execute(
            """
            INSERT INTO agent_results (
              id, run_id, role, template, phase, iteration, result_type, result_json,
              duration_ms, log_path, session_id, model, tokens_in, tokens_out, cost_usd, exit_code
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(run_id, role, phase, iteration, template) DO UPDATE SET
              id=excluded.id,
              result_type=excluded.result_type,
              result_json=excluded.result_json,
              duration_ms=excluded.duration_ms,
              log_path=excluded.log_path,
              session_id=excluded.session_id,
              model=excluded.model,
              tokens_in=excluded.tokens_in,
              tokens_out=excluded.tokens_out,
              cost_usd=excluded.cost_usd,
              exit_code=excluded.exit_code,
              created_at=CURRENT_TIMESTAMP
            """,
            (
                result_id,
                run_id,
                role,
                template,
                phase,
                int(iteration),
                result_type,
                json.dumps(result, sort_keys=True),
                int(duration_ms),
                log_path,
                session_id,
                model,
                tokens_in,
                tokens_out,
                cost_usd,
                exit_code,
            ),
        )
        self.conn.commit()
        return result_id

    def get_agent_results(self, run_id: str, phase: str | None = None) -> list[dict[str, Any]]:
        query = "SELECT * FROM agent_results WHERE run_id = ?"
        args: list[Any] = [run_id]
        if phase is not None:
            query += " AND phase = ?"
            args.append(phase)
        rows = self.conn.execute(query + " ORDER BY iteration ASC, rowid ASC", args).fetchall()
        return [self._agent_row(row) for row in rows]

    def get_step_result(
        self, run_id: str, role: str, phase: str, iteration: int, template: str
    ) -> dict[str, Any] | None:
        row = self.conn.execute(
            """
            SELECT * FROM agent_results
            WHERE run_id = ? AND role = ? AND phase = ? AND iteration = ? AND template = ?
            """,
            (run_id, role, phase, int(iteration), template),
        ).fetchone()
        return self._agent_row(row) if row is not None else None

    def has_completed_step(
        self, run_id: str, role: str, phase: str, iteration: int, template: str
    ) -> bool:
        return self.get_step_result(run_id, role, phase, iteration, template) is not None

    def get_latest_result(
        self, run_id: str, phase: str, result_type: str
    ) -> dict[str, Any] | None:
        row = self.conn.execute(
            """
            SELECT * FROM agent_results
            WHERE run_id = ? AND phase = ? AND result_type = ?
            ORDER BY iteration DESC, rowid DESC
            LIMIT 1
            """,
            (run_id, phase, result_type),
        ).fetchone()
        return self._agent_row(row) if row is not None else None

    def get_latest_status(self, run_id: str, phase: str) -> dict[str, Any] | None:
        return self.get_latest_result(run_id, phase, "status")

    def get_latest_verdict(self, run_id: str, phase: str) -> dict[str, Any] | None:
        return self.get_latest_result(run_id, phase, "verdict")

    def get_max_iteration_for_phase(self, run_id: str, phase: str) -> int:
        """Highest recorded iteration for the phase, or -1 when nothing ran yet."""

        row = self.conn.execute(
            "SELECT MAX(iteration) FROM agent_results WHERE run_id = ? AND phase = ?",
            (run_id, phase),
        ).fetchone()
        return int(row[0]) if row and row[0] is not None else -1

    def _agent_row(self, row: sqlite3.Row) -> dict[str, Any]:
        payload = dict(row)
        payload["result"] = json.loads(payload.pop("result_json"))
        return payload

    # quality results

    def upsert_quality_result(
        self,
        *,
        run_id: str,
        phase: str,
        attempt: int,
        passed: bool,
        results: list[dict[str, Any]],
        duration_ms: int = 0,
        result_id: str | None = None,
    ) -> str:
        result_id = result_id or uuid.uuid4().hex
        self.conn.execute(
            """
            INSERT INTO quality_results (id, run_id, phase, attempt, passed, results_json, duration_ms)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(run_id, phase, attempt) DO UPDATE SET
              id=excluded.id,
              passed=excluded.passed,
              results_json=excluded.results_json,
              duration_ms=excluded.duration_ms,
              created_at=CURRENT_TIMESTAMP
            """,
            (
                result_id,
                run_id,
                phase,
                int(attempt),
                1 if passed else 0,
                json.dumps(results, sort_keys=True),
                int(duration_ms),
            ),
        )
        self.conn.commit()
        return result_id

    def get_quality_results(self, run_id: str, phase: str | None = None) -> list[dict[str, Any]]:
        query = "SELECT * FROM quality_results WHERE run_id = ?"
        args: list[Any] = [run_id]
        if phase is not None:
            query += " AND phase = ?"
            args.append(phase)
        rows = self.conn.execute(query + " ORDER BY phase ASC, attempt ASC", args).fetchall()
        output = []
        for row in rows:
            payload = dict(row)
            payload["passed"] = bool(payload["passed"])
            payload["results"] = json.loads(payload.pop("results_json"))
            output.append(payload)
        return output

    def get_quality_attempt_count(self, run_id: str, phase: str) -> int:
        row = self.conn.execute(
            "SELECT COUNT(*) FROM quality_results WHERE run_id = ? AND phase = ?",
            (run_id, phase),
        ).fetchone()
        return int(row[0])

    # phase progress

    def mark_phase_implementation_done(self, plan_path: str, phase: str, done: bool = True) -> None:
        self.conn.execute(
            """
            INSERT INTO phase_progress (plan_path, phase, implementation_done)
            VALUES (?, ?, ?)
            ON CONFLICT(plan_path, phase) DO UPDATE SET
              implementation_done=excluded.implementation_done,
              updated_at=CURRENT_TIMESTAMP
            """,
            (plan_path, phase, 1 if done else 0),
        )
        self.conn.commit()

    def set_phase_review_outcome(self, plan_path: str, phase: str, readiness: str) -> None:
        approved = 1 if readiness == "ready" else 0
        self.conn.execute(
            """
            INSERT INTO phase_progress (plan_path, phase, latest_review_readiness, review_approved)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(plan_path, phase) DO UPDATE SET
              latest_review_readiness=excluded.latest_review_readiness,
              review_approved=excluded.review_approved,
              blocked_reason=CASE WHEN excluded.review_approved = 1 THEN NULL ELSE phase_progress.blocked_reason END,
              updated_at=CURRENT_TIMESTAMP
            """,
            (plan_path, phase, readiness, approved),
        )
        self.conn.commit()

    def set_phase_blocked(self, plan_path: str, phase: str, reason: str | None) -> None:
        self.conn.execute(
            """
            INSERT INTO phase_progress (plan_path, phase, blocked_reason)
            VALUES (?, ?, ?)
            ON CONFLICT(plan_path, phase) DO UPDATE SET
              blocked_reason=excluded.blocked_reason,
              updated_at=CURRENT_TIMESTAMP
            """,
            (plan_path, phase, reason),
        )
        self.conn.commit()

    def get_phase_progress(self, plan_path: str, phase: str) -> dict[str, Any] | None:
        row = self.conn.execute(
            "SELECT * FROM phase_progress WHERE plan_path = ? AND phase = ?",
            (plan_path, phase),
        ).fetchone()
        return self._progress_row(row) if row is not None else None

    def list_phase_progress(self, plan_path: str) -> list[dict[str, Any]]:
        rows = self.conn.execute(
            "SELECT * FROM phase_progress WHERE plan_path = ? ORDER BY phase ASC", (plan_path,)
        ).fetchall()
        return [self._progress_row(row) for row in rows]

    def _progress_row(self, row: sqlite3.Row) -> dict[str, Any]:
        payload = dict(row)
        payload["implementation_done"] = bool(payload["implementation_done"])
        payload["review_approved"] = bool(payload["review_approved"])
        return payload
