"""Plan review loop: reviewer verdicts on the plan document, author revisions until it is ready.

Runs are recorded with ``command="plan-review"`` and the steps under the
pseudo-phase ``plan``, so they resume the same way phase runs do and never
collide with a phase's iterations.
"""

from __future__ import annotations

import datetime as dt
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from agent_relay.control_plane.db.db import RunStore
from agent_relay.control_plane.orchestration.gates import (
    EscalationEvent,
    EscalationItem,
    GateIO,
    escalation_gate,
)
from agent_relay.control_plane.orchestration.phase_loop import (
    RecordedStepLoop,
    ResumeDecision,
    Role,
    StepInvoker,
)
from agent_relay.control_plane.orchestration.prompts import render_prompt
from agent_relay.shared.cancel import CancelToken

logger = logging.getLogger(__name__)

PLAN_REVIEW_COMMAND = "plan-review"
PLAN_REVIEW_PHASE = "plan"


@dataclass(frozen=True)
class PlanReviewOptions:
    plan_path: str
    review_path: str
    log_dir: Path
    command: str = PLAN_REVIEW_COMMAND
    author_model: str | None = None
    reviewer_model: str | None = None
    max_review_iterations: int = 5
    require_commit: bool = False
    auto: bool = False
    quiet: bool = False
    user_notes: str = "(No additional notes)"
    resume: ResumeDecision | None = None


@dataclass
class PlanReviewResult:
    run_id: str | None
    review_path: str
    approved: bool = False
    aborted: bool = False
    cancelled: bool = False
    iterations: int = 0
    review_readiness: str | None = None
    escalations: list[EscalationEvent] = field(default_factory=list)


def _is_strictly_inside(path: str, directory: Path) -> bool:
    try:
        relative = Path(path).resolve().relative_to(directory)
    except (OSError, RuntimeError, ValueError):
        return False
    return relative != Path(".")


def resolve_review_path(
    store: RunStore, plan_path: str, reviews_dir: Path | str, today: dt.date | None = None
) -> str:
    """Review file for a plan.

    The path recorded on the plan's latest run is reused so later reviews append
    to the same document, unless it lies outside ``reviews_dir``. Otherwise the
    path is ``<reviews_dir>/<date>-<plan stem>-review.md``.
    """

    reviews = Path(reviews_dir).resolve()
    latest = store.get_latest_run(plan_path)
    recorded = latest.get("review_path") if latest else None
    if recorded:
        if _is_strictly_inside(recorded, reviews):
            return str(recorded)
        logger.warning("stored review path %s is outside %s; using a fresh path", recorded, reviews)
    day = (today or dt.date.today()).isoformat()
    return str(reviews / f"{day}-{Path(plan_path).stem}-review.md")


class PlanReviewLoop(RecordedStepLoop):
    """REVIEW, AUTO_FIX and ESCALATE over the plan until a verdict of ``ready`` or an abort."""

    phase = PLAN_REVIEW_PHASE

    def __init__(
        self,
        store: RunStore,
        invoke: StepInvoker,
        options: PlanReviewOptions,
        *,
        io: GateIO,
        cancel: CancelToken | None = None,
    ) -> None:
        super().__init__(store, invoke, options, io=io, cancel=cancel)
        self.review_readiness: str | None = None
        self._guidance: str | None = None
        self._fix_items: list[dict[str, Any]] = []
        self._handlers: dict[str, Callable[[], Awaitable[str]]] = {
            "REVIEW": self._review,
            "AUTO_FIX": self._auto_fix,
            "ESCALATE": self._escalate,
        }

    async def run(self) -> PlanReviewResult:
        run_id = await self._resolve_run()
        if run_id is None:
            return PlanReviewResult(
                run_id=self.run_id,
                review_path=self.options.review_path,
                aborted=True,
                cancelled=self.cancel.cancelled,
            )
        self.run_id = run_id
        self.io.echo(f"  Review path: {self.options.review_path}")
        self.store.append_run_event(
            run_id,
            "plan_review_start",
            phase=self.phase,
            iteration=self.iteration,
            data={"plan_path": self.options.plan_path, "review_path": self.options.review_path},
        )

        state = "REVIEW"
        while state not in ("APPROVED", "ABORTED"):
            if self.cancel.cancelled:
                state = "ABORTED"
                break
            self.store.update_run_status(run_id, "active", state=state, phase=self.phase)
            state = await self._handlers[state]()

        return self._finish(state == "APPROVED")

    def _step_log_path(self, run_id: str, role: Role, iteration: int) -> Path:
        return self.options.log_dir / run_id / f"{role}-plan-iter{iteration}.ndjson"

    def _finish(self, approved: bool) -> PlanReviewResult:
        run_id = self.run_id
        assert run_id is not None
        if approved:
            status = "completed"
        else:
            status = "failed" if self.escalations and not self.cancel.cancelled else "aborted"
        self.store.append_run_event(
            run_id,
            "plan_review_complete" if approved else "plan_review_abort",
            phase=self.phase,
            iteration=self.iteration,
            data={
                "approved": approved,
                "iterations": self.iteration,
                "escalation_count": len(self.escalations),
                "cancel_reason": self.cancel.reason if self.cancel.cancelled else None,
            },
        )
        self.store.update_run_status(run_id, status, state="APPROVED" if approved else "ABORTED", phase=self.phase)
        if approved:
            self.io.echo("  Plan approved.")
        return PlanReviewResult(
            run_id=run_id,
            review_path=self.options.review_path,
            approved=approved,
            aborted=not approved,
            cancelled=self.cancel.cancelled,
            iterations=self.iteration,
            review_readiness=self.review_readiness,
            escalations=list(self.escalations),
        )

    async def _review(self) -> str:
        assert self.run_id is not None
        if not self._is_recorded("reviewer", "reviewer-plan"):
            reviews = [
                row for row in self.store.get_agent_results(self.run_id, self.phase) if row["role"] == "reviewer"
            ]
            if len(reviews) >= self.options.max_review_iterations:
                return self._raise_escalation(
                    f"Maximum review iterations ({self.options.max_review_iterations}) reached"
                )
            self.io.echo(f"  Reviewer iteration {len(reviews) + 1}...")
        notes = self._guidance or self.options.user_notes
        self._guidance = None
        prompt = render_prompt(
            "reviewer-plan",
            plan_path=self.options.plan_path,
            review_path=self.options.review_path,
            user_notes=notes,
        )
        step = await self._agent_step("reviewer", "reviewer-plan", "verdict", prompt)
        if step.failure is not None or step.payload is None:
            return self._step_failed(step, "Reviewer failed")

        readiness = step.payload.get("readiness")
        items = step.payload.get("items") or []
        self.review_readiness = readiness
        human = [item for item in items if item.get("action") == "human_required"]
        auto_fix = [item for item in items if item.get("action") == "auto_fix"]
        self.store.append_run_event(
            self.run_id,
            "verdict",
            phase=self.phase,
            iteration=step.iteration,
            data={
                "readiness": readiness,
                "item_count": len(items),
                "auto_fix_count": len(auto_fix),
                "human_required_count": len(human),
            },
        )
        self.io.echo(f"  Verdict: {readiness}")
        if readiness == "ready":
            return "APPROVED"
        if human:
            return self._raise_escalation(
                f"{len(human)} item(s) require human review",
                [EscalationItem(str(item["id"]), str(item.get("title", "")), str(item.get("reason", ""))) for item in human],
            )
        if auto_fix:
            self._fix_items = auto_fix
            self.io.echo(f"  Auto-fixing {len(auto_fix)} item(s)...")
            return "AUTO_FIX"
        return self._raise_escalation(f"Reviewer returned {readiness} with no auto-fixable items")

    async def _auto_fix(self) -> str:
        items = "\n".join(
            f"- [{item['id']}] {item.get('title', '')}: {item.get('reason', '')}" for item in self._fix_items
        )
        prompt = render_prompt(
            "author-process-plan-review",
            plan_path=self.options.plan_path,
            review_path=self.options.review_path,
            items=items or "(see the review document)",
        )
        step = await self._agent_step("author", "author-process-plan-review", "status", prompt)
        if step.failure is not None or step.payload is None:
            return self._step_failed(step, "Author revision failed")
        result = step.payload.get("result")
        if result == "needs_human":
            return self._raise_escalation(step.payload.get("reason") or "Author needs human input during revision")
        if result == "failed":
            return self._raise_escalation(step.payload.get("reason") or "Author reported failure during revision")
        self.io.echo("  Plan revised. Re-reviewing...")
        return "REVIEW"

    async def _escalate(self) -> str:
        assert self.run_id is not None
        event = self.escalations[-1] if self.escalations else EscalationEvent("Unknown escalation", self.iteration)
        if self.options.auto:
            self.io.echo(f"  Auto mode: escalation, aborting. {event.reason}")
            return "ABORTED"
        response = await escalation_gate(event, self.io)
        self.store.append_run_event(
            self.run_id,
            "human_decision",
            phase=self.phase,
            iteration=self.iteration,
            data={"type": "escalation", "action": response.action, "guidance": response.guidance},
        )
        if response.action == "continue":
            self._guidance = response.guidance
            return "REVIEW"
        if response.action == "approve":
            return "APPROVED"
        return "ABORTED"
