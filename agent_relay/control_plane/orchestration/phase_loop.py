"""Phase loop: author, quality gates, reviewer and auto-fix cycles for one plan phase.

The loop is a small state machine. Each state persists what it did before the
next one starts, so an interrupted run resumes by replaying recorded agent
steps in order: a step whose ``(role, phase, iteration, template)`` is already
stored is read back instead of invoked again, and the first step with no
record is invoked with the next free iteration number.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Literal, Protocol

from agent_relay.control_plane.db.db import RunStore
from agent_relay.control_plane.models.protocol import ProtocolViolation
from agent_relay.control_plane.orchestration.gates import (
    EscalationEvent,
    EscalationItem,
    GateIO,
    PhaseSummary,
    escalation_gate,
    phase_gate,
    resume_gate,
)
from agent_relay.control_plane.orchestration.prompts import render_prompt
from agent_relay.shared.cancel import CancelToken
from agent_relay.shared.paths import invocation_log_path

logger = logging.getLogger(__name__)

Role = Literal["author", "reviewer"]
ResumeDecision = Literal["resume", "new", "abort"]

OUTPUT_SNIPPET_CHARS = 500
ERROR_SNIPPET_CHARS = 200


class AgentOutcome(Protocol):
    failure: str | None
    error: str | None
    tokens_in: int | None
    tokens_out: int | None
    cost_usd: float | None
    duration_ms: int
    session_id: str | None
    exit_code: int | None
    output: str

    def signal_payload(self) -> dict[str, Any] | None: ...


class QualityOutcome(Protocol):
    passed: bool

    def results_payload(self) -> list[dict[str, Any]]: ...


@dataclass(frozen=True)
class AgentStep:
    role: Role
    template: str
    phase: str
    iteration: int
    prompt: str
    result_type: Literal["status", "verdict"]
    log_path: Path
    model: str | None = None
    require_commit: bool = False

    @property
    def context(self) -> str:
        return f"{self.role} phase {self.phase} iteration {self.iteration}"


StepInvoker = Callable[[AgentStep], Awaitable[AgentOutcome]]
QualityRunner = Callable[[str, str, int], Awaitable[QualityOutcome]]


@dataclass(frozen=True)
class PhaseLoopOptions:
    plan_path: str
    phase: str
    log_dir: Path
    phase_title: str = ""
    review_path: str | None = None
    command: str = "run-phase"
    author_model: str | None = None
    reviewer_model: str | None = None
    run_quality: bool = True
    max_review_iterations: int = 5
    max_quality_retries: int = 3
    require_commit: bool = True
    auto: bool = False
    quiet: bool = False
    user_notes: str = "(No additional notes)"
    resume: ResumeDecision | None = None


@dataclass
class PhaseLoopResult:
    run_id: str | None
    complete: bool = False
    aborted: bool = False
    cancelled: bool = False
    escalations: list[EscalationEvent] = field(default_factory=list)
    last_commit: str | None = None
    review_readiness: str | None = None


@dataclass(frozen=True)
class StepResult:
    iteration: int
    payload: dict[str, Any] | None
    failure: str | None = None
    error: str | None = None
    replayed: bool = False
    log_path: str | None = None
    snippet: str = ""


def output_snippet(outcome: AgentOutcome) -> str:
    parts = []
    if outcome.error:
        parts.append(f"error: {outcome.error[:ERROR_SNIPPET_CHARS]}")
    text = (outcome.output or "")[:OUTPUT_SNIPPET_CHARS]
    if text:
        parts.append(text)
    return "\n".join(parts)[:OUTPUT_SNIPPET_CHARS]


def build_escalation_reason(base: str, log_path: str | None, snippet: str, quiet: bool) -> str:
    """Escalation text with the invocation log path; the output snippet only when nothing was shown live."""

    lines = [base]
    if log_path:
        lines.append(f"Log: {log_path}")
    if quiet and snippet:
        lines.append(snippet)
    return "\n".join(lines)


def _escalation_data(event: EscalationEvent) -> dict[str, Any]:
    return {
        "reason": event.reason,
        "iteration": event.iteration,
        "items": [asdict(item) for item in event.items],
    }


class RecordedStepLoop:
    """Run resolution, step replay and escalation bookkeeping shared by the review loops.

    Subclasses provide ``phase`` and an ``options`` object carrying the plan path,
    command name, log directory, models and the auto, quiet and resume flags.
    """

    phase: str

    def __init__(
        self,
        store: RunStore,
        invoke: StepInvoker,
        options: Any,
        *,
        io: GateIO,
        cancel: CancelToken | None = None,
    ) -> None:
        self.store = store
        self.invoke = invoke
        self.options = options
        self.io = io
        self.cancel = cancel or io.cancel or CancelToken()
        self.run_id: str | None = None
        self.iteration = 0
        self.escalations: list[EscalationEvent] = []

    async def _resolve_run(self) -> str | None:
        plan_path = self.options.plan_path
        self.store.upsert_plan(plan_path)
        active = self.store.get_active_run(plan_path, self.options.command)
        if active is not None:
            decision = self.options.resume or await resume_gate(
                active["id"], active["current_phase"], active["current_state"], self.io
            )
            if decision == "abort":
                self.run_id = active["id"]
                return None
            if decision == "resume":
                self.io.echo(f"  Resuming run {active['id'][:8]}")
                self.store.append_run_event(active["id"], "run_resume", phase=self.phase)
                return str(active["id"])
            self.store.update_run_status(active["id"], "aborted")
        run_id = self.store.create_run(
            plan_path=plan_path, command=self.options.command, review_path=self.options.review_path
        )
        self.store.append_run_event(
            run_id,
            "run_start",
            data={"plan_path": plan_path, "review_path": self.options.review_path, "auto": self.options.auto},
        )
        return run_id

    def _step_log_path(self, run_id: str, role: Role, iteration: int) -> Path:
        return invocation_log_path(self.options.log_dir, run_id, role, self.phase, iteration)

    def _is_recorded(self, role: Role, template: str) -> bool:
        assert self.run_id is not None
        return self.store.has_completed_step(self.run_id, role, self.phase, self.iteration, template)

    async def _agent_step(
        self, role: Role, template: str, result_type: Literal["status", "verdict"], prompt: str
    ) -> StepResult:
        run_id = self.run_id
        assert run_id is not None
        iteration = self.iteration
        recorded = self.store.get_step_result(run_id, role, self.phase, iteration, template)
        if recorded is not None:
            self.iteration = iteration + 1
            self.io.echo(f"  Skipping {role} step {iteration} (already completed)")
            return StepResult(iteration, recorded["result"], replayed=True, log_path=recorded["log_path"])

        iteration = max(iteration, self.store.get_max_iteration_for_phase(run_id, self.phase) + 1)
        self.iteration = iteration + 1
        step = AgentStep(
            role=role,
            template=template,
            phase=self.phase,
            iteration=iteration,
            prompt=prompt,
            result_type=result_type,
            log_path=self._step_log_path(run_id, role, iteration),
            model=self.options.author_model if role == "author" else self.options.reviewer_model,
            require_commit=role == "author" and self.options.require_commit,
        )
        log_path = str(step.log_path)
        try:
            outcome = await self.invoke(step)
        except ProtocolViolation as exc:
            self.store.append_run_event(
                run_id,
                "agent_invoke",
                phase=self.phase,
                iteration=iteration,
                data={"role": role, "template": template, "failure": "protocol_violation", "error": str(exc)},
            )
            return StepResult(iteration, None, failure="protocol_violation", error=str(exc), log_path=log_path)

        payload = outcome.signal_payload() if outcome.failure is None else None
        if payload is not None:
            self.store.upsert_agent_result(
                run_id=run_id,
                role=role,
                template=template,
                phase=self.phase,
                iteration=iteration,
                result_type=result_type,
                result=payload,
                duration_ms=outcome.duration_ms,
                log_path=log_path,
                session_id=outcome.session_id,
                model=step.model,
                tokens_in=outcome.tokens_in,
                tokens_out=outcome.tokens_out,
                cost_usd=outcome.cost_usd,
                exit_code=outcome.exit_code,
            )
        self.store.append_run_event(
            run_id,
            "agent_invoke",
            phase=self.phase,
            iteration=iteration,
            data={
                "role": role,
                "template": template,
                "failure": outcome.failure,
                "exit_code": outcome.exit_code,
                "duration_ms": outcome.duration_ms,
                "session_id": outcome.session_id,
            },
        )
        return StepResult(
            iteration,
            payload,
            failure=outcome.failure,
            error=outcome.error,
            log_path=log_path,
            snippet=output_snippet(outcome),
        )

    def _step_failed(self, step: StepResult, base: str) -> str:
        if step.failure == "cancelled" or self.cancel.cancelled:
            return "ABORTED"
        reason = build_escalation_reason(
            f"{base}: {step.error or step.failure}", step.log_path, step.snippet, self.options.quiet
        )
        return self._raise_escalation(reason)

    def _raise_escalation(self, reason: str, items: Sequence[EscalationItem] = ()) -> str:
        assert self.run_id is not None
        event = EscalationEvent(reason=reason, iteration=self.iteration, items=tuple(items))
        self.escalations.append(event)
        self.store.append_run_event(
            self.run_id, "escalation", phase=self.phase, iteration=self.iteration, data=_escalation_data(event)
        )
        return "ESCALATE"


class PhaseLoop(RecordedStepLoop):
    def __init__(
        self,
        store: RunStore,
        invoke: StepInvoker,
        options: PhaseLoopOptions,
        *,
        io: GateIO,
        quality: QualityRunner | None = None,
        cancel: CancelToken | None = None,
    ) -> None:
        super().__init__(store, invoke, options, io=io, cancel=cancel)
        self.quality = quality
        self.quality_retries = 0
        self.last_commit: str | None = None
        self.review_readiness: str | None = None
        self.quality_passed = True
        self._guidance: str | None = None
        self._quality_failures: list[dict[str, Any]] = []
        self._fix_items: list[dict[str, Any]] = []
        self._handlers: dict[str, Callable[[], Awaitable[str]]] = {
            "EXECUTE": self._execute,
            "QUALITY_CHECK": self._quality_check,
            "QUALITY_RETRY": self._quality_retry,
            "REVIEW": self._review,
            "AUTO_FIX": self._auto_fix,
            "ESCALATE": self._escalate,
            "PHASE_GATE": self._phase_gate,
        }

    @property
    def phase(self) -> str:
        return self.options.phase

    async def run(self) -> PhaseLoopResult:
        run_id = await self._resolve_run()
        if run_id is None:
            return PhaseLoopResult(run_id=self.run_id, aborted=True, cancelled=self.cancel.cancelled)
        self.run_id = run_id
        self.store.append_run_event(
            run_id,
            "phase_start",
            phase=self.phase,
            iteration=self.iteration,
            data={"phase": self.phase, "title": self.options.phase_title},
        )

        state = "EXECUTE"
        while state not in ("PHASE_COMPLETE", "ABORTED"):
            if self.cancel.cancelled:
                state = "ABORTED"
                break
            self.store.update_run_status(run_id, "active", state=state, phase=self.phase)
            state = await self._handlers[state]()

        return self._finish(state == "PHASE_COMPLETE")

    def _finish(self, complete: bool) -> PhaseLoopResult:
        run_id = self.run_id
        assert run_id is not None
        if complete:
            self.store.append_run_event(
                run_id, "phase_complete", phase=self.phase, iteration=self.iteration, data={"commit": self.last_commit}
            )
            self.store.update_run_status(run_id, "completed", state="PHASE_COMPLETE", phase=self.phase)
            self.io.echo(f"  Phase {self.phase} complete.")
        else:
            status = "failed" if self.escalations and not self.cancel.cancelled else "aborted"
            reason = self.cancel.reason if self.cancel.cancelled else None
            self.store.append_run_event(
                run_id,
                "run_abort",
                phase=self.phase,
                iteration=self.iteration,
                data={"escalation_count": len(self.escalations), "cancel_reason": reason},
            )
            self.store.update_run_status(run_id, status, state="ABORTED", phase=self.phase)
        return PhaseLoopResult(
            run_id=run_id,
            complete=complete,
            aborted=not complete,
            cancelled=self.cancel.cancelled,
            escalations=list(self.escalations),
            last_commit=self.last_commit,
            review_readiness=self.review_readiness,
        )

    def _after_author(self, step: StepResult, activity: str) -> str:
        if step.failure is not None or step.payload is None:
            return self._step_failed(step, f"Author {activity} failed")
        result = step.payload.get("result")
        if result == "needs_human":
            return self._raise_escalation(step.payload.get("reason") or "Author needs human input")
        if result == "failed":
            return self._raise_escalation(step.payload.get("reason") or "Author reported failure")
        if step.payload.get("commit"):
            self.last_commit = step.payload["commit"]
        self.store.mark_phase_implementation_done(self.options.plan_path, self.phase)
        self.io.echo(f"  Author completed. Commit: {(self.last_commit or 'unknown')[:8]}")
        return "QUALITY_CHECK" if self.options.run_quality and self.quality is not None else "REVIEW"

    # states

    async def _execute(self) -> str:
        notes = self._guidance or self.options.user_notes
        self._guidance = None
        prompt = render_prompt(
            "author-next-phase", phase=self.phase, plan_path=self.options.plan_path, user_notes=notes
        )
        if not self._is_recorded("author", "author-next-phase"):
            self.io.echo(f"  Author implementing phase {self.phase}...")
        step = await self._agent_step("author", "author-next-phase", "status", prompt)
        return self._after_author(step, "implementation")

    async def _quality_check(self) -> str:
        assert self.run_id is not None and self.quality is not None
        attempt = self.store.get_quality_attempt_count(self.run_id, self.phase)
        self.io.echo(f"  Running quality gates (attempt {attempt + 1})...")
        outcome = await self.quality(self.run_id, self.phase, attempt)
        results = outcome.results_payload()
        self.store.upsert_quality_result(
            run_id=self.run_id,
            phase=self.phase,
            attempt=attempt,
            passed=outcome.passed,
            results=results,
            duration_ms=sum(int(item.get("duration_ms") or 0) for item in results),
        )
        failed = [item for item in results if not item.get("passed")]
        self.store.append_run_event(
            self.run_id,
            "quality_gate",
            phase=self.phase,
            iteration=self.iteration,
            data={"attempt": attempt, "passed": outcome.passed, "failed_commands": [item["command"] for item in failed]},
        )
        self.quality_passed = outcome.passed
        if outcome.passed:
            self.quality_retries = 0
            return "REVIEW"
        if self.cancel.cancelled:
            return "ABORTED"
        self._quality_failures = failed
        if self.quality_retries < self.options.max_quality_retries:
            return "QUALITY_RETRY"
        return self._raise_escalation(
            f"Quality gates failed after {self.options.max_quality_retries + 1} attempts"
        )

    async def _quality_retry(self) -> str:
        self.quality_retries += 1
        failures = "\n\n".join(
            f"Command: {item['command']}\nOutput:\n{item.get('output', '')}" for item in self._quality_failures
        ) or "Quality gates failed"
        prompt = render_prompt(
            "author-quality-fix", phase=self.phase, plan_path=self.options.plan_path, failures=failures
        )
        self.io.echo(f"  Author fixing quality failures (retry {self.quality_retries})...")
        step = await self._agent_step("author", "author-quality-fix", "status", prompt)
        return self._after_author(step, "quality fix")

    async def _review(self) -> str:
        assert self.run_id is not None
        if not self._is_recorded("reviewer", "reviewer-commit"):
            reviews = [
                row for row in self.store.get_agent_results(self.run_id, self.phase) if row["role"] == "reviewer"
            ]
            if len(reviews) >= self.options.max_review_iterations:
                return self._raise_escalation(
                    f"Maximum review iterations ({self.options.max_review_iterations}) reached for phase {self.phase}"
                )
            self.io.echo(f"  Reviewer reviewing phase {self.phase}...")
        prompt = render_prompt(
            "reviewer-commit",
            commit=self.last_commit or "HEAD",
            phase=self.phase,
            plan_path=self.options.plan_path,
            review_path=self.options.review_path or "(reply inline)",
        )
        step = await self._agent_step("reviewer", "reviewer-commit", "verdict", prompt)
        if step.failure is not None or step.payload is None:
            return self._step_failed(step, "Reviewer failed")

        readiness = step.payload.get("readiness")
        items = step.payload.get("items") or []
        self.review_readiness = readiness
        self.store.set_phase_review_outcome(self.options.plan_path, self.phase, str(readiness))
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
            return "PHASE_GATE"
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
            "author-process-review",
            phase=self.phase,
            plan_path=self.options.plan_path,
            review_path=self.options.review_path or "(see items below)",
            items=items,
        )
        step = await self._agent_step("author", "author-process-review", "status", prompt)
        next_state = self._after_author(step, "auto-fix")
        if next_state != "ESCALATE":
            self.quality_retries = 0
        return next_state

    async def _escalate(self) -> str:
        assert self.run_id is not None
        event = self.escalations[-1] if self.escalations else EscalationEvent("Unknown escalation", self.iteration)
        if self.options.auto:
            self.io.echo(f"  Auto mode: escalation, aborting. {event.reason}")
            self.store.set_phase_blocked(self.options.plan_path, self.phase, event.reason)
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
            return "EXECUTE"
        if response.action == "approve":
            return "PHASE_GATE"
        self.store.set_phase_blocked(self.options.plan_path, self.phase, event.reason)
        return "ABORTED"

    async def _phase_gate(self) -> str:
        assert self.run_id is not None
        if self.options.auto:
            self.io.echo(f"  Auto mode: phase {self.phase} complete, proceeding.")
            return "PHASE_COMPLETE"
        summary = PhaseSummary(
            phase=self.phase,
            title=self.options.phase_title,
            commit=self.last_commit,
            quality_passed=self.quality_passed,
            review_readiness=self.review_readiness,
        )
        decision = await phase_gate(summary, self.io)
        self.store.append_run_event(
            self.run_id,
            "human_decision",
            phase=self.phase,
            iteration=self.iteration,
            data={"type": "phase_gate", "action": decision},
        )
        if decision == "continue":
            return "PHASE_COMPLETE"
        if decision == "review":
            self.io.echo("  Review the changes, then run the phase again to continue.")
        return "ABORTED"
