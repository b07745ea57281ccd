from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from agent_relay.control_plane.db.db import RunStore
from agent_relay.control_plane.models.protocol import ProtocolViolation
from agent_relay.control_plane.orchestration.gates import GateIO
from agent_relay.control_plane.orchestration.phase_loop import (
    AgentStep,
    PhaseLoop,
    PhaseLoopOptions,
    build_escalation_reason,
)
from agent_relay.control_plane.orchestration.prompts import render_prompt
from agent_relay.shared.cancel import CancelToken

PLAN = "/plans/feature.md"

COMPLETE = {"result": "complete", "commit": "abc1234567"}
READY = {"readiness": "ready", "items": []}
NEEDS_FIX = {
    "readiness": "not_ready",
    "items": [{"id": "R1", "title": "Missing test", "action": "auto_fix", "reason": "no coverage"}],
}


@dataclass
class FakeOutcome:
    payload: dict[str, Any] | None
    failure: str | None = None
    error: str | None = None
    tokens_in: int | None = 10
    tokens_out: int | None = 5
    cost_usd: float | None = 0.01
    duration_ms: int = 100
    session_id: str | None = "ses_1"
    exit_code: int | None = 0
    output: str = ""

    def signal_payload(self) -> dict[str, Any] | None:
        return self.payload


@dataclass
class FakeQuality:
    passed: bool
    results: list[dict[str, Any]] = field(default_factory=list)

    def results_payload(self) -> list[dict[str, Any]]:
        return self.results


class ScriptedAgents:
    """Replies per role in order; the last reply repeats once a script runs out."""

    def __init__(self, author: list[Any], reviewer: list[Any] | None = None) -> None:
        self.scripts = {"author": list(author), "reviewer": list(reviewer or [READY])}
        self.steps: list[AgentStep] = []

    async def __call__(self, step: AgentStep) -> FakeOutcome:
        self.steps.append(step)
        script = self.scripts[step.role]
        reply = script.pop(0) if len(script) > 1 else script[0]
        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, FakeOutcome):
            return reply
        return FakeOutcome(reply)

    @property
    def calls(self) -> list[tuple[str, str, int]]:
        return [(step.role, step.template, step.iteration) for step in self.steps]


def _quality(*outcomes: bool):
    remaining = list(outcomes)
    attempts: list[int] = []

    async def run(run_id: str, phase: str, attempt: int) -> FakeQuality:
        attempts.append(attempt)
        passed = remaining.pop(0) if len(remaining) > 1 else remaining[0]
        return FakeQuality(
            passed,
            [{"command": "pytest -q", "passed": passed, "output": "" if passed else "E   assert 1 == 2", "duration_ms": 7}],
        )

    run.attempts = attempts  # type: ignore[attr-defined]
    return run


def _io(answers: list[str] | None = None, cancel: CancelToken | None = None) -> tuple[GateIO, list[str]]:
    pending = list(answers or [])
    lines: list[str] = []

    async def read_line(prompt: str) -> str | None:
        return pending.pop(0) if pending else None

    return GateIO(interactive=answers is not None, read_line=read_line, echo=lines.append, cancel=cancel), lines


def _options(tmp_path: Path, **overrides: Any) -> PhaseLoopOptions:
    fields: dict[str, Any] = {"plan_path": PLAN, "phase": "1", "log_dir": tmp_path / "logs", "auto": True}
    fields.update(overrides)
    return PhaseLoopOptions(**fields)


def _event_types(store: RunStore, run_id: str) -> list[str]:
    return [event["event_type"] for event in store.get_run_events(run_id)]


def test_happy_path_records_every_step(tmp_path: Path) -> None:
    store = RunStore()
    agents = ScriptedAgents([COMPLETE])
    quality = _quality(True)
    io, _ = _io()

    result = asyncio.run(PhaseLoop(store, agents, _options(tmp_path), io=io, quality=quality).run())

    assert result.complete and not result.aborted
    assert result.last_commit == "abc1234567"
    assert result.review_readiness == "ready"
    assert agents.calls == [("author", "author-next-phase", 0), ("reviewer", "reviewer-commit", 1)]
    assert agents.steps[0].require_commit and not agents.steps[1].require_commit
    assert agents.steps[0].log_path == tmp_path / "logs" / result.run_id / "author-phase1-iter0.ndjson"
    assert "abc1234567" in agents.steps[1].prompt

    run = store.get_run(result.run_id)
    assert (run["status"], run["current_state"]) == ("completed", "PHASE_COMPLETE")
    progress = store.get_phase_progress(PLAN, "1")
    assert progress["implementation_done"] and progress["review_approved"]
    assert _event_types(store, result.run_id) == [
        "run_start",
        "phase_start",
        "agent_invoke",
        "quality_gate",
        "agent_invoke",
        "verdict",
        "phase_complete",
    ]
    metrics = store.get_run_metrics(result.run_id)
    assert metrics["agent_invocations"] == 2
    assert metrics["quality_attempts"] == 1


def test_quality_failure_is_fixed_by_author(tmp_path: Path) -> None:
    store = RunStore()
    agents = ScriptedAgents([COMPLETE, COMPLETE])
    quality = _quality(False, True)
    io, _ = _io()

    result = asyncio.run(PhaseLoop(store, agents, _options(tmp_path), io=io, quality=quality).run())

    assert result.complete
    assert quality.attempts == [0, 1]
    assert agents.calls == [
        ("author", "author-next-phase", 0),
        ("author", "author-quality-fix", 1),
        ("reviewer", "reviewer-commit", 2),
    ]
    assert "E   assert 1 == 2" in agents.steps[1].prompt


def test_quality_retries_exhausted_escalates(tmp_path: Path) -> None:
    store = RunStore()
    agents = ScriptedAgents([COMPLETE])
    io, _ = _io()

    loop = PhaseLoop(store, agents, _options(tmp_path, max_quality_retries=1), io=io, quality=_quality(False))
    result = asyncio.run(loop.run())

    assert result.aborted and not result.cancelled
    assert [event.reason for event in result.escalations] == ["Quality gates failed after 2 attempts"]
    assert store.get_run(result.run_id)["status"] == "failed"
    assert store.get_phase_progress(PLAN, "1")["blocked_reason"] == "Quality gates failed after 2 attempts"


def test_auto_fix_cycle_until_ready(tmp_path: Path) -> None:
    store = RunStore()
    agents = ScriptedAgents([COMPLETE], reviewer=[NEEDS_FIX, READY])
    io, _ = _io()

    result = asyncio.run(PhaseLoop(store, agents, _options(tmp_path, run_quality=False), io=io).run())

    assert result.complete
    assert agents.calls == [
        ("author", "author-next-phase", 0),
        ("reviewer", "reviewer-commit", 1),
        ("author", "author-process-review", 2),
        ("reviewer", "reviewer-commit", 3),
    ]
    assert "[R1] Missing test: no coverage" in agents.steps[2].prompt


def test_review_iterations_are_bounded(tmp_path: Path) -> None:
    store = RunStore()
    agents = ScriptedAgents([COMPLETE], reviewer=[NEEDS_FIX])
    io, _ = _io()

    loop = PhaseLoop(store, agents, _options(tmp_path, run_quality=False, max_review_iterations=2), io=io)
    result = asyncio.run(loop.run())

    assert result.aborted
    assert [role for role, _, _ in agents.calls] == ["author", "reviewer", "author", "reviewer", "author"]
    assert result.escalations[-1].reason == "Maximum review iterations (2) reached for phase 1"


def test_human_required_items_escalate_with_items(tmp_path: Path) -> None:
    store = RunStore()
    verdict = {
        "readiness": "not_ready",
        "items": [{"id": "H1", "title": "API shape", "action": "human_required", "reason": "product call"}],
    }
    agents = ScriptedAgents([COMPLETE], reviewer=[verdict])
    io, _ = _io()

    result = asyncio.run(PhaseLoop(store, agents, _options(tmp_path, run_quality=False), io=io).run())

    assert result.aborted
    (event,) = result.escalations
    assert event.reason == "1 item(s) require human review"
    assert [(item.id, item.title) for item in event.items] == [("H1", "API shape")]


def test_needs_human_guidance_feeds_next_author_prompt(tmp_path: Path) -> None:
    store = RunStore()
    agents = ScriptedAgents([{"result": "needs_human", "reason": "which database?"}, COMPLETE])
    io, lines = _io(["c", "use sqlite", "c"])

    result = asyncio.run(
        PhaseLoop(store, agents, _options(tmp_path, auto=False, run_quality=False), io=io).run()
    )

    assert result.complete
    assert agents.calls[:2] == [("author", "author-next-phase", 0), ("author", "author-next-phase", 1)]
    assert "Notes from the operator: use sqlite" in agents.steps[1].prompt
    assert "  Reason: which database?" in lines
    decisions = [
        event["data"] for event in store.get_run_events(result.run_id) if event["event_type"] == "human_decision"
    ]
    assert decisions == [
        {"type": "escalation", "action": "continue", "guidance": "use sqlite"},
        {"type": "phase_gate", "action": "continue"},
    ]


def test_auto_mode_blocks_phase_on_needs_human(tmp_path: Path) -> None:
    store = RunStore()
    agents = ScriptedAgents([{"result": "needs_human", "reason": "credentials required"}])
    io, _ = _io()

    result = asyncio.run(PhaseLoop(store, agents, _options(tmp_path), io=io).run())

    assert result.aborted
    assert len(agents.steps) == 1
    assert store.get_phase_progress(PLAN, "1")["blocked_reason"] == "credentials required"
    assert _event_types(store, result.run_id)[-1] == "run_abort"


def test_protocol_violation_escalates_with_log_path(tmp_path: Path) -> None:
    store = RunStore()
    violation = ProtocolViolation("author phase 1: author reported complete without a commit reference")
    agents = ScriptedAgents([violation])
    io, _ = _io()

    result = asyncio.run(PhaseLoop(store, agents, _options(tmp_path), io=io).run())

    assert result.aborted
    reason = result.escalations[0].reason
    assert reason.startswith("Author implementation failed: author phase 1: author reported complete")
    assert f"Log: {agents.steps[0].log_path}" in reason
    assert store.get_agent_results(result.run_id) == []


def test_failed_step_snippet_only_in_quiet_mode(tmp_path: Path) -> None:
    store = RunStore()
    failure = FakeOutcome(None, failure="missing_signal", output="I could not finish the task")
    agents = ScriptedAgents([failure])
    io, _ = _io()

    result = asyncio.run(PhaseLoop(store, agents, _options(tmp_path, quiet=True), io=io).run())

    assert "I could not finish the task" in result.escalations[0].reason
    assert build_escalation_reason("boom", "/tmp/x.ndjson", "tail", quiet=False) == "boom\nLog: /tmp/x.ndjson"


def test_cancelled_step_aborts_without_escalation(tmp_path: Path) -> None:
    store = RunStore()

    async def scenario():
        token = CancelToken()

        async def invoke(step: AgentStep) -> FakeOutcome:
            token.cancel("interrupted")
            return FakeOutcome(None, failure="cancelled", error="interrupted")

        io, _ = _io(cancel=token)
        return await PhaseLoop(store, invoke, _options(tmp_path), io=io, cancel=token).run()

    result = asyncio.run(scenario())

    assert result.aborted and result.cancelled
    assert result.escalations == []
    assert store.get_run(result.run_id)["status"] == "aborted"
    assert store.get_run_events(result.run_id)[-1]["data"]["cancel_reason"] == "interrupted"


def test_resume_replays_recorded_steps_and_continues(tmp_path: Path) -> None:
    store = RunStore()
    store.upsert_plan(PLAN)
    run_id = store.create_run(plan_path=PLAN, command="run-phase")
    store.update_run_status(run_id, "active", state="REVIEW", phase="1")
    recorded = [
        ("author", "author-next-phase", 0, "status", COMPLETE),
        ("reviewer", "reviewer-commit", 1, "verdict", NEEDS_FIX),
        ("author", "author-process-review", 2, "status", {"result": "complete", "commit": "fff0001"}),
    ]
    for role, template, iteration, result_type, payload in recorded:
        store.upsert_agent_result(
            run_id=run_id,
            role=role,
            template=template,
            phase="1",
            iteration=iteration,
            result_type=result_type,
            result=payload,
            log_path=f"/logs/{iteration}.ndjson",
        )
    agents = ScriptedAgents([COMPLETE])
    io, lines = _io()

    loop = PhaseLoop(store, agents, _options(tmp_path, run_quality=False, resume="resume"), io=io)
    result = asyncio.run(loop.run())

    assert result.run_id == run_id
    assert result.complete
    assert agents.calls == [("reviewer", "reviewer-commit", 3)]
    assert "fff0001" in agents.steps[0].prompt
    assert "  Skipping author step 0 (already completed)" in lines
    assert "run_resume" in _event_types(store, run_id)


def test_resume_new_supersedes_active_run(tmp_path: Path) -> None:
    store = RunStore()
    store.upsert_plan(PLAN)
    old_run = store.create_run(plan_path=PLAN, command="run-phase")
    agents = ScriptedAgents([COMPLETE])
    io, _ = _io()

    result = asyncio.run(PhaseLoop(store, agents, _options(tmp_path, run_quality=False), io=io).run())

    assert result.run_id != old_run
    assert store.get_run(old_run)["status"] == "aborted"
    assert agents.calls[0] == ("author", "author-next-phase", 0)


def test_resume_gate_abort_leaves_run_untouched(tmp_path: Path) -> None:
    store = RunStore()
    store.upsert_plan(PLAN)
    old_run = store.create_run(plan_path=PLAN, command="run-phase")
    agents = ScriptedAgents([COMPLETE])
    io, _ = _io(["q"])

    result = asyncio.run(PhaseLoop(store, agents, _options(tmp_path, auto=False), io=io).run())

    assert result.aborted and result.run_id == old_run
    assert agents.steps == []
    assert store.get_run(old_run)["status"] == "active"


def test_phase_gate_review_choice_aborts(tmp_path: Path) -> None:
    store = RunStore()
    agents = ScriptedAgents([COMPLETE])
    io, lines = _io(["r"])

    result = asyncio.run(
        PhaseLoop(store, agents, _options(tmp_path, auto=False, run_quality=False), io=io).run()
    )

    assert result.aborted and not result.escalations
    assert store.get_run(result.run_id)["status"] == "aborted"
    assert "  Review the changes, then run the phase again to continue." in lines


def test_prompts_fill_known_placeholders_only() -> None:
    text = render_prompt("author-next-phase", phase="2", plan_path="/p.md", user_notes="cost is $5")
    assert "Implement phase 2 of the plan at /p.md." in text
    assert "cost is $5" in text
    assert "<!-- relay:status" in text
