"""agent-relay CLI."""

from __future__ import annotations

import asyncio
import json
import sys
import uuid
from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import typer

from agent_relay.control_plane.db.db import RunStore
from agent_relay.control_plane.db.registry import StoreRegistry
from agent_relay.control_plane.models.protocol import (
    ProtocolViolation,
    author_status_schema,
    reviewer_verdict_schema,
)
from agent_relay.control_plane.orchestration.gates import GateIO, stale_lock_gate
from agent_relay.control_plane.orchestration.lock import (
    LockResult,
    PlanLockedError,
    acquire_lock,
    is_locked,
    release_lock,
)
from agent_relay.control_plane.orchestration.phase_loop import (
    AgentStep,
    PhaseLoop,
    PhaseLoopOptions,
    PhaseLoopResult,
    QualityRunner,
    StepInvoker,
)
from agent_relay.control_plane.orchestration.plan_review import (
    PlanReviewLoop,
    PlanReviewOptions,
    PlanReviewResult,
    resolve_review_path,
)
from agent_relay.execution_plane.agent.adapter import AgentAdapter, InvokeRequest, InvokeResult
from agent_relay.execution_plane.console.controller import (
    ConsoleController,
    DisabledConsoleController,
    create_console_controller,
    resolve_console_mode,
)
from agent_relay.execution_plane.permissions import (
    PermissionArbiter,
    PermissionPolicyError,
    select_permission_policy,
)
from agent_relay.execution_plane.quality import QualityResult, run_quality_gates
from agent_relay.shared.cancel import CancelToken, install_signal_handlers, remove_signal_handlers
from agent_relay.shared.logging_setup import configure_logging
from agent_relay.shared.paths import canonicalize_plan_path
from agent_relay.shared.settings import RelaySettings, get_relay_settings

EXIT_CANCELLED = 130

app = typer.Typer(add_completion=False, help="agent-relay: supervised author/review runs for coding agents")
registry = StoreRegistry()


def _fail(message: str) -> typer.Exit:
    typer.echo(f"Error: {message}", err=True)
    return typer.Exit(code=1)


def _settings() -> RelaySettings:
    try:
        return get_relay_settings()
    except ValueError as exc:
        raise _fail(str(exc)) from exc


def _echo_json(payload: Any) -> None:
    typer.echo(json.dumps(payload, indent=2, default=str))


def _result_payload(result: InvokeResult) -> dict[str, Any]:
    return {
        "ok": result.ok,
        "result_type": result.result_type,
        "signal": result.signal_payload(),
        "failure": result.failure,
        "error": result.error,
        "session_id": result.session_id,
        "exit_code": result.exit_code,
        "duration_ms": result.duration_ms,
        "tokens_in": result.tokens_in,
        "tokens_out": result.tokens_out,
        "cost_usd": result.cost_usd,
        "log_path": str(result.log_path) if result.log_path else None,
    }


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log debug output to stderr."),
    trace: Path = typer.Option(None, "--trace", help="Write a JSON-lines debug trace to this file."),
) -> None:
    configure_logging(verbose=verbose, trace_path=trace)


@app.command()
def status(plan: Path = typer.Argument(..., help="Plan file.")) -> None:
    """Print runs, lock state, and phase progress for a plan."""
    settings = _settings()
    plan_path = canonicalize_plan_path(plan)
    locked, info, stale = is_locked(settings.lock_dir, plan_path)
    with registry.open(settings.db_path) as store:
        active = store.get_active_run(plan_path)
        payload = {
            "plan_path": plan_path,
            "plan": store.get_plan(plan_path),
            "lock": {
                "locked": locked,
                "stale": stale,
                "pid": info.pid if info else None,
                "started_at": info.started_at if info else None,
            },
            "active_run": active,
            "latest_run": store.get_latest_run(plan_path),
            "phases": store.list_phase_progress(plan_path),
        }
        if active is not None:
            payload["last_event"] = store.get_last_run_event(active["id"])
    _echo_json(payload)


@app.command()
def history(
    plan: Path = typer.Option(None, "--plan", help="Only runs for this plan."),
    limit: int = typer.Option(20, "--limit", min=1),
) -> None:
    """List recent runs, newest first."""
    settings = _settings()
    plan_path = canonicalize_plan_path(plan) if plan is not None else None
    with registry.open(settings.db_path) as store:
        _echo_json(store.get_run_history(plan_path, limit=limit))


@app.command()
def metrics(run_id: str) -> None:
    """Print cost, token, and quality totals for a run."""
    settings = _settings()
    with registry.open(settings.db_path) as store:
        if store.get_run(run_id) is None:
            raise _fail("run_not_found")
        _echo_json(store.get_run_metrics(run_id))


@app.command()
def show_schema(kind: str = typer.Argument(..., help="status or verdict")) -> None:
    """Print the JSON schema agents must answer with."""
    if kind == "status":
        schema = author_status_schema()
    elif kind == "verdict":
        schema = reviewer_verdict_schema()
    else:
        raise typer.BadParameter("Expected 'status' or 'verdict'")
    _echo_json(schema)


@app.command()
def unlock(
    plan: Path = typer.Argument(..., help="Plan file."),
    force: bool = typer.Option(False, "--force", help="Remove the lock even if its holder is alive."),
) -> None:
    """Remove a plan lock left behind by a dead process."""
    settings = _settings()
    locked, info, stale = is_locked(settings.lock_dir, plan)
    if locked and not stale and not force:
        raise _fail(f"plan is locked by running pid {info.pid if info else '?'}; use --force to remove anyway")
    release_lock(settings.lock_dir, plan)
    typer.echo("Lock released." if locked else "No lock held.")


def _wire_session_selection(controller: ConsoleController, workdir: Path):
    async def on_session_created(session_id: str) -> None:
        await controller.select_session(session_id, str(workdir))

    return on_session_created


async def _invoke_once(
    settings: RelaySettings,
    request: InvokeRequest,
    *,
    auto: bool,
) -> InvokeResult:
    cancel = request.cancel or CancelToken()
    install_signal_handlers(cancel)
    adapter = AgentAdapter(settings.agent)
    try:
        policy = select_permission_policy(
            auto_approve=auto, console_active=False, interactive=sys.stdin.isatty(), workdir=request.workdir
        )
    except PermissionPolicyError as exc:
        remove_signal_handlers()
        raise _fail(str(exc)) from exc
    arbiter = PermissionArbiter(adapter, policy)
    arbiter.start()
    try:
        return await adapter.invoke(request)
    finally:
        arbiter.stop()
        remove_signal_handlers()


@app.command()
def invoke(
    prompt_file: Path = typer.Option(..., "--prompt-file", exists=True, dir_okay=False),
    result_type: str = typer.Option("status", "--type", help="status or verdict"),
    workdir: Path = typer.Option(None, "--workdir"),
    model: str = typer.Option(None, "--model"),
    timeout: float = typer.Option(None, "--timeout", min=1),
    resume_session: str = typer.Option(None, "--resume-session"),
    require_commit: bool = typer.Option(False, "--require-commit"),
    auto: bool = typer.Option(False, "--auto", help="Approve every tool permission request."),
    quiet: bool = typer.Option(False, "--quiet", "-q"),
    show_reasoning: bool = typer.Option(False, "--show-reasoning"),
) -> None:
    """Run one agent invocation and print its result as JSON."""
    if result_type not in ("status", "verdict"):
        raise typer.BadParameter("Expected 'status' or 'verdict'", param_hint="--type")
    settings = _settings()
    workdir = (workdir or settings.project_root).resolve()
    stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S")
    log_path = settings.log_dir / "invoke" / f"{prompt_file.stem}-{result_type}-{stamp}-{uuid.uuid4().hex[:8]}.ndjson"
    cancel = CancelToken()
    request = InvokeRequest(
        prompt=prompt_file.read_text(encoding="utf-8"),
        workdir=workdir,
        result_type=result_type,  # type: ignore[arg-type]
        log_path=log_path,
        timeout_seconds=timeout,
        model=model or (settings.agent.author_model if result_type == "status" else settings.agent.reviewer_model),
        resume_session=resume_session,
        require_commit=require_commit,
        context=f"invoke {prompt_file.name}",
        quiet=quiet,
        show_reasoning=show_reasoning,
        cancel=cancel,
    )
    try:
        result = asyncio.run(_invoke_once(settings, request, auto=auto))
    except ProtocolViolation as exc:
        raise _fail(str(exc)) from exc
    _echo_json(_result_payload(result))
    if result.failure == "cancelled":
        raise typer.Exit(code=EXIT_CANCELLED)
    if not result.ok:
        raise typer.Exit(code=1)


async def _acquire_plan_lock(
    settings: RelaySettings, plan_path: str, steal_stale: bool, io: GateIO
) -> LockResult:
    result = acquire_lock(settings.lock_dir, plan_path)
    if result.acquired or not result.stale:
        return result
    existing = result.existing
    if steal_stale:
        choice = "steal"
    else:
        choice = await stale_lock_gate(existing.pid if existing else None, existing.started_at if existing else None, io)
    if choice == "steal":
        return acquire_lock(settings.lock_dir, plan_path, steal_stale=True)
    return result


async def _run_supervised(
    settings: RelaySettings,
    plan_path: str,
    build_loop: Callable[[RunStore, StepInvoker, GateIO, CancelToken, QualityRunner], Any],
    *,
    workdir: Path,
    auto: bool,
    quiet: bool,
    steal_stale: bool,
    viewer: bool,
) -> Any:
    """Run one loop under the plan lock with the console, permission arbiter and signal handlers wired up."""
    cancel = CancelToken()
    install_signal_handlers(cancel)
    io = GateIO.from_terminal(cancel)
    controller: ConsoleController = DisabledConsoleController()
    arbiter: PermissionArbiter | None = None
    lock = await _acquire_plan_lock(settings, plan_path, steal_stale, io)
    if not lock.acquired:
        remove_signal_handlers()
        raise PlanLockedError(lock)
    reentrant = lock.existing is not None and not lock.stale
    try:
        mode = resolve_console_mode(requested=viewer, quiet=quiet, is_tty=sys.stdout.isatty())
        controller = await create_console_controller(
            mode=mode, viewer_command=settings.viewer_command, viewer_url=settings.viewer_url, workdir=workdir
        )
        controller.on_exit(lambda info: cancel.cancel("viewer exited"))
        adapter = AgentAdapter(settings.agent)
        policy = select_permission_policy(
            auto_approve=auto,
            console_active=controller.active,
            interactive=io.interactive,
            workdir=workdir,
        )
        arbiter = PermissionArbiter(adapter, policy)
        arbiter.start()
        on_session_created = _wire_session_selection(controller, workdir)

        async def invoke_step(step: AgentStep) -> InvokeResult:
            request = InvokeRequest(
                prompt=step.prompt,
                workdir=workdir,
                result_type=step.result_type,
                log_path=step.log_path,
                model=step.model,
                require_commit=step.require_commit,
                context=step.context,
                quiet=lambda: quiet or controller.active,
                cancel=cancel,
                on_session_created=on_session_created,
            )
            return await adapter.invoke(request)

        async def run_quality(run_id: str, phase: str, attempt: int) -> QualityResult:
            return await run_quality_gates(
                settings.quality_gates,
                workdir,
                log_dir=settings.log_dir / run_id,
                phase=phase,
                attempt=attempt,
                timeout_seconds=settings.quality_timeout_seconds,
                cancel=cancel,
            )

        with registry.open(settings.db_path) as store:
            return await build_loop(store, invoke_step, io, cancel, run_quality).run()
    finally:
        if arbiter is not None:
            arbiter.stop()
        controller.kill()
        if not reentrant:
            release_lock(settings.lock_dir, plan_path)
        remove_signal_handlers()
        if cancel.cancelled:
            typer.echo(f"Cancelled: {cancel.reason}", err=True)


@app.command()
def run_phase(
    plan: Path = typer.Argument(..., exists=True, dir_okay=False, help="Plan file."),
    phase: str = typer.Option(..., "--phase", help="Phase identifier, e.g. 2 or 3.1."),
    title: str = typer.Option("", "--title"),
    review_path: Path = typer.Option(None, "--review-path"),
    workdir: Path = typer.Option(None, "--workdir"),
    auto: bool = typer.Option(False, "--auto", help="Approve permissions and never stop at gates."),
    quiet: bool = typer.Option(False, "--quiet", "-q"),
    viewer: bool = typer.Option(False, "--viewer", help="Hand the terminal to the configured interactive viewer."),
    skip_quality: bool = typer.Option(False, "--skip-quality"),
    steal_stale: bool = typer.Option(False, "--steal-stale", help="Take over a lock left by a dead process."),
    resume: str = typer.Option(None, "--resume", help="resume, new or abort when an interrupted run exists."),
) -> None:
    """Drive one plan phase through author, quality gates, and review under the plan lock."""
    if resume is not None and resume not in ("resume", "new", "abort"):
        raise typer.BadParameter("Expected 'resume', 'new' or 'abort'", param_hint="--resume")
    settings = _settings()
    plan_path = canonicalize_plan_path(plan)
    workdir = (workdir or settings.project_root).resolve()
    options = PhaseLoopOptions(
        plan_path=plan_path,
        phase=phase,
        log_dir=settings.log_dir,
        phase_title=title,
        review_path=str(review_path.resolve()) if review_path is not None else None,
        author_model=settings.agent.author_model,
        reviewer_model=settings.agent.reviewer_model,
        run_quality=bool(settings.quality_gates) and not skip_quality,
        max_review_iterations=settings.max_review_iterations,
        max_quality_retries=settings.max_quality_retries,
        auto=auto,
        quiet=quiet,
        resume=resume,  # type: ignore[arg-type]
    )

    def build_loop(store, invoke_step, io, cancel, run_quality) -> PhaseLoop:
        return PhaseLoop(store, invoke_step, options, io=io, quality=run_quality, cancel=cancel)

    try:
        result: PhaseLoopResult = asyncio.run(
            _run_supervised(
                settings,
                plan_path,
                build_loop,
                workdir=workdir,
                auto=auto,
                quiet=quiet,
                steal_stale=steal_stale,
                viewer=viewer,
            )
        )
    except (PlanLockedError, PermissionPolicyError) as exc:
        raise _fail(str(exc)) from exc
    _echo_json(
        {
            "run_id": result.run_id,
            "complete": result.complete,
            "last_commit": result.last_commit,
            "review_readiness": result.review_readiness,
            "escalations": [event.reason for event in result.escalations],
        }
    )
    if result.complete:
        return
    raise typer.Exit(code=EXIT_CANCELLED if result.cancelled else 1)


@app.command()
def plan_review(
    plan: Path = typer.Argument(..., exists=True, dir_okay=False, help="Plan file."),
    review_path: Path = typer.Option(None, "--review-path", help="Review document; defaults to the reviews directory."),
    workdir: Path = typer.Option(None, "--workdir"),
    auto: bool = typer.Option(False, "--auto", help="Approve permissions and abort on escalations instead of asking."),
    quiet: bool = typer.Option(False, "--quiet", "-q"),
    viewer: bool = typer.Option(False, "--viewer", help="Hand the terminal to the configured interactive viewer."),
    steal_stale: bool = typer.Option(False, "--steal-stale", help="Take over a lock left by a dead process."),
    resume: str = typer.Option(None, "--resume", help="resume, new or abort when an interrupted run exists."),
) -> None:
    """Review the plan document with the reviewer and let the author revise it until it is ready."""
    if resume is not None and resume not in ("resume", "new", "abort"):
        raise typer.BadParameter("Expected 'resume', 'new' or 'abort'", param_hint="--resume")
    settings = _settings()
    plan_path = canonicalize_plan_path(plan)
    workdir = (workdir or settings.project_root).resolve()
    if review_path is not None:
        review = str(review_path.resolve())
    else:
        with registry.open(settings.db_path) as store:
            review = resolve_review_path(store, plan_path, settings.reviews_dir or settings.project_root)
    options = PlanReviewOptions(
        plan_path=plan_path,
        review_path=review,
        log_dir=settings.log_dir,
        author_model=settings.agent.author_model,
        reviewer_model=settings.agent.reviewer_model,
        max_review_iterations=settings.max_review_iterations,
        auto=auto,
        quiet=quiet,
        resume=resume,  # type: ignore[arg-type]
    )

    def build_loop(store, invoke_step, io, cancel, run_quality) -> PlanReviewLoop:
        return PlanReviewLoop(store, invoke_step, options, io=io, cancel=cancel)

    try:
        result: PlanReviewResult = asyncio.run(
            _run_supervised(
                settings,
                plan_path,
                build_loop,
                workdir=workdir,
                auto=auto,
                quiet=quiet,
                steal_stale=steal_stale,
                viewer=viewer,
            )
        )
    except (PlanLockedError, PermissionPolicyError) as exc:
        raise _fail(str(exc)) from exc
    _echo_json(
        {
            "run_id": result.run_id,
            "approved": result.approved,
            "iterations": result.iterations,
            "review_path": result.review_path,
            "review_readiness": result.review_readiness,
            "escalations": [event.reason for event in result.escalations],
        }
    )
    if result.approved:
        return
    raise typer.Exit(code=EXIT_CANCELLED if result.cancelled else 1)


if __name__ == "__main__":
    app()
