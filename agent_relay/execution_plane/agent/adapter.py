"""Agent invocation adapter: run one agent turn and return a typed, validated result."""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import re
import signal
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

from agent_relay.control_plane.models.protocol import (
    AuthorStatus,
    ReviewerVerdict,
    author_status_schema,
    reviewer_verdict_schema,
    validate_author_status,
    validate_reviewer_verdict,
)
from agent_relay.execution_plane.agent.event_hub import EventHub, Subscription
from agent_relay.execution_plane.agent.events import (
    LegacyAssistantMessage,
    PartUpdated,
    ResultRecord,
    SessionError,
    StepFinished,
    StreamRecord,
    Unrecognized,
    event_session_id,
    parse_event,
)
from agent_relay.execution_plane.agent.process import (
    drain_tasks,
    iter_lines,
    signal_process_group,
    spawn_process,
    terminate_process,
    wait_for_exit,
)
from agent_relay.execution_plane.agent.signals import resolve_signal_payload
from agent_relay.execution_plane.render.event_router import EventRouter
from agent_relay.execution_plane.render.stream_writer import StreamWriter
from agent_relay.shared.cancel import CancelToken
from agent_relay.shared.paths import ensure_secure_dir
from agent_relay.shared.settings import AgentSettings

logger = logging.getLogger(__name__)

ResultType = Literal["status", "verdict"]
FailureKind = Literal["spawn_failed", "exit_nonzero", "agent_error", "timeout", "cancelled", "missing_signal"]

STDERR_TAIL_CHARS = 2000
_PLACEHOLDER_RE = re.compile(r"\{(\w+)\}")


@dataclass(frozen=True)
class InvokeRequest:
    prompt: str
    workdir: Path
    result_type: ResultType
    log_path: Path
    timeout_seconds: float | None = None
    model: str | None = None
    resume_session: str | None = None
    require_commit: bool = False
    context: str = "agent"
    quiet: bool | Callable[[], bool] = False
    show_reasoning: bool = False
    cancel: CancelToken | None = None
    on_session_created: Callable[[str], Awaitable[None] | None] | None = None


@dataclass(frozen=True)
class InvokeResult:
    result_type: ResultType
    status: AuthorStatus | None = None
    verdict: ReviewerVerdict | None = None
    tokens_in: int | None = None
    tokens_out: int | None = None
    cost_usd: float | None = None
    duration_ms: int = 0
    session_id: str | None = None
    exit_code: int | None = None
    failure: FailureKind | None = None
    error: str | None = None
    output: str = ""
    log_path: Path | None = None

    @property
    def ok(self) -> bool:
        return self.failure is None

    def signal_payload(self) -> dict[str, Any] | None:
        outcome = self.status if self.result_type == "status" else self.verdict
        return outcome.model_dump(exclude_none=True) if outcome is not None else None


@dataclass
class _InFlightInvocation:
    request: InvokeRequest
    started_monotonic: float = field(default_factory=time.monotonic)
    session_id: str | None = None
    result: ResultRecord | None = None
    session_error: str | None = None
    text_by_part: dict[str, str] = field(default_factory=dict)
    assistant_texts: list[str] = field(default_factory=list)
    raw_lines: list[str] = field(default_factory=list)
    stderr_chunks: list[str] = field(default_factory=list)
    step_tokens_in: int = 0
    step_tokens_out: int = 0
    step_cost_usd: float = 0.0
    saw_steps: bool = False

    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.started_monotonic) * 1000)

    def output_text(self) -> str:
        if self.result is not None and self.result.result:
            return self.result.result
        texts = list(self.text_by_part.values()) + self.assistant_texts
        if texts:
            return "\n".join(texts)
        return "\n".join(self.raw_lines)

    def stderr_tail(self) -> str:
        return "".join(self.stderr_chunks)[-STDERR_TAIL_CHARS:].strip()


class _NullSink:
    def write_text(self, delta: str) -> None:
        return None

    def write_thinking(self, delta: str) -> None:
        return None

    def write_line(self, text: str, dim: bool = False) -> None:
        return None


def _is_quiet(quiet: bool | Callable[[], bool]) -> bool:
    return bool(quiet()) if callable(quiet) else bool(quiet)


class AgentAdapter:
    """Owns the agent process for one invocation at a time.

    Every stdout record is published on :attr:`hub`. Per invocation the adapter
    subscribes a log writer and a console renderer; the permission arbiter holds
    its own long-lived subscription and answers through :meth:`reply_permission`.
    """

    def __init__(
        self,
        settings: AgentSettings | None = None,
        hub: EventHub[StreamRecord] | None = None,
        writer_factory: Callable[[], StreamWriter] | None = None,
    ) -> None:
        self.settings = settings or AgentSettings()
        self.hub: EventHub[StreamRecord] = hub or EventHub()
        self._writer_factory = writer_factory or StreamWriter
        self._stdin: asyncio.StreamWriter | None = None
        self._stdin_lock: asyncio.Lock | None = None
        self._session_tasks: set[asyncio.Task] = set()

    def subscribe(self) -> Subscription[StreamRecord]:
        return self.hub.subscribe()

    async def reply_permission(self, request_id: str, reply: str, message: str | None = None) -> None:
        stdin = self._stdin
        if stdin is None or stdin.is_closing():
            raise ConnectionError("no agent is accepting permission replies")
        payload: dict[str, Any] = {"type": "permission.reply", "requestID": request_id, "reply": reply}
        if message:
            payload["message"] = message
        if self._stdin_lock is None:
            self._stdin_lock = asyncio.Lock()
        async with self._stdin_lock:
            stdin.write((json.dumps(payload) + "\n").encode("utf-8"))
            await stdin.drain()

    def build_argv(self, request: InvokeRequest) -> list[str]:
        schema = author_status_schema() if request.result_type == "status" else reviewer_verdict_schema()
        values = {
            "prompt": request.prompt,
            "model": request.model or "",
            "schema": json.dumps(schema),
            "session_id": request.resume_session or "",
            "workdir": str(request.workdir),
        }

        def fill(template: str) -> str:
            return _PLACEHOLDER_RE.sub(lambda match: values.get(match.group(1), match.group(0)), template)

        argv = [fill(part) for part in self.settings.command]
        if request.model:
            argv.extend(fill(part) for part in self.settings.model_args)
        if request.resume_session:
            argv.extend(fill(part) for part in self.settings.resume_args)
        return argv

    async def invoke(self, request: InvokeRequest) -> InvokeResult:
        """Run one agent turn.

        Returns a failed :class:`InvokeResult` for spawn failures, non-zero exits,
        agent-reported errors, timeouts, cancellation, and a missing signal.
        Raises :class:`ProtocolViolation` when the agent's signal breaks the
        status or verdict contract.
        """

        flight = _InFlightInvocation(request=request)
        timeout = request.timeout_seconds if request.timeout_seconds is not None else self.settings.timeout_seconds
        cancel = request.cancel or CancelToken()
        argv = self.build_argv(request)

        if cancel.cancelled:
            return self._failed(flight, "cancelled", f"agent invocation cancelled ({cancel.reason})")

        ensure_secure_dir(request.log_path.parent)
        log_handle = request.log_path.open("a", encoding="utf-8")
        stderr_path = request.log_path.with_name(request.log_path.stem + ".stderr.log")
        try:
            try:
                proc = await spawn_process(argv, request.workdir, stdin_pipe=self.settings.stdin_replies)
            except OSError as exc:
                logger.error("failed to start agent %s: %s", argv[0], exc)
                return self._failed(flight, "spawn_failed", f"failed to start agent {argv[0]!r}: {exc}")
            logger.debug("agent pid %s started: %s", proc.pid, argv[0])
            outcome, exit_code = await self._supervise(proc, flight, cancel, timeout, log_handle, stderr_path)
        finally:
            log_handle.close()
        return self._build_result(flight, outcome, exit_code, timeout, cancel)

    async def _supervise(
        self,
        proc: asyncio.subprocess.Process,
        flight: _InFlightInvocation,
        cancel: CancelToken,
        timeout: float,
        log_handle: Any,
        stderr_path: Path,
    ) -> tuple[str, int | None]:
        log_sub = self.hub.subscribe()
        render_sub = self.hub.subscribe()
        consumers = [
            asyncio.create_task(self._write_log(log_sub, log_handle)),
            asyncio.create_task(self._render(render_sub, flight.request)),
        ]
        readers = [
            asyncio.create_task(self._pump(proc.stdout, flight)),
            asyncio.create_task(self._collect_stderr(proc.stderr, flight, stderr_path)),
        ]
        self._stdin = proc.stdin
        outcome = "exited"
        try:
            outcome = await self._race(proc, cancel, timeout)
            if outcome != "exited":
                logger.warning("agent %s: %s; terminating pid %s", flight.request.context, outcome, proc.pid)
                await terminate_process(proc, self.settings.kill_grace_seconds)
        finally:
            if proc.returncode is None:
                signal_process_group(proc, signal.SIGKILL)
            self._stdin = None
            if proc.stdin is not None:
                try:
                    proc.stdin.close()
                except (BrokenPipeError, ConnectionResetError):
                    pass
            drain_deadline = time.monotonic() + self.settings.drain_timeout_seconds
            await drain_tasks(readers, self.settings.drain_timeout_seconds)
            log_sub.close()
            render_sub.close()
            await drain_tasks(consumers, drain_deadline - time.monotonic())
            leftover = log_sub.drain_nowait()
            if leftover:
                logger.debug("writing %d queued records to %s after drain bound", len(leftover), flight.request.log_path)
                for record in leftover:
                    log_handle.write(record.line + "\n")
                log_handle.flush()
        return outcome, proc.returncode

    async def _race(self, proc: asyncio.subprocess.Process, cancel: CancelToken, timeout: float) -> str:
        exit_task = asyncio.create_task(wait_for_exit(proc))
        cancel_task = asyncio.create_task(cancel.wait())
        try:
            done, _ = await asyncio.wait(
                {exit_task, cancel_task}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            for task in (exit_task, cancel_task):
                if not task.done():
                    task.cancel()
            await asyncio.gather(exit_task, cancel_task, return_exceptions=True)
        if exit_task in done:
            return "exited"
        if cancel_task in done:
            return "cancelled"
        return "timeout"

    async def _pump(self, stdout: asyncio.StreamReader | None, flight: _InFlightInvocation) -> None:
        if stdout is None:
            return
        async for line in iter_lines(stdout):
            if not line.strip():
                continue
            try:
                record = json.loads(line)
            except ValueError:
                flight.raw_lines.append(line)
                event = Unrecognized(type=None)
            else:
                event = parse_event(record)
            self._observe(flight, event)
            self.hub.publish(StreamRecord(line=line, event=event))

    def _observe(self, flight: _InFlightInvocation, event: Any) -> None:
        session_id = event_session_id(event)
        if session_id and flight.session_id is None:
            flight.session_id = session_id
            self._notify_session(flight.request, session_id)
        if isinstance(event, ResultRecord):
            flight.result = event
        elif isinstance(event, SessionError):
            if flight.session_error is None:
                flight.session_error = event.message or "unknown error"
        elif isinstance(event, StepFinished):
            flight.saw_steps = True
            flight.step_tokens_in += event.tokens_in or 0
            flight.step_tokens_out += event.tokens_out or 0
            flight.step_cost_usd += event.cost_usd or 0.0
        elif isinstance(event, PartUpdated) and event.part_type == "text" and event.part_id:
            if event.text is not None:
                flight.text_by_part[event.part_id] = event.text
            elif event.delta:
                flight.text_by_part[event.part_id] = flight.text_by_part.get(event.part_id, "") + event.delta
        elif isinstance(event, LegacyAssistantMessage):
            for block in event.content:
                if block.get("type") == "text" and isinstance(block.get("text"), str):
                    flight.assistant_texts.append(block["text"])

    def _notify_session(self, request: InvokeRequest, session_id: str) -> None:
        callback = request.on_session_created
        if callback is None:
            return
        try:
            outcome = callback(session_id)
        except Exception:
            logger.warning("session callback failed", exc_info=True)
            return
        if inspect.isawaitable(outcome):
            task = asyncio.ensure_future(outcome)
            self._session_tasks.add(task)
            task.add_done_callback(self._session_task_done)

    def _session_task_done(self, task: asyncio.Task) -> None:
        self._session_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning("session callback failed: %s", task.exception())

    async def _collect_stderr(
        self, stderr: asyncio.StreamReader | None, flight: _InFlightInvocation, path: Path
    ) -> None:
        if stderr is None:
            return
        with path.open("a", encoding="utf-8") as handle:
            async for line in iter_lines(stderr):
                handle.write(line + "\n")
                handle.flush()
                flight.stderr_chunks.append(line + "\n")

    async def _write_log(self, subscription: Subscription[StreamRecord], handle: Any) -> None:
        async for record in subscription:
            handle.write(record.line + "\n")
            handle.flush()

    async def _render(self, subscription: Subscription[StreamRecord], request: InvokeRequest) -> None:
        router = EventRouter(show_reasoning=request.show_reasoning)
        writer: StreamWriter | None = None
        null_sink = _NullSink()
        try:
            async for record in subscription:
                if _is_quiet(request.quiet):
                    router.route(record.event, null_sink)
                    continue
                if writer is None:
                    writer = self._writer_factory()
                try:
                    router.route(record.event, writer)
                except Exception:
                    logger.warning("failed to render agent event", exc_info=True)
        finally:
            if writer is not None:
                writer.end_block()

    def _failed(
        self,
        flight: _InFlightInvocation,
        failure: FailureKind,
        error: str,
        exit_code: int | None = None,
    ) -> InvokeResult:
        tokens_in, tokens_out, cost = self._accounting(flight)
        return InvokeResult(
            result_type=flight.request.result_type,
            tokens_in=tokens_in,
            tokens_out=tokens_out,
            cost_usd=cost,
            duration_ms=flight.elapsed_ms(),
            session_id=flight.session_id,
            exit_code=exit_code,
            failure=failure,
            error=error,
            output=flight.output_text(),
            log_path=flight.request.log_path,
        )

    def _accounting(self, flight: _InFlightInvocation) -> tuple[int | None, int | None, float | None]:
        result = flight.result
        if result is not None and (result.tokens_in is not None or result.cost_usd is not None):
            return result.tokens_in, result.tokens_out, result.cost_usd
        if flight.saw_steps:
            return flight.step_tokens_in, flight.step_tokens_out, flight.step_cost_usd
        return None, None, None

    def _build_result(
        self,
        flight: _InFlightInvocation,
        outcome: str,
        exit_code: int | None,
        timeout: float,
        cancel: CancelToken,
    ) -> InvokeResult:
        request = flight.request
        if outcome == "cancelled":
            return self._failed(flight, "cancelled", f"agent invocation cancelled ({cancel.reason})", exit_code)
        if outcome == "timeout":
            return self._failed(flight, "timeout", f"agent timed out after {timeout:g}s", exit_code)
        if exit_code != 0:
            message = f"agent exited with code {exit_code}"
            tail = flight.stderr_tail()
            return self._failed(flight, "exit_nonzero", f"{message}: {tail}" if tail else message, exit_code)
        if flight.session_error is not None:
            return self._failed(
                flight, "agent_error", f"agent reported an error: {flight.session_error}", exit_code
            )

        result = flight.result
        if result is None:
            logger.warning("%s: agent stream ended without a result record", request.context)
        else:
            if result.missing_fields:
                logger.warning(
                    "%s: result record is missing %s; continuing with what is available",
                    request.context,
                    ", ".join(result.missing_fields),
                )
            if result.is_error:
                detail = result.result or result.subtype or "unknown error"
                return self._failed(flight, "agent_error", f"agent reported an error: {detail}", exit_code)

        payload = resolve_signal_payload(result, flight.output_text(), request.result_type)
        if payload is None:
            return self._failed(
                flight, "missing_signal", f"agent returned no {request.result_type} signal", exit_code
            )

        status = verdict = None
        if request.result_type == "status":
            status = validate_author_status(payload, request.context, require_commit=request.require_commit)
        else:
            verdict = validate_reviewer_verdict(payload, request.context)
        tokens_in, tokens_out, cost = self._accounting(flight)
        return InvokeResult(
            result_type=request.result_type,
            status=status,
            verdict=verdict,
            tokens_in=tokens_in,
            tokens_out=tokens_out,
            cost_usd=cost,
            duration_ms=flight.elapsed_ms(),
            session_id=flight.session_id,
            exit_code=exit_code,
            output=flight.output_text(),
            log_path=request.log_path,
        )
