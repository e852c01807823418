"""
Loop Controller - drives one agent session to a terminal status

Per iteration:

    Thinking (running)
        │  model turn streams through the decoder; every completed tool
        │  call is dispatched at its block stop
        ▼
    AwaitingTools          (entered on the first dispatch of the iteration)
        │  wait until every dispatched call is done or failed
        ▼
    Verifying
        ├─ all goals satisfied           → Terminated(success)
        ├─ iteration budget spent        → Terminated(exhausted)
        ├─ failures, retry budget spent  → Terminated(fatal)
        ├─ failures                      → Recovering → Thinking
        └─ goals unmet                   → Thinking

A FatalModelError ends the session immediately as fatal. Cancellation (user
abort or hard timeout) cancels in-flight tool work and ends it as cancelled.
The caller always gets a SessionResult with the full ledger.
"""

from contextlib import aclosing
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set
import asyncio
import json
import time

from toolstream.core.config import settings
from toolstream.core.exceptions import (
    FatalModelError,
    IterationBudgetExhausted,
    IterationStateError,
    RecoveryBudgetExhausted,
    SessionCancelledError,
    ToolExecutionError,
    ToolStreamError,
)
from toolstream.core.logging_config import logger, set_iteration, set_session_id
from toolstream.modules.orchestrator.buffer_table import ToolCallBufferTable
from toolstream.modules.orchestrator.dispatch import DispatchCoordinator, WorkItem, WorkQueue
from toolstream.modules.orchestrator.event_bus import (
    ProgressBroadcaster,
    ProgressEventType,
    get_broadcaster,
)
from toolstream.modules.orchestrator.executor import (
    ToolContext,
    ToolExecutor,
    ToolExecutorPool,
    ToolRegistry,
    ToolSpec,
)
from toolstream.modules.orchestrator.goals import (
    MARK_GOAL_COMPLETE,
    Goal,
    GoalExtractor,
    GoalReport,
    GoalVerifier,
    MarkGoalCompleteArgs,
    VerificationContext,
)
from toolstream.modules.orchestrator.ledger import LedgerStore, SessionLedger, get_ledger_store
from toolstream.modules.orchestrator.recovery import FailureRecord, RecoveryManager
from toolstream.modules.orchestrator.session import (
    AgentSession,
    ErrorKind,
    Iteration,
    IterationOutcome,
    ToolCallBuffer,
    ToolExecutionResult,
)
from toolstream.modules.orchestrator.state_machine import StateTransition, TerminalStatus
from toolstream.modules.orchestrator.stream_decoder import (
    DecodedEvent,
    DecodedEventType,
    StreamDecoder,
)
from toolstream.services.content_store import ContentStore
from toolstream.services.deployment_trigger import DeploymentTrigger, NullDeploymentTrigger
from toolstream.utils.claude_stream_client import ModelClient


DEFAULT_SYSTEM_PROMPT = """You are a software engineering agent working inside a project workspace.

Make the changes the user asks for by calling the tools you are given. You may issue several
tool calls in one turn; calls touching the same file run in the order you issue them.

Rules:
- Read a file before changing content you have not seen.
- When a tool call fails you get the error and what you attempted. Earlier successful changes
  are kept. Decide on a corrected action instead of repeating the same call.
- When a goal cannot be checked from the files alone, call mark_goal_complete with its id once
  it is done.
- Stop calling tools when every goal is complete."""

NO_OUTPUT_TEXT = "(no output)"
SLOW_SESSION_MS = 300_000


async def mark_goal_complete(args: MarkGoalCompleteArgs, ctx: ToolContext) -> Dict[str, Any]:
    session = ctx.session
    if session is None:
        raise ToolExecutionError(f"No active session {ctx.session_id}", MARK_GOAL_COMPLETE)

    known = [g.id for g in session.goals]
    if args.goal_id not in known:
        return {"success": False, "error": f"Unknown goal id {args.goal_id!r}; known ids: {', '.join(known)}"}

    session.declared_goals.add(args.goal_id)
    logger.info(f"[LoopController] Goal {args.goal_id} declared complete: {args.summary[:120]}")
    return {"success": True, "goal_id": args.goal_id}


@dataclass
class SessionResult:
    """What the caller gets back, whatever happened"""
    session_id: str
    status: TerminalStatus
    iterations: int
    ledger: SessionLedger
    goals: GoalReport
    retry_count: int = 0
    error: Optional[Dict[str, Any]] = None

    @property
    def succeeded(self) -> bool:
        return self.status == TerminalStatus.SUCCESS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "status": self.status.value,
            "iterations": self.iterations,
            "retry_count": self.retry_count,
            "error": self.error,
            "goals": self.goals.to_dict(),
            "ledger": self.ledger.to_dict(),
        }


@dataclass
class _SessionRuntime:
    """Per-session machinery; nothing here is shared across sessions"""
    session: AgentSession
    ledger: SessionLedger
    table: ToolCallBufferTable
    queue: WorkQueue
    coordinator: DispatchCoordinator
    pool: Optional[ToolExecutorPool]
    decoder: Optional[StreamDecoder] = None
    execution_ids: List[str] = field(default_factory=list)
    parse_failures: Dict[str, ToolExecutionResult] = field(default_factory=dict)
    report: Optional[GoalReport] = None
    cancel_reason: str = "cancelled"


class LoopController:
    """
    Runs agent sessions. One controller may drive many sessions at once;
    every session gets its own buffer table, work queue, dispatch
    coordinator and executor pool.
    """

    def __init__(
        self,
        model_client: ModelClient,
        registry: ToolRegistry,
        content_store: Optional[ContentStore] = None,
        broadcaster: Optional[ProgressBroadcaster] = None,
        ledger_store: Optional[LedgerStore] = None,
        deployment_trigger: Optional[DeploymentTrigger] = None,
        recovery: Optional[RecoveryManager] = None,
        goal_extractor: Optional[GoalExtractor] = None,
        max_iterations: Optional[int] = None,
        max_tool_concurrency: Optional[int] = None,
        tool_timeout: Optional[float] = None,
        system_prompt: Optional[str] = None,
    ):
        self.model_client = model_client
        self.registry = registry
        self.content_store = content_store
        self.broadcaster = broadcaster or get_broadcaster()
        self.ledger_store = ledger_store or get_ledger_store()
        self.deployment_trigger = deployment_trigger or NullDeploymentTrigger()
        self.recovery = recovery or RecoveryManager()
        self.goal_extractor = goal_extractor or GoalExtractor()
        self.goal_verifier = GoalVerifier()
        self.max_iterations = max_iterations or settings.AGENT_MAX_ITERATIONS
        self.max_tool_concurrency = max_tool_concurrency or settings.TOOL_MAX_CONCURRENCY
        self.executor = ToolExecutor(registry, default_timeout=tool_timeout)
        self.system_prompt = system_prompt or DEFAULT_SYSTEM_PROMPT
        self._background: Set[asyncio.Task] = set()

        if MARK_GOAL_COMPLETE not in registry:
            registry.register(ToolSpec(
                name=MARK_GOAL_COMPLETE,
                description="Declare one goal of the request complete. Use the goal id from the goal list.",
                handler=mark_goal_complete,
                args_model=MarkGoalCompleteArgs,
            ))

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def run(
        self,
        request: str,
        goals: Optional[List[Goal]] = None,
        cancel_event: Optional[asyncio.Event] = None,
        hard_timeout: Optional[float] = None,
        session_id: Optional[str] = None,
    ) -> SessionResult:
        """
        Drive one session to a terminal status.

        Args:
            request: the user's request
            goals: explicit goals; extracted from the request when omitted
            cancel_event: set it to abort the session
            hard_timeout: seconds before the session is cancelled
                (SESSION_HARD_TIMEOUT when omitted, 0 disables)
            session_id: use this id instead of a generated one
        """
        session = AgentSession(request=request, id=session_id) if session_id else AgentSession(request=request)
        session.goals = list(goals) if goals is not None else self.goal_extractor.extract(request)
        rt = self._build_runtime(session)

        limit = settings.SESSION_HARD_TIMEOUT if hard_timeout is None else hard_timeout
        core = asyncio.create_task(self._drive(rt), name=f"session-{session.id[:8]}")
        waiters: Set[asyncio.Future] = {core}
        cancel_waiter = None
        if cancel_event is not None:
            cancel_waiter = asyncio.create_task(cancel_event.wait())
            waiters.add(cancel_waiter)

        try:
            done, _ = await asyncio.wait(waiters, timeout=limit or None, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            rt.cancel_reason = "caller cancelled"
            core.cancel()
            await asyncio.gather(core, return_exceptions=True)
            raise
        finally:
            if cancel_waiter is not None:
                cancel_waiter.cancel()

        if core not in done:
            rt.cancel_reason = "cancel requested" if cancel_waiter in done else f"hard timeout after {limit}s"
            logger.warning(f"[LoopController] Cancelling session {session.id}: {rt.cancel_reason}")
            core.cancel()
            await asyncio.gather(core, return_exceptions=True)
            if not session.state_machine.is_terminated:
                # Cancelled before the driver ever ran
                session.terminate(TerminalStatus.CANCELLED, SessionCancelledError(session.id, rt.cancel_reason))
                await self._finalize(rt, time.perf_counter())
        else:
            core.result()

        return self._result(rt)

    async def drain(self) -> None:
        """Wait for fire-and-forget work (deployment triggers) to finish"""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ------------------------------------------------------------------
    # Session setup
    # ------------------------------------------------------------------

    def _build_runtime(self, session: AgentSession) -> _SessionRuntime:
        table = ToolCallBufferTable(session.id, schema_lookup=self.registry.schema_for)
        session.buffer_table = table
        queue = WorkQueue()
        coordinator = DispatchCoordinator(
            session.id,
            queue,
            resource_key=self.registry.resource_key_for,
            broadcaster=self.broadcaster,
        )
        rt = _SessionRuntime(
            session=session,
            ledger=SessionLedger(session.id, session.request),
            table=table,
            queue=queue,
            coordinator=coordinator,
            pool=None,
        )
        rt.pool = ToolExecutorPool(
            session.id,
            self.executor,
            queue,
            max_concurrency=self.max_tool_concurrency,
            session=session,
            on_start=lambda item: self._on_tool_started(rt, item),
            on_result=lambda item, result: self._on_tool_result(rt, item, result),
        )
        rt.decoder = StreamDecoder(
            table,
            on_tool_complete=lambda buffer: self._on_tool_complete(rt, buffer),
            on_tool_failed=lambda buffer, error: self._on_tool_failed(rt, buffer, error),
        )
        session.state_machine.on_transition(
            lambda old, new, transition: self._on_state_change(rt, transition)
        )
        return rt

    def _opening_message(self, session: AgentSession) -> str:
        lines = [session.request, "", "Goals:"]
        lines.extend(f"- {g.id}: {g.description}" for g in session.goals)
        return "\n".join(lines)

    # ------------------------------------------------------------------
    # Session driver
    # ------------------------------------------------------------------

    async def _drive(self, rt: _SessionRuntime) -> None:
        session = rt.session
        set_session_id(session.id)
        started = time.perf_counter()
        logger.log_session_event(session.id, "started", goal_count=len(session.goals))
        self._emit(rt, ProgressEventType.SESSION_STARTED, {
            "request": session.request,
            "goals": [g.to_dict() for g in session.goals],
            "max_iterations": self.max_iterations,
        })

        rt.pool.start()
        session.conversation_history.append({"role": "user", "content": self._opening_message(session)})
        try:
            while not session.state_machine.is_terminated:
                await self._iterate(rt)
        except FatalModelError as e:
            logger.error(f"[LoopController] Model error in session {session.id}: {e.message}")
            await self._abort_iteration(rt, IterationOutcome.MODEL_ERROR, e)
            session.terminate(TerminalStatus.FATAL, e)
        except asyncio.CancelledError:
            error = SessionCancelledError(session.id, rt.cancel_reason)
            await self._abort_iteration(rt, IterationOutcome.CANCELLED, error)
            session.terminate(TerminalStatus.CANCELLED, error)
            await self._finalize(rt, started)
            raise
        except ToolStreamError as e:
            logger.log_error_with_context(e, context=f"session {session.id}")
            await self._abort_iteration(rt, IterationOutcome.MODEL_ERROR, e)
            session.terminate(TerminalStatus.FATAL, e)
        except Exception as e:
            logger.log_error_with_context(e, context=f"session {session.id}")
            error = ToolStreamError(f"{type(e).__name__}: {e}", code="INTERNAL_ERROR")
            await self._abort_iteration(rt, IterationOutcome.MODEL_ERROR, error)
            session.terminate(TerminalStatus.FATAL, error)
        finally:
            await rt.pool.shutdown()

        await self._finalize(rt, started)

    async def _iterate(self, rt: _SessionRuntime) -> None:
        session = rt.session
        n = len(session.iterations) + 1
        iteration = Iteration(sequence_number=n, goal_snapshot=[g.to_dict() for g in session.goals])
        session.iterations.append(iteration)
        rt.execution_ids = []
        rt.parse_failures = {}
        rt.decoder.reset()
        rt.coordinator.begin_iteration(n)
        set_iteration(n)

        logger.info(f"[LoopController] Session {session.id[:8]} iteration {n}/{self.max_iterations}")
        self._emit(rt, ProgressEventType.ITERATION_STARTED, {"max_iterations": self.max_iterations})

        # Thinking: tool calls are dispatched from inside the decoder as they complete
        messages = list(session.conversation_history)
        async with aclosing(self.model_client.stream_turn(messages, self.registry.definitions(), self.system_prompt)) as stream:
            async with aclosing(rt.decoder.decode(stream)) as events:
                async for event in events:
                    self._relay(rt, event)

        # AwaitingTools
        await rt.pool.wait_for(rt.execution_ids)
        turn = rt.decoder.turn
        iteration.assistant_text = turn.text
        iteration.stop_reason = turn.stop_reason
        iteration.results = [self._result_for(rt, b) for b in iteration.issued_tool_calls]

        # Verifying
        session.state_machine.verify()
        rt.report = await self.goal_verifier.verify(session.goals, VerificationContext(session, self.content_store))
        self._emit(rt, ProgressEventType.GOALS_VERIFIED, rt.report.to_dict())

        failures = self.recovery.collect_failures(iteration)
        if failures:
            outcome = IterationOutcome.TOOLS_FAILED
        elif iteration.issued_tool_calls:
            outcome = IterationOutcome.TOOLS_SUCCEEDED
        else:
            outcome = IterationOutcome.NO_TOOL_CALLS

        if session.goals:
            goals_met = rt.report.all_satisfied
        else:
            goals_met = not iteration.issued_tool_calls

        terminal: Optional[TerminalStatus] = None
        error: Optional[ToolStreamError] = None
        note: Optional[str] = None
        if goals_met:
            terminal = TerminalStatus.SUCCESS
        elif n >= self.max_iterations:
            terminal = TerminalStatus.EXHAUSTED
            error = IterationBudgetExhausted(self.max_iterations, [g.id for g in rt.report.unmet])
        elif failures:
            try:
                attempt = self.recovery.record_attempt(session, failures)
            except RecoveryBudgetExhausted as e:
                terminal = TerminalStatus.FATAL
                error = e
            else:
                note = self.recovery.corrective_note(failures, attempt)
                session.state_machine.recover(f"{len(failures)} tool call(s) failed")
                self._emit(rt, ProgressEventType.RECOVERY_INJECTED, {
                    "attempt": attempt,
                    "retry_budget": self.recovery.retry_budget,
                    "failures": [f.to_dict() for f in failures],
                })
        if terminal is None and note is None:
            note = self._goal_reminder(rt.report)

        self._append_turn(rt, iteration, note)
        iteration.complete(outcome)
        await self._record(rt, iteration)
        rt.table.clear()
        self._emit(rt, ProgressEventType.ITERATION_COMPLETED, {
            "outcome": outcome.value,
            "tool_calls": len(iteration.issued_tool_calls),
            "failed": len(failures),
        })

        if terminal is not None:
            session.terminate(terminal, error)
        else:
            session.state_machine.think(f"iteration {n + 1}")

    # ------------------------------------------------------------------
    # Decoder and pool callbacks
    # ------------------------------------------------------------------

    def _on_tool_complete(self, rt: _SessionRuntime, buffer: ToolCallBuffer) -> str:
        """The single dispatch point: called once per completed tool call"""
        execution_id = rt.coordinator.dispatch(buffer)
        rt.session.current_iteration.issued_tool_calls.append(buffer)
        rt.execution_ids.append(execution_id)
        if len(rt.execution_ids) == 1:
            rt.session.state_machine.await_tools()
        return execution_id

    def _on_tool_failed(self, rt: _SessionRuntime, buffer: ToolCallBuffer, error: ToolStreamError) -> None:
        rt.session.current_iteration.issued_tool_calls.append(buffer)
        rt.parse_failures[buffer.id] = ToolExecutionResult.failure(
            buffer.id,
            ErrorKind.ARGUMENT_PARSE,
            error.message,
            tool_name=buffer.name,
        )
        logger.warning(f"[LoopController] Tool call {buffer.name} ({buffer.id}) not dispatched: {error.message}")
        self._emit(rt, ProgressEventType.TOOL_FAILED, {
            "tool_call_id": buffer.id,
            "tool_name": buffer.name,
            "error_kind": ErrorKind.ARGUMENT_PARSE.value,
            "error": error.message,
        })

    def _on_tool_started(self, rt: _SessionRuntime, item: WorkItem) -> None:
        self._emit(rt, ProgressEventType.TOOL_STARTED, {
            "tool_call_id": item.buffer_id,
            "tool_name": item.tool_name,
            "execution_id": item.execution_id,
        }, iteration=item.iteration)

    def _on_tool_result(self, rt: _SessionRuntime, item: WorkItem, result: ToolExecutionResult) -> None:
        event_type = ProgressEventType.TOOL_COMPLETED if result.success else ProgressEventType.TOOL_FAILED
        self._emit(rt, event_type, result.to_dict(), iteration=item.iteration)

    def _on_state_change(self, rt: _SessionRuntime, transition: StateTransition) -> None:
        self._emit(rt, ProgressEventType.STATE_CHANGED, transition.to_dict())

    def _relay(self, rt: _SessionRuntime, event: DecodedEvent) -> None:
        if event.event_type == DecodedEventType.TOOL_STARTED:
            self._emit(rt, ProgressEventType.TOOL_DETECTED, {
                "tool_call_id": event.buffer_id,
                "tool_name": event.payload.get("name"),
                "block_index": event.block_index,
            })
        elif event.event_type == DecodedEventType.TEXT_DELTA:
            self._emit(rt, ProgressEventType.TEXT_DELTA, {"text": event.payload.get("text", "")})

    # ------------------------------------------------------------------
    # Conversation
    # ------------------------------------------------------------------

    def _result_for(self, rt: _SessionRuntime, buffer: ToolCallBuffer) -> ToolExecutionResult:
        if buffer.id in rt.parse_failures:
            return rt.parse_failures[buffer.id]
        result = rt.pool.result(buffer.execution_id) if buffer.execution_id else None
        if result is None:
            return ToolExecutionResult.failure(
                buffer.id,
                ErrorKind.CANCELLED,
                "No result recorded",
                tool_name=buffer.name,
            )
        return result

    def _tool_result_block(self, buffer: ToolCallBuffer, result: ToolExecutionResult) -> Dict[str, Any]:
        if result.success:
            content = result.payload if isinstance(result.payload, str) else json.dumps(result.payload, default=str)
            return {"type": "tool_result", "tool_use_id": buffer.id, "content": content}

        return {
            "type": "tool_result",
            "tool_use_id": buffer.id,
            "content": self.recovery.describe_failure(FailureRecord.from_call(buffer, result)),
            "is_error": True,
        }

    def _goal_reminder(self, report: Optional[GoalReport]) -> str:
        unmet = report.unmet if report else []
        if not unmet:
            return "Continue with the request."
        lines = ["These goals are not met yet:"]
        for goal in unmet:
            detail = f" ({goal.detail})" if goal.detail else ""
            lines.append(f"- {goal.id}: {goal.description}{detail}")
        lines.append("Continue working on them.")
        return "\n".join(lines)

    def _append_turn(self, rt: _SessionRuntime, iteration: Iteration, note: Optional[str]) -> None:
        history = rt.session.conversation_history
        content = rt.decoder.turn.content_blocks()
        history.append({
            "role": "assistant",
            "content": content or [{"type": "text", "text": NO_OUTPUT_TEXT}],
        })

        blocks: List[Dict[str, Any]] = []
        for buffer in rt.decoder.turn.tool_calls:
            result = iteration.result_for(buffer.id) or self._result_for(rt, buffer)
            blocks.append(self._tool_result_block(buffer, result))
        if note:
            blocks.append({"type": "text", "text": note})
        if blocks:
            history.append({"role": "user", "content": blocks})

    # ------------------------------------------------------------------
    # Ledger, abort and termination
    # ------------------------------------------------------------------

    async def _record(self, rt: _SessionRuntime, iteration: Iteration) -> None:
        record = rt.ledger.record_iteration(iteration)
        try:
            await self.ledger_store.save_iteration(rt.ledger, record)
        except Exception as e:
            logger.log_error_with_context(e, context=f"ledger save_iteration {rt.session.id}")

    async def _abort_iteration(
        self,
        rt: _SessionRuntime,
        outcome: IterationOutcome,
        error: ToolStreamError,
    ) -> None:
        """Close the in-flight iteration after a model error or cancellation"""
        cancelled = await rt.pool.cancel_all()
        for result in cancelled:
            self._emit(rt, ProgressEventType.TOOL_FAILED, result.to_dict())

        iteration = rt.session.current_iteration
        if iteration is None or iteration.is_complete:
            return

        for buffer in rt.table.fail_open(lambda b: error):
            iteration.issued_tool_calls.append(buffer)
            rt.parse_failures[buffer.id] = ToolExecutionResult.failure(
                buffer.id,
                ErrorKind.CANCELLED,
                f"Tool call incomplete when the turn ended: {error.message}",
                tool_name=buffer.name,
            )

        iteration.results = [self._result_for(rt, b) for b in iteration.issued_tool_calls]
        if rt.decoder is not None:
            iteration.assistant_text = rt.decoder.turn.text
            iteration.stop_reason = rt.decoder.turn.stop_reason
        try:
            iteration.complete(outcome)
        except IterationStateError as e:
            logger.log_error_with_context(e, context=f"abort iteration {iteration.sequence_number}")
            return
        await self._record(rt, iteration)
        rt.table.clear()

    async def _finalize(self, rt: _SessionRuntime, started: float) -> None:
        session = rt.session
        error = session.error.to_dict() if session.error else None
        rt.ledger.close(session.terminal_status, session.retry_count, error)
        try:
            await self.ledger_store.save_session(rt.ledger)
        except Exception as e:
            logger.log_error_with_context(e, context=f"ledger save_session {session.id}")

        duration_ms = (time.perf_counter() - started) * 1000
        logger.log_session_event(
            session.id,
            f"terminated ({session.terminal_status.value})",
            terminal_status=session.terminal_status.value,
            iteration_count=len(session.iterations),
            retry_count=session.retry_count,
        )
        logger.log_performance("session", duration_ms, threshold_ms=SLOW_SESSION_MS, iterations=len(session.iterations))
        self._emit(rt, ProgressEventType.SESSION_TERMINATED, {
            "status": session.terminal_status.value,
            "iterations": len(session.iterations),
            "retry_count": session.retry_count,
            "error": error,
        })

        if session.terminal_status == TerminalStatus.SUCCESS:
            task = asyncio.create_task(self._deploy(rt))
            self._background.add(task)
            task.add_done_callback(self._background.discard)

    async def _deploy(self, rt: _SessionRuntime) -> None:
        session = rt.session
        try:
            accepted = await self.deployment_trigger.trigger(session.id, {
                "request": session.request,
                "iterations": len(session.iterations),
                "goals": rt.report.to_dict() if rt.report else None,
            })
        except Exception as e:
            logger.log_error_with_context(e, context=f"deployment trigger {session.id}")
            accepted = False
        self._emit(rt, ProgressEventType.DEPLOYMENT_TRIGGERED, {"accepted": accepted})

    def _result(self, rt: _SessionRuntime) -> SessionResult:
        session = rt.session
        return SessionResult(
            session_id=session.id,
            status=session.terminal_status,
            iterations=len(session.iterations),
            ledger=rt.ledger,
            goals=rt.report or GoalReport(list(session.goals)),
            retry_count=session.retry_count,
            error=session.error.to_dict() if session.error else None,
        )

    def _emit(
        self,
        rt: _SessionRuntime,
        event_type: ProgressEventType,
        data: Dict[str, Any],
        iteration: Optional[int] = None,
    ) -> None:
        current = rt.session.current_iteration
        if iteration is None and current is not None:
            iteration = current.sequence_number
        self.broadcaster.emit(event_type, rt.session.id, data, iteration=iteration)
