"""
Tool Executor Pool

- ToolRegistry: named tools with pydantic argument schemas
- ToolExecutor: uniform execute(tool_name, args) -> ToolExecutionResult
- ToolExecutorPool: per-session workers pulling committed work items

A tool failure is always a result, never an exception: handler errors,
unknown tools and timeouts are reported through error_kind so the loop
can hand them to the recovery manager.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Type
import asyncio
import inspect
import time

from pydantic import BaseModel, ValidationError

from toolstream.core.config import settings
from toolstream.core.exceptions import (
    ArgumentParseError,
    BufferTransitionError,
    ToolExecutionError,
    ToolStreamError,
    ToolTimeoutError,
    UnknownToolError,
)
from toolstream.core.logging_config import logger, set_tool_call_id
from toolstream.modules.orchestrator.buffer_table import format_validation_error
from toolstream.modules.orchestrator.dispatch import WorkItem, WorkQueue
from toolstream.modules.orchestrator.session import AgentSession, ErrorKind, ToolExecutionResult
from toolstream.modules.orchestrator.state_machine import BufferStatus


@dataclass
class ToolContext:
    """Per-call context handed to tool handlers"""
    session_id: str
    tool_call_id: str
    execution_id: Optional[str] = None
    side_effects: List[str] = field(default_factory=list)
    # Owning session; None when a tool runs outside the agent loop
    session: Optional[AgentSession] = None

    def record_side_effect(self, description: str) -> None:
        """Report a mutation as soon as it is applied"""
        self.side_effects.append(description)


# handler(args, context) -> payload; args is the pydantic model when one is registered
ToolHandler = Callable[[Any, ToolContext], Any]


@dataclass
class ToolSpec:
    name: str
    description: str
    handler: ToolHandler
    args_model: Optional[Type[BaseModel]] = None
    timeout: Optional[float] = None
    resource_key: Optional[Callable[[Dict[str, Any]], Optional[str]]] = None

    def to_anthropic(self) -> Dict[str, Any]:
        """Tool definition for the Messages API"""
        if self.args_model is not None:
            schema = self.args_model.model_json_schema()
            schema.pop("title", None)
        else:
            schema = {"type": "object", "properties": {}}
        return {"name": self.name, "description": self.description, "input_schema": schema}


class ToolRegistry:
    """Named tools available to a session"""

    def __init__(self):
        self._tools: Dict[str, ToolSpec] = {}

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def register(self, spec: ToolSpec) -> ToolSpec:
        if spec.name in self._tools:
            raise ValueError(f"Tool already registered: {spec.name}")
        self._tools[spec.name] = spec
        logger.debug(f"[ToolRegistry] Registered {spec.name}")
        return spec

    def tool(
        self,
        name: str,
        description: str,
        args_model: Optional[Type[BaseModel]] = None,
        timeout: Optional[float] = None,
        resource_key: Optional[Callable[[Dict[str, Any]], Optional[str]]] = None,
    ):
        """Decorator form of register()"""
        def decorator(handler: ToolHandler) -> ToolHandler:
            self.register(ToolSpec(name, description, handler, args_model, timeout, resource_key))
            return handler
        return decorator

    def get(self, name: str) -> Optional[ToolSpec]:
        return self._tools.get(name)

    def names(self) -> List[str]:
        return list(self._tools)

    def schema_for(self, name: str) -> Optional[Type[BaseModel]]:
        spec = self._tools.get(name)
        return spec.args_model if spec else None

    def resource_key_for(self, name: str, arguments: Dict[str, Any]) -> Optional[str]:
        spec = self._tools.get(name)
        if spec is None or spec.resource_key is None:
            return None
        try:
            return spec.resource_key(arguments)
        except (KeyError, TypeError, ValueError, ToolStreamError) as e:
            logger.warning(f"[ToolRegistry] No resource key for {name}: {e}")
            return None

    def definitions(self) -> List[Dict[str, Any]]:
        return [spec.to_anthropic() for spec in self._tools.values()]


class ToolExecutor:
    """Runs one tool call with its timeout and normalizes the outcome"""

    def __init__(
        self,
        registry: ToolRegistry,
        default_timeout: Optional[float] = None,
        timeouts: Optional[Dict[str, float]] = None,
    ):
        self.registry = registry
        self.default_timeout = default_timeout or settings.TOOL_DEFAULT_TIMEOUT
        self.timeouts = timeouts if timeouts is not None else settings.get_tool_timeouts()

    def timeout_for(self, spec: ToolSpec) -> float:
        if spec.name in self.timeouts:
            return self.timeouts[spec.name]
        return spec.timeout or self.default_timeout

    async def execute(
        self,
        tool_name: str,
        args: Dict[str, Any],
        context: Optional[ToolContext] = None,
        timeout: Optional[float] = None,
    ) -> ToolExecutionResult:
        ctx = context or ToolContext(session_id="", tool_call_id=f"call_{int(time.time() * 1000)}")
        started = time.perf_counter()
        set_tool_call_id(ctx.tool_call_id)

        def finish(**kwargs) -> ToolExecutionResult:
            result = ToolExecutionResult(
                tool_call_id=ctx.tool_call_id,
                execution_id=ctx.execution_id,
                tool_name=tool_name,
                duration=time.perf_counter() - started,
                side_effects=list(ctx.side_effects),
                **kwargs
            )
            logger.log_tool_event(
                tool_name,
                "succeeded" if result.success else f"failed ({result.error_kind.value})",
                duration_ms=result.duration * 1000,
            )
            return result

        spec = self.registry.get(tool_name)
        if spec is None:
            error = UnknownToolError(tool_name)
            return finish(success=False, error_kind=ErrorKind.UNKNOWN_TOOL, error_message=error.message)

        limit = timeout or self.timeout_for(spec)
        try:
            payload = await asyncio.wait_for(self._invoke(spec, args, ctx), timeout=limit)
        except asyncio.TimeoutError:
            error = ToolTimeoutError(tool_name, limit)
            logger.warning(f"[ToolExecutor] {error.message}; cancelled")
            return finish(success=False, error_kind=ErrorKind.TIMEOUT, error_message=error.message)
        except ArgumentParseError as e:
            return finish(success=False, error_kind=ErrorKind.ARGUMENT_PARSE, error_message=e.message)
        except ToolStreamError as e:
            return finish(success=False, error_kind=ErrorKind.EXECUTION, error_message=e.message)
        except Exception as e:
            logger.log_error_with_context(e, context=f"tool {tool_name}")
            return finish(
                success=False,
                error_kind=ErrorKind.EXECUTION,
                error_message=f"{type(e).__name__}: {e}",
            )

        if isinstance(payload, dict) and payload.get("success") is False:
            error = ToolExecutionError(str(payload.get("error") or "Tool reported failure"), tool_name)
            return finish(success=False, error_kind=ErrorKind.EXECUTION, error_message=error.message, payload=payload)

        return finish(success=True, payload=payload)

    async def _invoke(self, spec: ToolSpec, args: Dict[str, Any], ctx: ToolContext) -> Any:
        call_args: Any = args
        if spec.args_model is not None:
            try:
                call_args = spec.args_model.model_validate(args)
            except ValidationError as e:
                raise ArgumentParseError(
                    format_validation_error(e),
                    tool_name=spec.name,
                    tool_call_id=ctx.tool_call_id,
                ) from None

        if inspect.iscoroutinefunction(spec.handler):
            return await spec.handler(call_args, ctx)

        # Sync handlers run in a thread; a timeout cannot interrupt them
        result = await asyncio.to_thread(spec.handler, call_args, ctx)
        if inspect.isawaitable(result):
            result = await result
        return result


WORKER_STOP_POLL = 0.1  # seconds between cancel requests to a stopping worker

ResultCallback = Callable[[WorkItem, ToolExecutionResult], None]
StartCallback = Callable[[WorkItem], None]


class ToolExecutorPool:
    """
    Per-session worker pool.

    Workers only pull from the work queue. A dependent item waits until
    every prerequisite's result is recorded; if one failed, the dependent
    item is skipped with DependencyFailed.
    """

    def __init__(
        self,
        session_id: str,
        executor: ToolExecutor,
        queue: WorkQueue,
        max_concurrency: Optional[int] = None,
        on_start: Optional[StartCallback] = None,
        on_result: Optional[ResultCallback] = None,
        session: Optional[AgentSession] = None,
    ):
        self.session_id = session_id
        self.session = session
        self.executor = executor
        self.queue = queue
        self.max_concurrency = max_concurrency or settings.TOOL_MAX_CONCURRENCY
        self._on_start = on_start
        self._on_result = on_result
        self._workers: List[asyncio.Task] = []
        self._results: Dict[str, ToolExecutionResult] = {}
        self._done: Dict[str, asyncio.Event] = {}
        self._stopping = False

    @property
    def results(self) -> Dict[str, ToolExecutionResult]:
        return dict(self._results)

    @property
    def running(self) -> bool:
        return bool(self._workers)

    def result(self, execution_id: str) -> Optional[ToolExecutionResult]:
        return self._results.get(execution_id)

    def start(self) -> None:
        if self._workers:
            return
        self._stopping = False
        for n in range(self.max_concurrency):
            self._workers.append(asyncio.create_task(self._worker(n), name=f"tool-worker-{self.session_id[:8]}-{n}"))
        logger.debug(f"[ExecutorPool] Started {self.max_concurrency} workers for {self.session_id}")

    def _event(self, execution_id: str) -> asyncio.Event:
        event = self._done.get(execution_id)
        if event is None:
            event = self._done[execution_id] = asyncio.Event()
        return event

    async def _worker(self, n: int) -> None:
        while not self._stopping:
            item = await self.queue.get()
            try:
                await self._run(item)
            finally:
                self.queue.task_done()

    async def _run(self, item: WorkItem) -> None:
        ctx = ToolContext(
            session_id=self.session_id,
            tool_call_id=item.buffer_id,
            execution_id=item.execution_id,
            session=self.session,
        )
        try:
            for dependency in item.depends_on:
                await self._event(dependency).wait()

            failed = [d for d in item.depends_on if not self._results[d].success]
            if failed:
                self._record(item, ToolExecutionResult.failure(
                    item.buffer_id,
                    ErrorKind.DEPENDENCY_FAILED,
                    f"Not executed: prerequisite {', '.join(failed)} failed",
                    execution_id=item.execution_id,
                    tool_name=item.tool_name,
                ))
                return

            item.buffer.advance(BufferStatus.EXECUTING)
            if self._on_start:
                self._notify(self._on_start, item)
            result = await self.executor.execute(item.tool_name, item.arguments, ctx)
            self._record(item, result)
        except asyncio.CancelledError:
            if item.execution_id not in self._results:
                self._record(item, self._cancelled(item, ctx.side_effects))
            raise
        except Exception as e:
            logger.log_error_with_context(e, context=f"tool worker {item.execution_id}")
            if item.execution_id not in self._results:
                self._record(item, ToolExecutionResult.failure(
                    item.buffer_id,
                    ErrorKind.EXECUTION,
                    f"{type(e).__name__}: {e}",
                    execution_id=item.execution_id,
                    tool_name=item.tool_name,
                    side_effects=list(ctx.side_effects),
                ))

    def _cancelled(self, item: WorkItem, side_effects: List[str]) -> ToolExecutionResult:
        return ToolExecutionResult.failure(
            item.buffer_id,
            ErrorKind.CANCELLED,
            "Cancelled before completion" if side_effects or item.buffer.status == BufferStatus.EXECUTING
            else "Cancelled before start",
            execution_id=item.execution_id,
            tool_name=item.tool_name,
            side_effects=list(side_effects),
        )

    def _record(self, item: WorkItem, result: ToolExecutionResult) -> None:
        self._results[item.execution_id] = result
        if not item.buffer.is_terminal:
            try:
                item.buffer.advance(BufferStatus.DONE if result.success else BufferStatus.FAILED)
            except BufferTransitionError as e:
                logger.log_error_with_context(e, context=f"tool worker {item.execution_id}")
        if self._on_result:
            self._notify(self._on_result, item, result)
        self._event(item.execution_id).set()

    def _notify(self, callback: Callable, *args) -> None:
        try:
            callback(*args)
        except Exception as e:
            logger.log_error_with_context(e, context="executor pool callback")

    async def wait_for(self, execution_ids: List[str]) -> List[ToolExecutionResult]:
        """Suspend until every listed execution has a recorded result"""
        if execution_ids:
            await asyncio.gather(*(self._event(i).wait() for i in execution_ids))
        return [self._results[i] for i in execution_ids]

    async def cancel_all(self) -> List[ToolExecutionResult]:
        """
        Cancel queued and in-flight work. Every affected item gets a
        Cancelled result carrying the side effects reported so far.
        """
        before = set(self._results)
        for item in self.queue.drain():
            self._record(item, self._cancelled(item, []))

        await self._stop_workers()

        cancelled = [
            r for eid, r in self._results.items()
            if eid not in before and r.error_kind == ErrorKind.CANCELLED
        ]
        if cancelled:
            logger.warning(f"[ExecutorPool] Cancelled {len(cancelled)} tool calls for {self.session_id}")
        return cancelled

    async def shutdown(self) -> None:
        """Stop idle workers"""
        await self._stop_workers()

    async def _stop_workers(self) -> None:
        self._stopping = True
        pending = set(self._workers)
        while pending:
            for task in pending:
                task.cancel()
            # A handler that finishes as it is cancelled absorbs the request; cancel again
            _, pending = await asyncio.wait(pending, timeout=WORKER_STOP_POLL)
        self._workers.clear()
