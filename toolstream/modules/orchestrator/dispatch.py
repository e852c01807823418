"""
Tool Dispatch Coordinator

The block-stop callback is the only place a tool call becomes work:

    StreamDecoder ──on_tool_complete──► DispatchCoordinator.dispatch(buffer)
                                               │ (exactly once per buffer)
                                               ▼
                                           WorkQueue ──► executor pool workers (pull only)

A repeated dispatch of the same buffer never produces a second execution.
It is rejected loudly: error log, conflict record and a progress event.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple
import asyncio
import uuid

from toolstream.core.exceptions import BufferTransitionError, DispatchConflictError
from toolstream.core.logging_config import logger
from toolstream.modules.orchestrator.event_bus import ProgressBroadcaster, ProgressEventType
from toolstream.modules.orchestrator.session import ToolCallBuffer
from toolstream.modules.orchestrator.state_machine import BufferStatus


ResourceKeyLookup = Callable[[str, Dict[str, Any]], Optional[str]]


@dataclass
class WorkItem:
    """One committed execution request"""
    execution_id: str
    buffer: ToolCallBuffer
    depends_on: Tuple[str, ...] = ()
    iteration: int = 0
    enqueued_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def buffer_id(self) -> str:
        return self.buffer.id

    @property
    def tool_name(self) -> str:
        return self.buffer.name

    @property
    def arguments(self) -> Dict[str, Any]:
        return self.buffer.arguments or {}


class WorkQueue:
    """
    FIFO of work items that accepts each execution id and each buffer id
    only once for its whole lifetime.
    """

    def __init__(self):
        self._queue: asyncio.Queue = asyncio.Queue()
        self._execution_ids: Set[str] = set()
        self._buffer_ids: Set[str] = set()

    def put(self, item: WorkItem) -> None:
        """
        Raises:
            DispatchConflictError: execution id or buffer id already enqueued
        """
        if item.execution_id in self._execution_ids or item.buffer_id in self._buffer_ids:
            raise DispatchConflictError(item.buffer_id, item.execution_id)
        self._execution_ids.add(item.execution_id)
        self._buffer_ids.add(item.buffer_id)
        self._queue.put_nowait(item)

    async def get(self) -> WorkItem:
        return await self._queue.get()

    def task_done(self) -> None:
        self._queue.task_done()

    def qsize(self) -> int:
        return self._queue.qsize()

    def empty(self) -> bool:
        return self._queue.empty()

    @property
    def enqueued_count(self) -> int:
        return len(self._execution_ids)

    def drain(self) -> List[WorkItem]:
        """Remove and return every item no worker has picked up yet"""
        items = []
        while True:
            try:
                items.append(self._queue.get_nowait())
            except asyncio.QueueEmpty:
                break
            self._queue.task_done()
        return items


class DispatchCoordinator:
    """
    Converts completed buffers into work items, exactly once per buffer.

    Args:
        session_id: owning session
        queue: the session's work queue
        resource_key: (tool_name, arguments) -> resource key; calls touching
            the same key in one iteration run in issuance order
        broadcaster: progress sink
        strict: raise DispatchConflictError on duplicates instead of
            returning the original execution id
    """

    def __init__(
        self,
        session_id: str,
        queue: WorkQueue,
        resource_key: Optional[ResourceKeyLookup] = None,
        broadcaster: Optional[ProgressBroadcaster] = None,
        strict: bool = False,
    ):
        self.session_id = session_id
        self.queue = queue
        self._resource_key = resource_key
        self._broadcaster = broadcaster
        self.strict = strict
        self.iteration = 0
        self.conflicts: List[DispatchConflictError] = []
        self._executions: Dict[str, str] = {}  # buffer id -> execution id
        self._dispatched: Set[str] = set()
        self._resource_owners: Dict[str, str] = {}  # resource key -> last execution id

    @property
    def dispatched_count(self) -> int:
        return len(self._executions)

    def execution_id_for(self, buffer_id: str) -> Optional[str]:
        return self._executions.get(buffer_id)

    def begin_iteration(self, sequence_number: int) -> None:
        self.iteration = sequence_number
        self._resource_owners.clear()

    def dispatch(self, buffer: ToolCallBuffer, depends_on: Optional[Iterable[str]] = None) -> str:
        """
        Commit a completed buffer for execution.

        Returns:
            The execution id. A repeated call for the same buffer returns
            the original id and enqueues nothing.

        Raises:
            BufferTransitionError: the buffer is not complete
            DispatchConflictError: duplicate dispatch in strict mode
        """
        existing = self._executions.get(buffer.id)
        if existing is not None:
            return self._reject(buffer, existing)

        if buffer.status != BufferStatus.COMPLETE:
            raise BufferTransitionError(buffer.id, buffer.status.value, BufferStatus.DISPATCHED.value)

        execution_id = f"exec_{uuid.uuid4().hex[:16]}"
        dependencies = self._resolve_dependencies(buffer, execution_id, depends_on)

        item = WorkItem(
            execution_id=execution_id,
            buffer=buffer,
            depends_on=tuple(dependencies),
            iteration=self.iteration,
        )
        self.queue.put(item)
        buffer.execution_id = execution_id
        buffer.advance(BufferStatus.DISPATCHED)
        self._executions[buffer.id] = execution_id
        self._dispatched.add(execution_id)

        logger.info(
            f"[Dispatch] {buffer.name} ({buffer.id}) → {execution_id}"
            + (f" after {', '.join(dependencies)}" if dependencies else "")
        )
        if self._broadcaster:
            self._broadcaster.emit(
                ProgressEventType.TOOL_DISPATCHED,
                self.session_id,
                {
                    "tool_call_id": buffer.id,
                    "tool_name": buffer.name,
                    "execution_id": execution_id,
                    "depends_on": list(dependencies),
                },
                iteration=self.iteration,
            )
        return execution_id

    def _resolve_dependencies(
        self,
        buffer: ToolCallBuffer,
        execution_id: str,
        depends_on: Optional[Iterable[str]],
    ) -> List[str]:
        dependencies: List[str] = []
        for dep in depends_on or ():
            if dep in self._dispatched:
                if dep not in dependencies:
                    dependencies.append(dep)
            else:
                logger.warning(f"[Dispatch] Ignoring unknown dependency {dep} for {buffer.id}")

        key = self._resource_key(buffer.name, buffer.arguments or {}) if self._resource_key else None
        if key:
            owner = self._resource_owners.get(key)
            if owner and owner not in dependencies:
                dependencies.append(owner)
            self._resource_owners[key] = execution_id
        return dependencies

    def _reject(self, buffer: ToolCallBuffer, existing: str) -> str:
        error = DispatchConflictError(buffer.id, existing)
        self.conflicts.append(error)
        logger.error(
            f"[Dispatch] {error.message}; duplicate rejected",
            extra={"event_type": "dispatch_conflict", **error.details}
        )
        if self._broadcaster:
            self._broadcaster.emit(
                ProgressEventType.DISPATCH_CONFLICT,
                self.session_id,
                error.to_dict(),
                iteration=self.iteration,
            )
        if self.strict:
            raise error
        return existing
