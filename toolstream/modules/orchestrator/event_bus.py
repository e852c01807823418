"""
Progress Broadcaster - Session Event Bus

Fire-and-forget pub/sub for agent loop checkpoints. Publishing never blocks
the loop and a failing subscriber never reaches it.

Architecture:
┌─────────────────────────────────────────────────────────────────┐
│                     PROGRESS BROADCASTER                         │
├─────────────────────────────────────────────────────────────────┤
│                                                                  │
│  Publishers:                    Subscribers:                     │
│  ├─ Loop Controller    ──────►  ├─ CLI progress view             │
│  ├─ Dispatch           ──────►  ├─ Session queues (SSE, tests)   │
│  └─ Executor Pool      ──────►  └─ Any handler (sync or async)   │
│                                                                  │
│  Event Types:                                                    │
│  • iteration_started   • tool_detected     • tool_dispatched     │
│  • tool_started        • tool_completed    • tool_failed         │
│  • dispatch_conflict   • recovery_injected • state_changed       │
│  • session_terminated                                            │
│                                                                  │
└─────────────────────────────────────────────────────────────────┘
"""

from typing import Dict, Any, List, Optional, Callable, Set, Union
from enum import Enum
from dataclasses import dataclass, field
from datetime import datetime
from collections import defaultdict, deque
import asyncio
import threading
import json

from toolstream.core.config import settings
from toolstream.core.logging_config import logger


class ProgressEventType(str, Enum):
    """Checkpoints reported by the agent loop"""

    SESSION_STARTED = "session_started"
    ITERATION_STARTED = "iteration_started"
    TEXT_DELTA = "text_delta"

    # Tool call lifecycle
    TOOL_DETECTED = "tool_detected"
    TOOL_DISPATCHED = "tool_dispatched"
    TOOL_STARTED = "tool_started"
    TOOL_COMPLETED = "tool_completed"
    TOOL_FAILED = "tool_failed"
    DISPATCH_CONFLICT = "dispatch_conflict"

    # Loop
    STATE_CHANGED = "state_changed"
    GOALS_VERIFIED = "goals_verified"
    RECOVERY_INJECTED = "recovery_injected"
    ITERATION_COMPLETED = "iteration_completed"
    SESSION_TERMINATED = "session_terminated"
    DEPLOYMENT_TRIGGERED = "deployment_triggered"


@dataclass
class ProgressEvent:
    """A progress checkpoint for one session"""
    type: ProgressEventType
    session_id: str
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.utcnow)
    iteration: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "session_id": self.session_id,
            "iteration": self.iteration,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)

    def to_sse(self) -> str:
        """Format for Server-Sent Events"""
        return f"data: {self.to_json()}\n\n"


# Handlers may be sync or return a coroutine
EventHandler = Callable[[ProgressEvent], Any]


class ProgressBroadcaster:
    """
    Non-blocking progress event bus.

    Features:
    - Wildcard, per-type and per-session subscriptions
    - Sync and async handlers
    - Per-session queues for streaming consumers
    - Bounded history
    """

    def __init__(self, max_history: Optional[int] = None, queue_size: Optional[int] = None):
        self._lock = threading.Lock()
        self._handlers: Dict[ProgressEventType, List[EventHandler]] = defaultdict(list)
        self._wildcard_handlers: List[EventHandler] = []
        self._session_handlers: Dict[str, List[EventHandler]] = defaultdict(list)
        self._queues: Dict[str, List[asyncio.Queue]] = defaultdict(list)
        self._history: deque = deque(maxlen=max_history or settings.PROGRESS_HISTORY_SIZE)
        self._queue_size = queue_size or settings.PROGRESS_QUEUE_SIZE
        self._pending: Set[asyncio.Task] = set()
        self._event_count = 0
        self._handler_errors = 0
        self._dropped = 0

    def subscribe(
        self,
        event_type: Union[ProgressEventType, str],
        handler: EventHandler,
        session_id: Optional[str] = None
    ):
        """
        Subscribe to events.

        Args:
            event_type: Event type to subscribe to, or "*" for all
            handler: Function (sync or async) called with each event
            session_id: Only receive events for this session (any type)
        """
        with self._lock:
            if session_id:
                self._session_handlers[session_id].append(handler)
            elif event_type == "*":
                self._wildcard_handlers.append(handler)
            else:
                self._handlers[ProgressEventType(event_type)].append(handler)

    def unsubscribe(
        self,
        event_type: Union[ProgressEventType, str],
        handler: EventHandler,
        session_id: Optional[str] = None
    ):
        with self._lock:
            if session_id:
                handlers = self._session_handlers.get(session_id, [])
            elif event_type == "*":
                handlers = self._wildcard_handlers
            else:
                handlers = self._handlers[ProgressEventType(event_type)]
            if handler in handlers:
                handlers.remove(handler)

    async def publish(self, event: ProgressEvent):
        """
        Deliver an event to all subscribers.

        Handlers are called in order:
        1. Session handlers
        2. Event-type handlers
        3. Wildcard handlers
        """
        with self._lock:
            self._event_count += 1
            self._history.append(event)
            handlers = list(self._session_handlers.get(event.session_id, []))
            handlers.extend(self._handlers[event.type])
            handlers.extend(self._wildcard_handlers)
            queues = list(self._queues.get(event.session_id, []))

        for handler in handlers:
            try:
                result = handler(event)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                self._handler_errors += 1
                logger.error(f"[ProgressBroadcaster] Handler error for {event.type.value}: {e}")

        for queue in queues:
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                self._dropped += 1
                logger.warning(f"[ProgressBroadcaster] Queue full for {event.session_id}, dropping {event.type.value}")

    def emit(
        self,
        event_type: ProgressEventType,
        session_id: str,
        data: Optional[Dict[str, Any]] = None,
        iteration: Optional[int] = None
    ) -> None:
        """
        Fire-and-forget publish. Delivery runs as a separate task on the
        running loop; without a loop the event is only recorded in history.
        """
        event = ProgressEvent(type=event_type, session_id=session_id, data=data or {}, iteration=iteration)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            with self._lock:
                self._event_count += 1
                self._history.append(event)
            logger.debug(f"[ProgressBroadcaster] No running loop, {event_type.value} recorded only")
            return

        task = loop.create_task(self.publish(event))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def drain(self):
        """Wait until every scheduled delivery has finished"""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    # ========== Session Queues ==========

    def create_queue(self, session_id: str, max_size: Optional[int] = None) -> asyncio.Queue:
        """Create a queue that receives every event of one session"""
        queue: asyncio.Queue = asyncio.Queue(maxsize=max_size or self._queue_size)
        with self._lock:
            self._queues[session_id].append(queue)
        return queue

    def remove_queue(self, session_id: str, queue: asyncio.Queue):
        with self._lock:
            queues = self._queues.get(session_id, [])
            if queue in queues:
                queues.remove(queue)
            if not queues:
                self._queues.pop(session_id, None)

    async def stream(self, session_id: str):
        """
        Async generator of SSE frames for one session.
        Ends after the session_terminated event.
        """
        queue = self.create_queue(session_id)
        try:
            while True:
                event = await queue.get()
                yield event.to_sse()
                if event.type == ProgressEventType.SESSION_TERMINATED:
                    break
        finally:
            self.remove_queue(session_id, queue)

    # ========== History & Debugging ==========

    def get_history(
        self,
        session_id: Optional[str] = None,
        event_type: Optional[ProgressEventType] = None,
        limit: int = 100
    ) -> List[ProgressEvent]:
        """Get event history with optional filters"""
        with self._lock:
            events = list(self._history)

        if session_id:
            events = [e for e in events if e.session_id == session_id]
        if event_type:
            events = [e for e in events if e.type == event_type]
        return events[-limit:]

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            event_counts: Dict[str, int] = defaultdict(int)
            for event in self._history:
                event_counts[event.type.value] += 1

            return {
                "total_events": self._event_count,
                "history_size": len(self._history),
                "handler_count": sum(len(h) for h in self._handlers.values()),
                "wildcard_handlers": len(self._wildcard_handlers),
                "handler_errors": self._handler_errors,
                "dropped_events": self._dropped,
                "active_queues": sum(len(q) for q in self._queues.values()),
                "event_counts": dict(event_counts),
            }


_broadcaster: Optional[ProgressBroadcaster] = None
_broadcaster_lock = threading.Lock()


def get_broadcaster() -> ProgressBroadcaster:
    """Get the global progress broadcaster"""
    global _broadcaster
    if _broadcaster is None:
        with _broadcaster_lock:
            if _broadcaster is None:
                _broadcaster = ProgressBroadcaster()
    return _broadcaster
