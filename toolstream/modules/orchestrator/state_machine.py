"""
State Machines for the Agent Loop

Two machines keep the loop predictable:
- Session lifecycle: running → awaiting_tools → verifying → (running | recovering | terminated)
- Tool call buffer lifecycle: open → complete → dispatched → executing → done,
  with failed reachable from any non-terminal state

Architecture:
┌─────────────────────────────────────────────────────────────────┐
│                      SESSION LIFECYCLE                           │
├─────────────────────────────────────────────────────────────────┤
│  RUNNING → AWAITING_TOOLS → VERIFYING → TERMINATED              │
│     ↑                          │                                 │
│     └──────── RECOVERING ◄─────┘                                 │
└─────────────────────────────────────────────────────────────────┘

All transitions are logged for debugging. Cancellation forces TERMINATED
from any state.
"""

from typing import Dict, Any, Optional, Callable, List, Set
from enum import Enum
from dataclasses import dataclass, field
from datetime import datetime
import threading
from collections import deque

from toolstream.core.logging_config import logger


class SessionStatus(str, Enum):
    """Agent session states (RUNNING is the Thinking phase)"""
    RUNNING = "running"
    AWAITING_TOOLS = "awaiting_tools"
    VERIFYING = "verifying"
    RECOVERING = "recovering"
    TERMINATED = "terminated"


class BufferStatus(str, Enum):
    """Tool call buffer states"""
    OPEN = "open"
    COMPLETE = "complete"
    DISPATCHED = "dispatched"
    EXECUTING = "executing"
    DONE = "done"
    FAILED = "failed"


class TerminalStatus(str, Enum):
    """How a session ended"""
    SUCCESS = "success"
    EXHAUSTED = "exhausted"
    FATAL = "fatal"
    CANCELLED = "cancelled"


# Valid state transitions
SESSION_TRANSITIONS: Dict[SessionStatus, Set[SessionStatus]] = {
    SessionStatus.RUNNING: {SessionStatus.AWAITING_TOOLS, SessionStatus.VERIFYING, SessionStatus.TERMINATED},
    SessionStatus.AWAITING_TOOLS: {SessionStatus.VERIFYING, SessionStatus.TERMINATED},
    SessionStatus.VERIFYING: {SessionStatus.RUNNING, SessionStatus.RECOVERING, SessionStatus.TERMINATED},
    SessionStatus.RECOVERING: {SessionStatus.RUNNING, SessionStatus.TERMINATED},
    SessionStatus.TERMINATED: set(),
}

# Forward-only; failed is reachable from every non-terminal state
BUFFER_TRANSITIONS: Dict[BufferStatus, Set[BufferStatus]] = {
    BufferStatus.OPEN: {BufferStatus.COMPLETE, BufferStatus.FAILED},
    BufferStatus.COMPLETE: {BufferStatus.DISPATCHED, BufferStatus.FAILED},
    BufferStatus.DISPATCHED: {BufferStatus.EXECUTING, BufferStatus.DONE, BufferStatus.FAILED},
    BufferStatus.EXECUTING: {BufferStatus.DONE, BufferStatus.FAILED},
    BufferStatus.DONE: set(),
    BufferStatus.FAILED: set(),
}

TERMINAL_BUFFER_STATES = {BufferStatus.DONE, BufferStatus.FAILED}


@dataclass
class StateTransition:
    """Record of a state transition"""
    from_state: str
    to_state: str
    timestamp: datetime = field(default_factory=datetime.utcnow)
    reason: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "from": self.from_state,
            "to": self.to_state,
            "timestamp": self.timestamp.isoformat(),
            "reason": self.reason,
            "metadata": self.metadata
        }


class StateMachine:
    """
    Generic state machine with validation and callbacks.

    Features:
    - Validates transitions against allowed transitions
    - Maintains transition history
    - Supports callbacks on state change
    """

    def __init__(
        self,
        name: str,
        initial_state: Enum,
        transitions: Dict[Enum, Set[Enum]],
        max_history: int = 100
    ):
        self.name = name
        self._state = initial_state
        self._transitions = transitions
        self._lock = threading.RLock()
        self._history: deque = deque(maxlen=max_history)
        self._callbacks: List[Callable] = []

    @property
    def state(self) -> Enum:
        """Get current state"""
        with self._lock:
            return self._state

    def can_transition(self, to_state: Enum) -> bool:
        """Check if transition is valid"""
        with self._lock:
            allowed = self._transitions.get(self._state, set())
            return to_state in allowed

    def transition(
        self,
        to_state: Enum,
        reason: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        force: bool = False
    ) -> bool:
        """
        Transition to new state.

        Args:
            to_state: Target state
            reason: Why the transition is happening
            metadata: Additional data about the transition
            force: Skip validation (used for cancellation)

        Returns:
            True if transition succeeded
        """
        with self._lock:
            if not force and not self.can_transition(to_state):
                allowed = self._transitions.get(self._state, set())
                logger.warning(
                    f"[{self.name}] Invalid transition: {self._state.value} → {to_state.value}. "
                    f"Allowed: {[s.value for s in allowed]}"
                )
                return False

            transition = StateTransition(
                from_state=self._state.value,
                to_state=to_state.value,
                reason=reason,
                metadata=metadata or {}
            )
            self._history.append(transition)

            old_state = self._state
            self._state = to_state

            logger.debug(
                f"[{self.name}] State transition: {old_state.value} → {to_state.value}"
                + (f" ({reason})" if reason else "")
            )

        # Call callbacks outside lock
        for callback in self._callbacks:
            try:
                callback(old_state, to_state, transition)
            except Exception as e:
                logger.error(f"[{self.name}] Callback error: {e}")

        return True

    def on_transition(self, callback: Callable):
        """Register callback for state transitions"""
        self._callbacks.append(callback)

    def get_history(self, limit: int = 10) -> List[StateTransition]:
        """Get recent transition history"""
        with self._lock:
            return list(self._history)[-limit:]


class SessionStateMachine(StateMachine):
    """State machine for one agent session"""

    def __init__(self, session_id: str):
        super().__init__(
            name=f"Session:{session_id[:8]}",
            initial_state=SessionStatus.RUNNING,
            transitions=SESSION_TRANSITIONS
        )
        self.session_id = session_id

    @property
    def is_terminated(self) -> bool:
        return self.state == SessionStatus.TERMINATED

    def await_tools(self) -> bool:
        return self.transition(SessionStatus.AWAITING_TOOLS, "first tool call dispatched")

    def verify(self) -> bool:
        return self.transition(SessionStatus.VERIFYING, "iteration results collected")

    def recover(self, reason: str) -> bool:
        return self.transition(SessionStatus.RECOVERING, reason)

    def think(self, reason: str = "next iteration") -> bool:
        return self.transition(SessionStatus.RUNNING, reason)

    def terminate(self, terminal_status: TerminalStatus, reason: Optional[str] = None) -> bool:
        return self.transition(
            SessionStatus.TERMINATED,
            reason or terminal_status.value,
            metadata={"terminal_status": terminal_status.value},
            force=terminal_status == TerminalStatus.CANCELLED
        )
