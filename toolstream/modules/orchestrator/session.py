"""
Session entities: tool call buffers, tool results, iterations and sessions.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
import uuid

from toolstream.core.exceptions import (
    BufferTransitionError,
    IterationStateError,
    ToolStreamError,
)
from toolstream.modules.orchestrator.state_machine import (
    BUFFER_TRANSITIONS,
    TERMINAL_BUFFER_STATES,
    BufferStatus,
    SessionStateMachine,
    SessionStatus,
    TerminalStatus,
)


class ErrorKind(str, Enum):
    """Why a tool call did not succeed"""
    ARGUMENT_PARSE = "ArgumentParseError"
    EXECUTION = "ToolExecutionError"
    TIMEOUT = "ToolTimeoutError"
    UNKNOWN_TOOL = "UnknownTool"
    DEPENDENCY_FAILED = "DependencyFailed"
    CANCELLED = "Cancelled"


class IterationOutcome(str, Enum):
    TOOLS_SUCCEEDED = "tools_succeeded"
    TOOLS_FAILED = "tools_failed"
    NO_TOOL_CALLS = "no_tool_calls"
    CANCELLED = "cancelled"
    MODEL_ERROR = "model_error"


@dataclass
class ToolCallBuffer:
    """In-progress accumulation of one tool call's arguments"""
    id: str
    name: str
    stream_block_index: int
    partial_arguments: str = ""
    status: BufferStatus = BufferStatus.OPEN
    created_at: datetime = field(default_factory=datetime.utcnow)
    arguments: Optional[Dict[str, Any]] = None
    error: Optional[ToolStreamError] = None
    execution_id: Optional[str] = None
    issue_order: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_BUFFER_STATES

    def advance(self, to_status: BufferStatus) -> None:
        """Move status forward; anything else is an invariant break"""
        if to_status not in BUFFER_TRANSITIONS[self.status]:
            raise BufferTransitionError(self.id, self.status.value, to_status.value)
        self.status = to_status

    def fail(self, error: ToolStreamError) -> None:
        self.advance(BufferStatus.FAILED)
        self.error = error

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "stream_block_index": self.stream_block_index,
            "status": self.status.value,
            "arguments": self.arguments,
            "execution_id": self.execution_id,
            "error": self.error.to_dict() if self.error else None,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class ToolExecutionResult:
    """Outcome of one tool call, successful or not"""
    tool_call_id: str
    success: bool
    payload: Any = None
    error_kind: Optional[ErrorKind] = None
    error_message: Optional[str] = None
    duration: float = 0.0
    execution_id: Optional[str] = None
    tool_name: Optional[str] = None
    side_effects: List[str] = field(default_factory=list)

    @classmethod
    def failure(
        cls,
        tool_call_id: str,
        error_kind: ErrorKind,
        message: str,
        **kwargs
    ) -> "ToolExecutionResult":
        return cls(
            tool_call_id=tool_call_id,
            success=False,
            error_kind=error_kind,
            error_message=message,
            **kwargs
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tool_call_id": self.tool_call_id,
            "tool_name": self.tool_name,
            "success": self.success,
            "payload": self.payload,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "error_message": self.error_message,
            "duration": round(self.duration, 4),
            "execution_id": self.execution_id,
            "side_effects": list(self.side_effects),
        }


@dataclass
class Iteration:
    """One model turn plus the tool executions it triggered"""
    sequence_number: int
    goal_snapshot: List[Dict[str, Any]] = field(default_factory=list)
    issued_tool_calls: List[ToolCallBuffer] = field(default_factory=list)
    results: List[ToolExecutionResult] = field(default_factory=list)
    started_at: datetime = field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = None
    outcome: Optional[IterationOutcome] = None
    assistant_text: str = ""
    stop_reason: Optional[str] = None

    @property
    def is_complete(self) -> bool:
        return self.completed_at is not None

    def result_for(self, tool_call_id: str) -> Optional[ToolExecutionResult]:
        for result in self.results:
            if result.tool_call_id == tool_call_id:
                return result
        return None

    def pending_calls(self) -> List[ToolCallBuffer]:
        return [b for b in self.issued_tool_calls if not b.is_terminal]

    def failed_calls(self) -> List[ToolCallBuffer]:
        return [b for b in self.issued_tool_calls if b.status == BufferStatus.FAILED]

    def complete(self, outcome: IterationOutcome) -> None:
        pending = self.pending_calls()
        if pending:
            raise IterationStateError(self.sequence_number, [b.id for b in pending])
        self.outcome = outcome
        self.completed_at = datetime.utcnow()


@dataclass
class AgentSession:
    """One unit of user work, from request to terminal status"""
    request: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    conversation_history: List[Dict[str, Any]] = field(default_factory=list)
    iterations: List[Iteration] = field(default_factory=list)
    retry_count: int = 0
    terminal_status: Optional[TerminalStatus] = None
    error: Optional[ToolStreamError] = None
    declared_goals: set = field(default_factory=set)
    goals: List[Any] = field(default_factory=list)
    buffer_table: Any = None  # ToolCallBufferTable, attached by the loop controller
    created_at: datetime = field(default_factory=datetime.utcnow)
    terminated_at: Optional[datetime] = None

    def __post_init__(self):
        self.state_machine = SessionStateMachine(self.id)

    @property
    def status(self) -> SessionStatus:
        return self.state_machine.state

    @property
    def current_iteration(self) -> Optional[Iteration]:
        return self.iterations[-1] if self.iterations else None

    def terminate(self, terminal_status: TerminalStatus, error: Optional[ToolStreamError] = None) -> None:
        if self.state_machine.is_terminated:
            return
        self.state_machine.terminate(terminal_status, reason=error.message if error else None)
        self.terminal_status = terminal_status
        self.error = error
        self.terminated_at = datetime.utcnow()
