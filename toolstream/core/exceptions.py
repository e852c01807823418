"""
Custom Exceptions for ToolStream
================================

Every failure the orchestrator can produce has a type here, so that:
1. Tool failures can be turned into corrective model input
2. Session termination can carry a typed reason
3. Invariant breaks surface loudly instead of being retried

Usage:
    from toolstream.core.exceptions import ArgumentParseError, ToolTimeoutError

    try:
        arguments = parse_arguments(raw)
    except ArgumentParseError as e:
        logger.warning(f"[BufferTable] {e}")
        raise
"""

from typing import Optional, Any, Dict


class ToolStreamError(Exception):
    """Base exception for all ToolStream errors"""

    def __init__(
        self,
        message: str,
        code: str = "INTERNAL_ERROR",
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": type(self).__name__,
            "code": self.code,
            "message": self.message,
            "details": self.details
        }


# ============================================
# Stream Errors
# ============================================

class StreamParseError(ToolStreamError):
    """A stream event could not be decoded"""

    def __init__(self, message: str, block_index: Optional[int] = None):
        details = {"block_index": block_index} if block_index is not None else {}
        super().__init__(message, code="STREAM_PARSE_ERROR", details=details)
        self.block_index = block_index


class FatalModelError(ToolStreamError):
    """The model stream failed in a way that cannot be recovered"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message, code="FATAL_MODEL_ERROR")
        if status_code is not None:
            self.details["status_code"] = status_code


# ============================================
# Tool Call Errors
# ============================================

class ArgumentParseError(ToolStreamError):
    """Accumulated tool argument text is not a valid argument object"""

    def __init__(
        self,
        reason: str,
        tool_name: Optional[str] = None,
        tool_call_id: Optional[str] = None,
        raw_arguments: Optional[str] = None
    ):
        super().__init__(
            f"Invalid arguments for {tool_name or 'tool'}: {reason}",
            code="ARGUMENT_PARSE_ERROR",
            details={
                "tool_name": tool_name,
                "tool_call_id": tool_call_id,
                "raw_arguments": raw_arguments,
            }
        )
        self.reason = reason
        self.tool_name = tool_name
        self.tool_call_id = tool_call_id
        self.raw_arguments = raw_arguments


class ToolExecutionError(ToolStreamError):
    """A tool handler failed"""

    def __init__(self, message: str, tool_name: Optional[str] = None):
        super().__init__(message, code="TOOL_EXECUTION_ERROR")
        self.tool_name = tool_name
        if tool_name:
            self.details["tool_name"] = tool_name


class UnknownToolError(ToolExecutionError):
    """No handler registered under this tool name"""

    def __init__(self, tool_name: str):
        super().__init__(f"Unknown tool: {tool_name}", tool_name=tool_name)
        self.code = "UNKNOWN_TOOL"


class ToolTimeoutError(ToolStreamError):
    """A tool did not finish within its timeout"""

    def __init__(self, tool_name: str, timeout: float):
        super().__init__(
            f"Tool {tool_name} timed out after {timeout:g}s",
            code="TOOL_TIMEOUT",
            details={"tool_name": tool_name, "timeout_seconds": timeout}
        )
        self.tool_name = tool_name
        self.timeout = timeout


class DispatchConflictError(ToolStreamError):
    """A second dispatch was attempted for an already dispatched tool call"""

    def __init__(self, buffer_id: str, execution_id: Optional[str] = None):
        super().__init__(
            f"Tool call {buffer_id} was already dispatched"
            + (f" as {execution_id}" if execution_id else ""),
            code="DISPATCH_CONFLICT",
            details={"buffer_id": buffer_id, "execution_id": execution_id}
        )
        self.buffer_id = buffer_id
        self.execution_id = execution_id


class BufferTransitionError(ToolStreamError):
    """Tool call buffer status may only move forward"""

    def __init__(self, buffer_id: str, from_status: str, to_status: str):
        super().__init__(
            f"Invalid buffer transition for {buffer_id}: {from_status} -> {to_status}",
            code="BUFFER_TRANSITION_ERROR",
            details={"buffer_id": buffer_id, "from": from_status, "to": to_status}
        )


# ============================================
# Loop Errors
# ============================================

class IterationStateError(ToolStreamError):
    """An iteration was closed while tool calls were still in flight"""

    def __init__(self, sequence_number: int, pending: list):
        super().__init__(
            f"Iteration {sequence_number} has unfinished tool calls: {', '.join(pending)}",
            code="ITERATION_INCOMPLETE",
            details={"sequence_number": sequence_number, "pending": pending}
        )


class GoalVerificationError(ToolStreamError):
    """A goal check could not produce a definite answer"""

    def __init__(self, goal_id: str, message: str):
        super().__init__(
            f"Goal {goal_id} could not be verified: {message}",
            code="GOAL_VERIFICATION_ERROR",
            details={"goal_id": goal_id}
        )
        self.goal_id = goal_id


class IterationBudgetExhausted(ToolStreamError):
    """Iteration budget used up with goals still unmet"""

    def __init__(self, max_iterations: int, unmet_goals: Optional[list] = None):
        super().__init__(
            f"Iteration budget of {max_iterations} exhausted",
            code="ITERATION_BUDGET_EXHAUSTED",
            details={"max_iterations": max_iterations, "unmet_goals": unmet_goals or []}
        )


class RecoveryBudgetExhausted(ToolStreamError):
    """Corrective turns used up and tools are still failing"""

    def __init__(self, retry_budget: int, last_failure: Optional[str] = None):
        super().__init__(
            f"Recovery retry budget of {retry_budget} exhausted",
            code="RECOVERY_BUDGET_EXHAUSTED",
            details={"retry_budget": retry_budget, "last_failure": last_failure}
        )


class SessionCancelledError(ToolStreamError):
    """Session stopped by user abort or hard timeout"""

    def __init__(self, session_id: str, reason: str = "cancelled"):
        super().__init__(
            f"Session {session_id} {reason}",
            code="SESSION_CANCELLED",
            details={"session_id": session_id, "reason": reason}
        )


# ============================================
# Ledger & Storage Errors
# ============================================

class LedgerClosedError(ToolStreamError):
    """Ledger is read-only once its session has terminated"""

    def __init__(self, session_id: str):
        super().__init__(
            f"Ledger for session {session_id} is closed",
            code="LEDGER_CLOSED",
            details={"session_id": session_id}
        )


class ContentStoreError(ToolStreamError):
    """Content store operation failed"""

    def __init__(self, message: str, path: Optional[str] = None):
        super().__init__(message, code="CONTENT_STORE_ERROR")
        if path:
            self.details["path"] = path


class ContentNotFoundError(ContentStoreError):
    """Path does not exist in the content store"""

    def __init__(self, path: str):
        super().__init__(f"File not found: {path}", path=path)
        self.code = "CONTENT_NOT_FOUND"
