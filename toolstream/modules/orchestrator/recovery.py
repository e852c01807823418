"""
Recovery Manager - turns tool failures into corrective model input

Never re-runs a failed operation. Instead the next model turn is told what
was attempted and how it failed, and the model chooses a corrected action.

Bounded: AGENT_RECOVERY_RETRY_BUDGET corrective turns per session,
independent of the iteration budget. A failure after the budget is spent
is fatal.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple
import json

from toolstream.core.config import settings
from toolstream.core.exceptions import RecoveryBudgetExhausted
from toolstream.core.logging_config import logger
from toolstream.modules.orchestrator.session import (
    AgentSession,
    ErrorKind,
    Iteration,
    ToolCallBuffer,
    ToolExecutionResult,
)


MAX_ARGUMENT_PREVIEW = 600


@dataclass
class FailureRecord:
    """What was attempted and how it failed"""
    tool_call_id: str
    tool_name: str
    error_kind: ErrorKind
    message: str
    arguments: Optional[Dict[str, Any]] = None
    raw_arguments: Optional[str] = None
    side_effects: List[str] = field(default_factory=list)

    @classmethod
    def from_call(cls, buffer: ToolCallBuffer, result: ToolExecutionResult) -> "FailureRecord":
        return cls(
            tool_call_id=buffer.id,
            tool_name=buffer.name,
            error_kind=result.error_kind or ErrorKind.EXECUTION,
            message=result.error_message or "unknown error",
            arguments=buffer.arguments,
            raw_arguments=buffer.partial_arguments if buffer.arguments is None else None,
            side_effects=list(result.side_effects),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tool_call_id": self.tool_call_id,
            "tool_name": self.tool_name,
            "error_kind": self.error_kind.value,
            "message": self.message,
        }


def _preview(text: str) -> str:
    if len(text) <= MAX_ARGUMENT_PREVIEW:
        return text
    return text[:MAX_ARGUMENT_PREVIEW] + f"... ({len(text) - MAX_ARGUMENT_PREVIEW} more chars)"


class RecoveryManager:

    HINTS = {
        ErrorKind.ARGUMENT_PARSE: "Re-issue the call with a single valid JSON object matching the tool's input schema.",
        ErrorKind.EXECUTION: "Inspect the current state (for example read the file) before trying a different approach.",
        ErrorKind.TIMEOUT: "Split the work into smaller calls.",
        ErrorKind.UNKNOWN_TOOL: "Use only the tools you were given.",
        ErrorKind.DEPENDENCY_FAILED: "Fix the earlier failed call first, then retry this one.",
        ErrorKind.CANCELLED: "The call was interrupted; check whether it took effect before retrying.",
    }

    def __init__(self, retry_budget: Optional[int] = None):
        self.retry_budget = settings.AGENT_RECOVERY_RETRY_BUDGET if retry_budget is None else retry_budget

    def collect_failures(self, iteration: Iteration) -> List[FailureRecord]:
        failures = []
        for buffer in iteration.issued_tool_calls:
            result = iteration.result_for(buffer.id)
            if result is not None and not result.success:
                failures.append(FailureRecord.from_call(buffer, result))
        return failures

    def can_retry(self, session: AgentSession) -> Tuple[bool, str]:
        """
        Returns:
            Tuple of (can_retry, reason)
        """
        if session.retry_count >= self.retry_budget:
            return False, f"Recovery retry budget reached ({self.retry_budget})"
        return True, f"Retry {session.retry_count + 1}/{self.retry_budget} allowed"

    def record_attempt(self, session: AgentSession, failures: List[FailureRecord]) -> int:
        """
        Count one corrective turn.

        Raises:
            RecoveryBudgetExhausted: no retries left
        """
        allowed, reason = self.can_retry(session)
        if not allowed:
            last = failures[-1].message if failures else None
            raise RecoveryBudgetExhausted(self.retry_budget, last)
        session.retry_count += 1
        logger.info(
            f"[Recovery:{session.id[:8]}] Corrective turn {session.retry_count}/{self.retry_budget} "
            f"for {len(failures)} failed call(s)"
        )
        return session.retry_count

    def describe_failure(self, failure: FailureRecord) -> str:
        """tool_result content for a failed call"""
        if failure.arguments is not None:
            attempted = _preview(json.dumps(failure.arguments, default=str))
        else:
            attempted = _preview(failure.raw_arguments or "")

        lines = [
            f"Error ({failure.error_kind.value}): {failure.message}",
            f"Attempted: {failure.tool_name} with arguments {attempted}",
        ]
        if failure.side_effects:
            lines.append(f"Already applied before the failure: {'; '.join(failure.side_effects)}")
        lines.append(self.HINTS.get(failure.error_kind, ""))
        return "\n".join(line for line in lines if line)

    def corrective_note(self, failures: List[FailureRecord], attempt: int) -> str:
        """Text block appended after the tool results of a failed iteration"""
        names = ", ".join(f"{f.tool_name} ({f.error_kind.value})" for f in failures)
        return (
            f"{len(failures)} tool call(s) failed: {names}. "
            f"This is correction attempt {attempt} of {self.retry_budget}. "
            "Changes that succeeded are kept. Decide on corrected actions and issue them now."
        )
