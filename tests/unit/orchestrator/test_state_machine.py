"""
Unit Tests for Session State and Iteration bookkeeping
"""
import pytest

from toolstream.core.exceptions import IterationStateError, SessionCancelledError
from toolstream.modules.orchestrator.session import (
    AgentSession,
    Iteration,
    IterationOutcome,
    ToolCallBuffer,
)
from toolstream.modules.orchestrator.state_machine import (
    BufferStatus,
    SessionStateMachine,
    SessionStatus,
    TerminalStatus,
)


class TestSessionStateMachine:
    """Test session lifecycle transitions"""

    def test_starts_running(self):
        machine = SessionStateMachine("session-abc")
        assert machine.state == SessionStatus.RUNNING
        assert not machine.is_terminated

    def test_tool_iteration_path(self):
        machine = SessionStateMachine("s")
        assert machine.await_tools()
        assert machine.verify()
        assert machine.recover("1 failed")
        assert machine.think()
        assert machine.state == SessionStatus.RUNNING

    def test_no_tool_iteration_path(self):
        machine = SessionStateMachine("s")
        assert machine.verify()
        assert machine.terminate(TerminalStatus.SUCCESS)
        assert machine.is_terminated

    def test_invalid_transition_refused(self):
        machine = SessionStateMachine("s")
        assert not machine.recover("too early")
        assert machine.state == SessionStatus.RUNNING

    def test_terminated_is_final(self):
        machine = SessionStateMachine("s")
        machine.verify()
        machine.terminate(TerminalStatus.EXHAUSTED)
        assert not machine.think()
        assert machine.state == SessionStatus.TERMINATED

    def test_cancel_from_any_state(self):
        machine = SessionStateMachine("s")
        machine.await_tools()
        assert machine.terminate(TerminalStatus.CANCELLED)
        assert machine.is_terminated

    def test_history_and_callbacks(self):
        machine = SessionStateMachine("s")
        seen = []
        machine.on_transition(lambda old, new, transition: seen.append((old, new)))
        machine.on_transition(lambda old, new, transition: 1 / 0)

        machine.await_tools()
        machine.verify()

        assert seen == [
            (SessionStatus.RUNNING, SessionStatus.AWAITING_TOOLS),
            (SessionStatus.AWAITING_TOOLS, SessionStatus.VERIFYING),
        ]
        history = machine.get_history()
        assert [t.to_state for t in history] == ["awaiting_tools", "verifying"]
        assert history[0].to_dict()["reason"] == "first tool call dispatched"


class TestAgentSession:
    """Test session termination"""

    def test_terminate_records_status_once(self):
        session = AgentSession(request="build it")
        error = SessionCancelledError(session.id, "cancel requested")

        session.terminate(TerminalStatus.CANCELLED, error)
        session.terminate(TerminalStatus.SUCCESS)

        assert session.terminal_status == TerminalStatus.CANCELLED
        assert session.error is error
        assert session.status == SessionStatus.TERMINATED
        assert session.terminated_at is not None

    def test_ids_are_unique(self):
        assert AgentSession(request="a").id != AgentSession(request="a").id


class TestIteration:
    """Test iteration completion rules"""

    def test_cannot_complete_with_pending_calls(self):
        pending = ToolCallBuffer(id="toolu_1", name="write_file", stream_block_index=0)
        iteration = Iteration(sequence_number=4, issued_tool_calls=[pending])

        with pytest.raises(IterationStateError) as exc_info:
            iteration.complete(IterationOutcome.TOOLS_SUCCEEDED)

        assert exc_info.value.details["pending"] == ["toolu_1"]
        assert not iteration.is_complete

    def test_complete_when_all_terminal(self):
        done = ToolCallBuffer(id="a", name="x", stream_block_index=0, status=BufferStatus.DONE)
        failed = ToolCallBuffer(id="b", name="x", stream_block_index=1, status=BufferStatus.FAILED)
        iteration = Iteration(sequence_number=1, issued_tool_calls=[done, failed])

        iteration.complete(IterationOutcome.TOOLS_FAILED)

        assert iteration.is_complete
        assert iteration.outcome == IterationOutcome.TOOLS_FAILED
        assert iteration.failed_calls() == [failed]
