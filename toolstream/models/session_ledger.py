"""
Persisted session ledger rows.
"""

from sqlalchemy import Column, String, Integer, DateTime, Text, JSON, ForeignKey, Index
from datetime import datetime

from toolstream.core.database import Base


class AgentSessionRecord(Base):
    """One agent session and how it ended"""
    __tablename__ = "agent_sessions"

    id = Column(String(64), primary_key=True)
    request = Column(Text, nullable=False, default="")
    terminal_status = Column(String(20), nullable=True, index=True)  # success, exhausted, fatal, cancelled
    iteration_count = Column(Integer, default=0, nullable=False)
    retry_count = Column(Integer, default=0, nullable=False)
    error = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    terminated_at = Column(DateTime, nullable=True)

    def __repr__(self):
        return f"<AgentSessionRecord {self.id} status={self.terminal_status} iterations={self.iteration_count}>"


class ToolCallLedgerEntry(Base):
    """One tool call issued in one iteration"""
    __tablename__ = "tool_call_records"

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(String(64), ForeignKey("agent_sessions.id", ondelete="CASCADE"), nullable=False)
    iteration = Column(Integer, nullable=False)
    position = Column(Integer, nullable=False, default=0)
    outcome = Column(String(32), nullable=True)

    tool_call_id = Column(String(128), nullable=False)
    name = Column(String(128), nullable=False)
    arguments = Column(JSON, nullable=True)
    result = Column(JSON, nullable=True)
    status = Column(String(20), nullable=False)  # done, failed

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("ix_tool_call_records_session_iteration", "session_id", "iteration"),
    )

    def __repr__(self):
        return f"<ToolCallLedgerEntry {self.tool_call_id} {self.name} {self.status}>"
