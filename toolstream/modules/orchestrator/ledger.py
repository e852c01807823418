"""
Session Ledger - minimal durable history of a session

Per iteration: {tool_call_id, name, arguments, result, status} for every
tool call issued. The ledger is append-only while the session runs and
read-only once it terminates.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from toolstream.core.config import settings
from toolstream.core.exceptions import LedgerClosedError
from toolstream.core.logging_config import logger
from toolstream.modules.orchestrator.session import Iteration
from toolstream.modules.orchestrator.state_machine import TerminalStatus


@dataclass(frozen=True)
class ToolCallRecord:
    tool_call_id: str
    name: str
    arguments: Optional[Dict[str, Any]]
    result: Optional[Dict[str, Any]]
    status: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tool_call_id": self.tool_call_id,
            "name": self.name,
            "arguments": self.arguments,
            "result": self.result,
            "status": self.status,
        }


@dataclass(frozen=True)
class IterationRecord:
    sequence_number: int
    outcome: Optional[str]
    started_at: datetime
    completed_at: Optional[datetime]
    tool_calls: Tuple[ToolCallRecord, ...] = ()

    @classmethod
    def from_iteration(cls, iteration: Iteration) -> "IterationRecord":
        calls = []
        for buffer in iteration.issued_tool_calls:
            result = iteration.result_for(buffer.id)
            calls.append(ToolCallRecord(
                tool_call_id=buffer.id,
                name=buffer.name,
                arguments=buffer.arguments,
                result=result.to_dict() if result else None,
                status=buffer.status.value,
            ))
        return cls(
            sequence_number=iteration.sequence_number,
            outcome=iteration.outcome.value if iteration.outcome else None,
            started_at=iteration.started_at,
            completed_at=iteration.completed_at,
            tool_calls=tuple(calls),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sequence_number": self.sequence_number,
            "outcome": self.outcome,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "tool_calls": [c.to_dict() for c in self.tool_calls],
        }


class SessionLedger:
    """In-memory ledger of one session"""

    def __init__(self, session_id: str, request: str = ""):
        self.session_id = session_id
        self.request = request
        self._iterations: List[IterationRecord] = []
        self.terminal_status: Optional[TerminalStatus] = None
        self.retry_count = 0
        self.error: Optional[Dict[str, Any]] = None
        self.created_at = datetime.utcnow()
        self.terminated_at: Optional[datetime] = None

    @property
    def closed(self) -> bool:
        return self.terminal_status is not None

    @property
    def iterations(self) -> Tuple[IterationRecord, ...]:
        return tuple(self._iterations)

    @property
    def iteration_count(self) -> int:
        return len(self._iterations)

    def record_iteration(self, iteration: Iteration) -> IterationRecord:
        if self.closed:
            raise LedgerClosedError(self.session_id)
        record = IterationRecord.from_iteration(iteration)
        self._iterations.append(record)
        return record

    def close(
        self,
        terminal_status: TerminalStatus,
        retry_count: int = 0,
        error: Optional[Dict[str, Any]] = None,
    ) -> None:
        if self.closed:
            raise LedgerClosedError(self.session_id)
        self.terminal_status = terminal_status
        self.retry_count = retry_count
        self.error = error
        self.terminated_at = datetime.utcnow()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "request": self.request,
            "terminal_status": self.terminal_status.value if self.terminal_status else None,
            "iteration_count": self.iteration_count,
            "retry_count": self.retry_count,
            "error": self.error,
            "created_at": self.created_at.isoformat(),
            "terminated_at": self.terminated_at.isoformat() if self.terminated_at else None,
            "iterations": [r.to_dict() for r in self._iterations],
        }


class LedgerStore(ABC):
    """Durable home of session ledgers"""

    @abstractmethod
    async def save_iteration(self, ledger: SessionLedger, record: IterationRecord) -> None:
        ...

    @abstractmethod
    async def save_session(self, ledger: SessionLedger) -> None:
        """Persist terminal status; called once at termination"""

    @abstractmethod
    async def load(self, session_id: str) -> Optional[Dict[str, Any]]:
        ...


class InMemoryLedgerStore(LedgerStore):

    def __init__(self):
        self._sessions: Dict[str, Dict[str, Any]] = {}

    async def save_iteration(self, ledger: SessionLedger, record: IterationRecord) -> None:
        entry = self._sessions.setdefault(ledger.session_id, {"session_id": ledger.session_id, "iterations": []})
        entry["iterations"].append(record.to_dict())
        entry["iteration_count"] = ledger.iteration_count

    async def save_session(self, ledger: SessionLedger) -> None:
        self._sessions[ledger.session_id] = ledger.to_dict()

    async def load(self, session_id: str) -> Optional[Dict[str, Any]]:
        return self._sessions.get(session_id)


class SqlAlchemyLedgerStore(LedgerStore):
    """Ledger rows in agent_sessions / tool_call_records"""

    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None):
        if session_factory is None:
            from toolstream.core.database import get_session_local
            session_factory = get_session_local()
        self._session_factory = session_factory

    async def _session_row(self, db: AsyncSession, ledger: SessionLedger):
        from toolstream.models.session_ledger import AgentSessionRecord

        row = await db.get(AgentSessionRecord, ledger.session_id)
        if row is None:
            row = AgentSessionRecord(id=ledger.session_id, request=ledger.request, created_at=ledger.created_at)
            db.add(row)
        return row

    async def save_iteration(self, ledger: SessionLedger, record: IterationRecord) -> None:
        from toolstream.models.session_ledger import ToolCallLedgerEntry

        async with self._session_factory() as db:
            row = await self._session_row(db, ledger)
            row.iteration_count = ledger.iteration_count
            await db.flush()
            for position, call in enumerate(record.tool_calls):
                db.add(ToolCallLedgerEntry(
                    session_id=ledger.session_id,
                    iteration=record.sequence_number,
                    position=position,
                    outcome=record.outcome,
                    tool_call_id=call.tool_call_id,
                    name=call.name,
                    arguments=call.arguments,
                    result=call.result,
                    status=call.status,
                ))
            await db.commit()

    async def save_session(self, ledger: SessionLedger) -> None:
        async with self._session_factory() as db:
            row = await self._session_row(db, ledger)
            row.iteration_count = ledger.iteration_count
            row.retry_count = ledger.retry_count
            row.terminal_status = ledger.terminal_status.value if ledger.terminal_status else None
            row.error = ledger.error
            row.terminated_at = ledger.terminated_at
            await db.commit()

    async def load(self, session_id: str) -> Optional[Dict[str, Any]]:
        from toolstream.models.session_ledger import AgentSessionRecord, ToolCallLedgerEntry

        async with self._session_factory() as db:
            row = await db.get(AgentSessionRecord, session_id)
            if row is None:
                return None
            entries = (await db.execute(
                select(ToolCallLedgerEntry)
                .where(ToolCallLedgerEntry.session_id == session_id)
                .order_by(ToolCallLedgerEntry.iteration, ToolCallLedgerEntry.position)
            )).scalars().all()

        iterations: Dict[int, Dict[str, Any]] = {}
        for entry in entries:
            iteration = iterations.setdefault(
                entry.iteration,
                {"sequence_number": entry.iteration, "outcome": entry.outcome, "tool_calls": []}
            )
            iteration["tool_calls"].append({
                "tool_call_id": entry.tool_call_id,
                "name": entry.name,
                "arguments": entry.arguments,
                "result": entry.result,
                "status": entry.status,
            })

        return {
            "session_id": row.id,
            "request": row.request,
            "terminal_status": row.terminal_status,
            "iteration_count": row.iteration_count,
            "retry_count": row.retry_count,
            "error": row.error,
            "iterations": [iterations[k] for k in sorted(iterations)],
        }


def get_ledger_store() -> LedgerStore:
    if settings.LEDGER_BACKEND == "database":
        logger.info("[Ledger] Using database ledger store")
        return SqlAlchemyLedgerStore()
    return InMemoryLedgerStore()
