# Re-export all models for convenient imports
from toolstream.models.session_ledger import AgentSessionRecord, ToolCallLedgerEntry

__all__ = [
    "AgentSessionRecord",
    "ToolCallLedgerEntry",
]
