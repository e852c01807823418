"""
ToolStream - Test Configuration and Fixtures
"""
import os

# Set testing environment before any toolstream import reads settings
os.environ['ENVIRONMENT'] = 'testing'
os.environ['ANTHROPIC_API_KEY'] = 'test-api-key'
os.environ['ANTHROPIC_BASE_URL'] = ''
os.environ['LEDGER_BACKEND'] = 'memory'
os.environ['DEPLOY_WEBHOOK_URL'] = ''
os.environ['LOG_FILE'] = ''
os.environ['CLAUDE_RETRY_BASE_DELAY'] = '0.01'
os.environ['CLAUDE_RETRY_MAX_DELAY'] = '0.05'

import pytest

from toolstream.modules.orchestrator.event_bus import ProgressBroadcaster
from toolstream.modules.orchestrator.ledger import InMemoryLedgerStore
from toolstream.modules.tools import build_default_registry
from toolstream.services.content_store import InMemoryContentStore


@pytest.fixture
def store() -> InMemoryContentStore:
    """Empty in-memory workspace"""
    return InMemoryContentStore()


@pytest.fixture
def broadcaster() -> ProgressBroadcaster:
    """Private broadcaster so tests never share history"""
    return ProgressBroadcaster(max_history=500)


@pytest.fixture
def ledger_store() -> InMemoryLedgerStore:
    return InMemoryLedgerStore()


@pytest.fixture
def registry(store):
    """Default workspace tools over the in-memory store"""
    return build_default_registry(store)
