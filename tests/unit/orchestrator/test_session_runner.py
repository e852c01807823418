"""
Unit Tests for the Session Runner
"""
import asyncio
import re

import pytest

from mocks.mock_model import ScriptedModelClient, text_turn, tool_block, turn
from toolstream.modules.orchestrator.event_bus import ProgressBroadcaster
from toolstream.modules.orchestrator.executor import ToolSpec
from toolstream.modules.orchestrator.ledger import InMemoryLedgerStore
from toolstream.modules.orchestrator.loop_controller import LoopController
from toolstream.modules.orchestrator.session_runner import SessionRunner
from toolstream.modules.orchestrator.state_machine import TerminalStatus
from toolstream.modules.tools import build_default_registry
from toolstream.services.content_store import InMemoryContentStore


class FileRequestClient(ScriptedModelClient):
    """Writes the file named in the request and tracks overlapping turns"""

    def __init__(self):
        super().__init__(delay=0.005)
        self.active = 0
        self.max_active = 0

    async def stream_turn(self, messages, tools, system=None):
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if len(messages) == 1:
                path = re.search(r"\S+\.ts", messages[0]["content"]).group(0)
                self.scripts.append(turn(tool_block(0, "write_file", {"path": path, "content": path})))
            else:
                self.scripts.append(text_turn())
            async for event in super().stream_turn(messages, tools, system):
                yield event
        finally:
            self.active -= 1


def make_runner(client, **kwargs):
    store = InMemoryContentStore()
    registry = build_default_registry(store)
    controller = LoopController(
        model_client=client,
        registry=registry,
        content_store=store,
        broadcaster=ProgressBroadcaster(),
        ledger_store=InMemoryLedgerStore(),
    )
    return SessionRunner(controller, **kwargs), store, registry


class TestSessionRunner:
    """Test concurrent sessions"""

    @pytest.mark.asyncio
    async def test_run_all_respects_concurrency_limit(self):
        client = FileRequestClient()
        runner, store, registry = make_runner(client, max_concurrent=2)

        results = await runner.run_all(["Create a.ts", "Create b.ts", "Create c.ts", "Create d.ts"])

        assert [r.status for r in results] == [TerminalStatus.SUCCESS] * 4
        assert sorted(store.snapshot()) == ["a.ts", "b.ts", "c.ts", "d.ts"]
        assert client.max_active <= 2
        assert len(runner.results) == 4
        assert runner.active_count == 0

    @pytest.mark.asyncio
    async def test_submit_and_wait(self):
        runner, store, registry = make_runner(FileRequestClient())

        session_id = runner.submit("Create main.ts")
        result = await runner.wait(session_id)

        assert result.session_id == session_id
        assert result.succeeded
        assert runner.results[session_id] is result

    @pytest.mark.asyncio
    async def test_wait_unknown_session(self):
        runner, store, registry = make_runner(FileRequestClient())
        with pytest.raises(KeyError):
            await runner.wait("nope")

    @pytest.mark.asyncio
    async def test_cancel_by_id(self):
        entered = asyncio.Event()
        client = ScriptedModelClient([turn(tool_block(0, "long_task", {}))])
        runner, store, registry = make_runner(client)

        async def long_task(args, ctx):
            entered.set()
            await asyncio.sleep(10)

        registry.register(ToolSpec("long_task", "Runs for a long time", long_task))

        session_id = runner.submit("Start the server")
        await asyncio.wait_for(entered.wait(), timeout=2)

        assert runner.cancel(session_id) is True
        result = await asyncio.wait_for(runner.wait(session_id), timeout=5)

        assert result.status == TerminalStatus.CANCELLED
        assert runner.cancel(session_id) is False
        assert runner.cancel("unknown") is False

    @pytest.mark.asyncio
    async def test_hard_timeout_applies_to_every_session(self):
        client = ScriptedModelClient([turn(tool_block(0, "long_task", {}))], repeat_last=True)
        runner, store, registry = make_runner(client, hard_timeout=0.2)

        async def long_task(args, ctx):
            await asyncio.sleep(10)

        registry.register(ToolSpec("long_task", "Runs for a long time", long_task))

        results = await asyncio.wait_for(runner.run_all(["Start one", "Start two"]), timeout=5)
        assert [r.status for r in results] == [TerminalStatus.CANCELLED, TerminalStatus.CANCELLED]

    @pytest.mark.asyncio
    async def test_shutdown_cancels_running_sessions(self):
        entered = asyncio.Event()
        client = ScriptedModelClient([turn(tool_block(0, "long_task", {}))])
        runner, store, registry = make_runner(client)

        async def long_task(args, ctx):
            entered.set()
            await asyncio.sleep(10)

        registry.register(ToolSpec("long_task", "Runs for a long time", long_task))
        session_id = runner.submit("Start the server")
        await asyncio.wait_for(entered.wait(), timeout=2)

        await asyncio.wait_for(runner.shutdown(), timeout=5)

        assert runner.results[session_id].status == TerminalStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_finished_sessions_release_their_tasks(self):
        runner, store, registry = make_runner(FileRequestClient())

        session_id = runner.submit("Create main.ts")
        assert runner.pending_count == 1
        result = await runner.wait(session_id)

        assert runner.pending_count == 0
        assert runner._tasks == {}
        assert runner._cancel_events == {}
        assert await runner.wait(session_id) is result

    @pytest.mark.asyncio
    async def test_only_recent_results_are_retained(self):
        runner, store, registry = make_runner(FileRequestClient(), max_results=2)

        results = await runner.run_all(["Create a.ts", "Create b.ts", "Create c.ts"])

        assert [r.status for r in results] == [TerminalStatus.SUCCESS] * 3
        assert len(runner.results) == 2
        dropped = [r.session_id for r in results if r.session_id not in runner.results]
        assert len(dropped) == 1
        with pytest.raises(KeyError):
            await runner.wait(dropped[0])
        assert runner.pending_count == 0
