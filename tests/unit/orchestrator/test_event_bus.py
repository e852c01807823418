"""
Unit Tests for the Progress Broadcaster
"""
import asyncio

import pytest

from toolstream.modules.orchestrator.event_bus import (
    ProgressBroadcaster,
    ProgressEvent,
    ProgressEventType,
    get_broadcaster,
)


class TestProgressEvent:
    """Test event serialization"""

    def test_to_sse(self):
        event = ProgressEvent(ProgressEventType.TOOL_DETECTED, "s1", {"tool_name": "write_file"}, iteration=2)
        frame = event.to_sse()
        assert frame.startswith("data: {")
        assert frame.endswith("\n\n")
        assert '"type": "tool_detected"' in frame
        assert '"iteration": 2' in frame


class TestSubscriptions:
    """Test delivery to handlers"""

    @pytest.mark.asyncio
    async def test_type_wildcard_and_session_handlers(self):
        broadcaster = ProgressBroadcaster()
        by_type, wildcard, by_session = [], [], []
        broadcaster.subscribe(ProgressEventType.TOOL_FAILED, by_type.append)
        broadcaster.subscribe("*", wildcard.append)
        broadcaster.subscribe("*", by_session.append, session_id="s1")

        broadcaster.emit(ProgressEventType.TOOL_FAILED, "s1", {"n": 1})
        broadcaster.emit(ProgressEventType.TOOL_COMPLETED, "s2", {"n": 2})
        await broadcaster.drain()

        assert [e.data["n"] for e in by_type] == [1]
        assert [e.data["n"] for e in wildcard] == [1, 2]
        assert [e.data["n"] for e in by_session] == [1]

    @pytest.mark.asyncio
    async def test_async_handler(self):
        broadcaster = ProgressBroadcaster()
        seen = []

        async def handler(event):
            await asyncio.sleep(0)
            seen.append(event.type)

        broadcaster.subscribe("*", handler)
        broadcaster.emit(ProgressEventType.SESSION_STARTED, "s1")
        await broadcaster.drain()
        assert seen == [ProgressEventType.SESSION_STARTED]

    @pytest.mark.asyncio
    async def test_failing_handler_is_isolated(self):
        """Test that a broken subscriber never reaches the publisher"""
        broadcaster = ProgressBroadcaster()
        seen = []

        def broken(event):
            raise RuntimeError("render failed")

        broadcaster.subscribe("*", broken)
        broadcaster.subscribe("*", seen.append)

        broadcaster.emit(ProgressEventType.ITERATION_STARTED, "s1")
        await broadcaster.drain()

        assert len(seen) == 1
        assert broadcaster.get_stats()["handler_errors"] == 1

    @pytest.mark.asyncio
    async def test_emit_does_not_block_on_slow_handler(self):
        broadcaster = ProgressBroadcaster()
        release = asyncio.Event()

        async def slow(event):
            await release.wait()

        broadcaster.subscribe("*", slow)
        broadcaster.emit(ProgressEventType.TOOL_STARTED, "s1")
        assert broadcaster.get_stats()["total_events"] == 0

        release.set()
        await broadcaster.drain()
        assert broadcaster.get_stats()["total_events"] == 1

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        broadcaster = ProgressBroadcaster()
        seen = []
        broadcaster.subscribe(ProgressEventType.TOOL_STARTED, seen.append)
        broadcaster.unsubscribe(ProgressEventType.TOOL_STARTED, seen.append)

        broadcaster.emit(ProgressEventType.TOOL_STARTED, "s1")
        await broadcaster.drain()
        assert seen == []

    def test_emit_without_loop_records_history(self):
        broadcaster = ProgressBroadcaster()
        broadcaster.emit(ProgressEventType.SESSION_TERMINATED, "s1", {"status": "success"})

        history = broadcaster.get_history(session_id="s1")
        assert len(history) == 1
        assert history[0].data["status"] == "success"


class TestQueuesAndHistory:
    """Test session queues, SSE streaming and history"""

    @pytest.mark.asyncio
    async def test_session_queue(self):
        broadcaster = ProgressBroadcaster()
        queue = broadcaster.create_queue("s1")

        broadcaster.emit(ProgressEventType.SESSION_STARTED, "s1")
        broadcaster.emit(ProgressEventType.SESSION_STARTED, "other")
        await broadcaster.drain()

        assert queue.qsize() == 1
        broadcaster.remove_queue("s1", queue)
        assert broadcaster.get_stats()["active_queues"] == 0

    @pytest.mark.asyncio
    async def test_full_queue_drops(self):
        broadcaster = ProgressBroadcaster()
        broadcaster.create_queue("s1", max_size=1)

        broadcaster.emit(ProgressEventType.TEXT_DELTA, "s1")
        broadcaster.emit(ProgressEventType.TEXT_DELTA, "s1")
        await broadcaster.drain()

        assert broadcaster.get_stats()["dropped_events"] == 1

    @pytest.mark.asyncio
    async def test_stream_ends_at_termination(self):
        broadcaster = ProgressBroadcaster()

        async def consume():
            return [frame async for frame in broadcaster.stream("s1")]

        consumer = asyncio.create_task(consume())
        await asyncio.sleep(0)
        broadcaster.emit(ProgressEventType.SESSION_STARTED, "s1")
        broadcaster.emit(ProgressEventType.SESSION_TERMINATED, "s1", {"status": "success"})
        await broadcaster.drain()

        frames = await asyncio.wait_for(consumer, timeout=2)
        assert len(frames) == 2
        assert "session_terminated" in frames[-1]

    def test_history_filters_and_limit(self):
        broadcaster = ProgressBroadcaster(max_history=3)
        for n in range(5):
            broadcaster.emit(ProgressEventType.TOOL_STARTED, "s1", {"n": n})
        broadcaster.emit(ProgressEventType.TOOL_FAILED, "s2")

        assert [e.data["n"] for e in broadcaster.get_history(session_id="s1")] == [3, 4]
        assert len(broadcaster.get_history(event_type=ProgressEventType.TOOL_FAILED)) == 1
        assert len(broadcaster.get_history(limit=1)) == 1
        assert broadcaster.get_stats()["event_counts"] == {"tool_started": 2, "tool_failed": 1}

    def test_global_broadcaster_is_shared(self):
        assert get_broadcaster() is get_broadcaster()
