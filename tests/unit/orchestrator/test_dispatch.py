"""
Unit Tests for the Dispatch Coordinator and Work Queue
"""
import pytest

from toolstream.core.exceptions import BufferTransitionError, DispatchConflictError
from toolstream.modules.orchestrator.buffer_table import ToolCallBufferTable
from toolstream.modules.orchestrator.dispatch import DispatchCoordinator, WorkItem, WorkQueue
from toolstream.modules.orchestrator.event_bus import ProgressBroadcaster, ProgressEventType
from toolstream.modules.orchestrator.state_machine import BufferStatus


def completed_buffer(table, index, name="write_file", arguments='{"path": "a.ts"}', tool_id=None):
    table.open(index, name, tool_id or f"toolu_{index}")
    table.append(index, arguments)
    return table.close(index)


def file_key(name, arguments):
    return f"file:{arguments['path']}" if "path" in arguments else None


class TestWorkQueue:
    """Test the work queue's uniqueness guarantee"""

    def test_rejects_duplicate_execution_id(self):
        table = ToolCallBufferTable("s")
        queue = WorkQueue()
        queue.put(WorkItem("exec_1", completed_buffer(table, 0)))

        with pytest.raises(DispatchConflictError):
            queue.put(WorkItem("exec_1", completed_buffer(table, 1)))
        assert queue.qsize() == 1

    def test_rejects_duplicate_buffer(self):
        table = ToolCallBufferTable("s")
        buffer = completed_buffer(table, 0)
        queue = WorkQueue()
        queue.put(WorkItem("exec_1", buffer))

        with pytest.raises(DispatchConflictError):
            queue.put(WorkItem("exec_2", buffer))
        assert queue.enqueued_count == 1

    def test_drain(self):
        table = ToolCallBufferTable("s")
        queue = WorkQueue()
        queue.put(WorkItem("exec_1", completed_buffer(table, 0)))
        queue.put(WorkItem("exec_2", completed_buffer(table, 1)))

        drained = queue.drain()
        assert [i.execution_id for i in drained] == ["exec_1", "exec_2"]
        assert queue.empty()


class TestExactlyOnceDispatch:
    """Test that each completed buffer becomes exactly one work item"""

    @pytest.mark.parametrize("attempts", [1, 2, 3, 4, 5])
    def test_repeated_dispatch_is_idempotent(self, attempts):
        """Test N dispatches of one buffer enqueue exactly one item"""
        table = ToolCallBufferTable("s")
        queue = WorkQueue()
        coordinator = DispatchCoordinator("s", queue)
        buffer = completed_buffer(table, 0)

        ids = [coordinator.dispatch(buffer) for _ in range(attempts)]

        assert len(set(ids)) == 1
        assert ids[0].startswith("exec_")
        assert len(ids[0]) == len("exec_") + 16
        assert queue.qsize() == 1
        assert coordinator.dispatched_count == 1
        assert len(coordinator.conflicts) == attempts - 1
        assert buffer.status == BufferStatus.DISPATCHED
        assert buffer.execution_id == ids[0]

    def test_conflict_is_reported(self):
        """Test that a duplicate dispatch is logged and broadcast"""
        broadcaster = ProgressBroadcaster()
        table = ToolCallBufferTable("s")
        coordinator = DispatchCoordinator("s", WorkQueue(), broadcaster=broadcaster)
        buffer = completed_buffer(table, 0)

        first = coordinator.dispatch(buffer)
        coordinator.dispatch(buffer)

        conflict = coordinator.conflicts[0]
        assert conflict.buffer_id == buffer.id
        assert conflict.execution_id == first
        history = broadcaster.get_history(session_id="s", event_type=ProgressEventType.DISPATCH_CONFLICT)
        assert len(history) == 1
        assert history[0].data["code"] == "DISPATCH_CONFLICT"

    def test_strict_mode_raises(self):
        table = ToolCallBufferTable("s")
        coordinator = DispatchCoordinator("s", WorkQueue(), strict=True)
        buffer = completed_buffer(table, 0)
        coordinator.dispatch(buffer)

        with pytest.raises(DispatchConflictError):
            coordinator.dispatch(buffer)

    def test_incomplete_buffer_rejected(self):
        table = ToolCallBufferTable("s")
        buffer = table.open(0, "write_file", "toolu_0")
        coordinator = DispatchCoordinator("s", WorkQueue())

        with pytest.raises(BufferTransitionError):
            coordinator.dispatch(buffer)
        assert coordinator.dispatched_count == 0

    def test_failed_buffer_rejected(self):
        table = ToolCallBufferTable("s")
        table.open(0, "write_file", "toolu_0")
        table.append(0, "{oops")
        with pytest.raises(Exception):
            table.close(0)

        with pytest.raises(BufferTransitionError):
            DispatchCoordinator("s", WorkQueue()).dispatch(table.get(0))

    def test_execution_id_lookup(self):
        table = ToolCallBufferTable("s")
        coordinator = DispatchCoordinator("s", WorkQueue())
        buffer = completed_buffer(table, 0)
        execution_id = coordinator.dispatch(buffer)

        assert coordinator.execution_id_for(buffer.id) == execution_id
        assert coordinator.execution_id_for("missing") is None

    def test_dispatch_broadcasts(self):
        broadcaster = ProgressBroadcaster()
        table = ToolCallBufferTable("s")
        coordinator = DispatchCoordinator("s", WorkQueue(), broadcaster=broadcaster)
        coordinator.begin_iteration(3)
        coordinator.dispatch(completed_buffer(table, 0))

        event = broadcaster.get_history(event_type=ProgressEventType.TOOL_DISPATCHED)[0]
        assert event.iteration == 3
        assert event.data["tool_name"] == "write_file"


class TestDependencyInference:
    """Test ordering of calls that touch the same resource"""

    def test_same_resource_depends_on_previous(self):
        """Test create-then-update on one file"""
        table = ToolCallBufferTable("s")
        queue = WorkQueue()
        coordinator = DispatchCoordinator("s", queue, resource_key=file_key)

        create = coordinator.dispatch(completed_buffer(table, 0, arguments='{"path": "a.ts"}'))
        other = coordinator.dispatch(completed_buffer(table, 1, arguments='{"path": "b.ts"}'))
        update = coordinator.dispatch(completed_buffer(table, 2, arguments='{"path": "a.ts"}'))
        again = coordinator.dispatch(completed_buffer(table, 3, arguments='{"path": "a.ts"}'))

        items = {i.execution_id: i for i in queue.drain()}
        assert items[create].depends_on == ()
        assert items[other].depends_on == ()
        assert items[update].depends_on == (create,)
        assert items[again].depends_on == (update,)

    def test_explicit_dependencies(self):
        table = ToolCallBufferTable("s")
        queue = WorkQueue()
        coordinator = DispatchCoordinator("s", queue)
        first = coordinator.dispatch(completed_buffer(table, 0))
        second = coordinator.dispatch(completed_buffer(table, 1), depends_on=[first, "exec_unknown"])

        items = {i.execution_id: i for i in queue.drain()}
        assert items[second].depends_on == (first,)

    def test_new_iteration_forgets_resource_owners(self):
        table = ToolCallBufferTable("s")
        queue = WorkQueue()
        coordinator = DispatchCoordinator("s", queue, resource_key=file_key)
        coordinator.dispatch(completed_buffer(table, 0))

        coordinator.begin_iteration(2)
        table.clear()
        second = coordinator.dispatch(completed_buffer(table, 0, tool_id="toolu_next"))

        items = {i.execution_id: i for i in queue.drain()}
        assert items[second].depends_on == ()
        assert items[second].iteration == 2
