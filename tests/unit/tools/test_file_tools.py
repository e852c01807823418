"""
Unit Tests for the workspace tools
"""
import json

import pytest

from toolstream.modules.orchestrator.executor import ToolContext, ToolExecutor
from toolstream.modules.orchestrator.session import ErrorKind
from toolstream.services.content_store import InMemoryContentStore
from toolstream.modules.tools import build_default_registry


@pytest.fixture
def executor(registry):
    return ToolExecutor(registry, default_timeout=5, timeouts={})


def context(call_id="toolu_01"):
    return ToolContext(session_id="session-1", tool_call_id=call_id)


class TestFileTools:
    """Test file tools through the executor"""

    def test_registered_tools_and_resource_keys(self, registry):
        assert registry.names() == [
            "write_file", "read_file", "replace_in_file", "line_replace", "delete_file",
            "search_files", "add_dependency", "remove_dependency",
        ]
        assert registry.resource_key_for("write_file", {"path": "./src/App.tsx"}) == "file:src/App.tsx"
        assert registry.resource_key_for("add_dependency", {"name": "axios"}) == "file:package.json"
        assert registry.resource_key_for("search_files", {"query": "x"}) is None
        assert registry.resource_key_for("write_file", {}) is None

    @pytest.mark.asyncio
    async def test_write_then_read(self, executor, store):
        ctx = context()
        written = await executor.execute("write_file", {"path": "src/App.tsx", "content": "hello"}, ctx)

        assert written.success
        assert written.payload == {"path": "src/App.tsx", "created": True, "bytes": 5}
        assert written.side_effects == ["created src/App.tsx"]

        overwritten = await executor.execute("write_file", {"path": "src/App.tsx", "content": "bye"}, context())
        assert overwritten.side_effects == ["overwrote src/App.tsx"]

        read = await executor.execute("read_file", {"path": "src/App.tsx"}, context())
        assert read.payload == {"path": "src/App.tsx", "content": "bye"}
        assert read.side_effects == []

    @pytest.mark.asyncio
    async def test_read_missing_file(self, executor):
        result = await executor.execute("read_file", {"path": "nope.ts"}, context())
        assert not result.success
        assert result.error_kind == ErrorKind.EXECUTION
        assert result.error_message == "File not found: nope.ts"

    @pytest.mark.asyncio
    async def test_invalid_arguments(self, executor):
        result = await executor.execute("write_file", {"path": "a.ts"}, context())
        assert result.error_kind == ErrorKind.ARGUMENT_PARSE
        assert "content" in result.error_message

        result = await executor.execute("read_file", {"path": "   "}, context())
        assert result.error_kind == ErrorKind.ARGUMENT_PARSE

    @pytest.mark.asyncio
    async def test_replace_in_file(self, executor, store):
        await store.write("src/a.ts", "const a = 1;\nconst b = 2;\n")

        result = await executor.execute(
            "replace_in_file",
            {"path": "src/a.ts", "old_string": "const b = 2;", "new_string": "const b = 3;"},
            context(),
        )

        assert result.success
        assert await store.read("src/a.ts") == "const a = 1;\nconst b = 3;\n"
        assert result.side_effects == ["edited src/a.ts"]

    @pytest.mark.asyncio
    async def test_replace_requires_single_occurrence(self, executor, store):
        await store.write("src/a.ts", "x\nx\n")

        missing = await executor.execute(
            "replace_in_file", {"path": "src/a.ts", "old_string": "y", "new_string": "z"}, context()
        )
        ambiguous = await executor.execute(
            "replace_in_file", {"path": "src/a.ts", "old_string": "x", "new_string": "z"}, context()
        )

        assert missing.error_message == "old_string not found in src/a.ts"
        assert "occurs 2 times" in ambiguous.error_message
        assert await store.read("src/a.ts") == "x\nx\n"

    @pytest.mark.asyncio
    async def test_line_replace(self, executor, store):
        await store.write("src/a.ts", "a\nb\nc")

        result = await executor.execute(
            "line_replace",
            {"path": "src/a.ts", "search": "b", "first_line": 2, "last_line": 2, "replace": "B1\nB2"},
            context(),
        )

        assert result.success
        assert await store.read("src/a.ts") == "a\nB1\nB2\nc"
        assert result.side_effects == ["replaced lines 2-2 of src/a.ts"]

    @pytest.mark.asyncio
    async def test_line_replace_errors(self, executor, store):
        await store.write("src/a.ts", "a\nb\nc")

        mismatch = await executor.execute(
            "line_replace",
            {"path": "src/a.ts", "search": "zzz", "first_line": 1, "last_line": 2, "replace": ""},
            context(),
        )
        out_of_range = await executor.execute(
            "line_replace",
            {"path": "src/a.ts", "first_line": 2, "last_line": 9, "replace": ""},
            context(),
        )
        reversed_range = await executor.execute(
            "line_replace",
            {"path": "src/a.ts", "first_line": 3, "last_line": 1, "replace": ""},
            context(),
        )
        zero_line = await executor.execute(
            "line_replace",
            {"path": "src/a.ts", "first_line": 0, "last_line": 1, "replace": ""},
            context(),
        )

        assert mismatch.error_message.startswith("Search pattern does not match lines 1-2")
        assert out_of_range.error_message == "src/a.ts has 3 lines; cannot replace 2-9"
        assert reversed_range.error_message == "last_line 1 is before first_line 3"
        assert zero_line.error_kind == ErrorKind.ARGUMENT_PARSE
        assert await store.read("src/a.ts") == "a\nb\nc"

    @pytest.mark.asyncio
    async def test_delete_file(self, executor, store):
        await store.write("old.css", "body {}")

        deleted = await executor.execute("delete_file", {"path": "old.css"}, context())
        again = await executor.execute("delete_file", {"path": "old.css"}, context())

        assert deleted.payload == {"path": "old.css", "deleted": True}
        assert deleted.side_effects == ["deleted old.css"]
        assert again.error_message == "File not found: old.css"


class TestWorkspaceTools:
    """Test search and dependency tools"""

    @pytest.mark.asyncio
    async def test_search_files(self):
        store = InMemoryContentStore({"src/App.tsx": "export default App", "src/util.ts": "export {}"})
        executor = ToolExecutor(build_default_registry(store), default_timeout=5, timeouts={})

        result = await executor.execute("search_files", {"query": "App", "path_glob": "src/*"}, context())

        assert result.success
        assert result.payload == {
            "matches": [{"path": "src/App.tsx", "line": 1, "text": "export default App"}],
            "count": 1,
        }

    @pytest.mark.asyncio
    async def test_search_invalid_pattern(self, executor):
        result = await executor.execute("search_files", {"query": "[oops"}, context())
        assert result.error_kind == ErrorKind.EXECUTION
        assert result.error_message.startswith("Invalid search pattern")

    @pytest.mark.asyncio
    async def test_add_and_remove_dependency(self, executor, store):
        added = await executor.execute("add_dependency", {"name": "zod", "version": "^3.22.0"}, context())
        assert added.payload == {"name": "zod", "version": "^3.22.0", "section": "dependencies"}
        assert added.side_effects == ["added zod to dependencies"]
        assert json.loads(await store.read("package.json")) == {"dependencies": {"zod": "^3.22.0"}}

        removed = await executor.execute("remove_dependency", {"name": "zod"}, context())
        missing = await executor.execute("remove_dependency", {"name": "zod"}, context())

        assert removed.payload == {"name": "zod", "removed": True}
        assert missing.error_message == "zod is not a dependency"

    @pytest.mark.asyncio
    async def test_broken_manifest(self, executor, store):
        await store.write("package.json", "{")
        result = await executor.execute("add_dependency", {"name": "zod"}, context())
        assert result.error_kind == ErrorKind.EXECUTION
        assert "package.json is not valid JSON" in result.error_message
