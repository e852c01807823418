"""
Unit Tests for the Content Stores
"""
import asyncio

import pytest

from toolstream.core.exceptions import ContentNotFoundError, ContentStoreError
from toolstream.services.content_store import InMemoryContentStore, LocalContentStore, normalize_path


class TestNormalizePath:

    def test_canonical_forms(self):
        assert normalize_path("./src/App.tsx") == "src/App.tsx"
        assert normalize_path("/src/App.tsx") == "src/App.tsx"
        assert normalize_path("src\\App.tsx") == "src/App.tsx"
        assert normalize_path("src//App.tsx") == "src/App.tsx"

    def test_rejects_escape_and_empty(self):
        with pytest.raises(ContentStoreError):
            normalize_path("../etc/passwd")
        with pytest.raises(ContentStoreError):
            normalize_path("src/../../x")
        with pytest.raises(ContentStoreError):
            normalize_path("  ")


class TestInMemoryContentStore:

    @pytest.mark.asyncio
    async def test_write_read_delete(self):
        store = InMemoryContentStore()

        assert await store.write("src/a.ts", "one") is True
        assert await store.write("./src/a.ts", "two") is False
        assert await store.read("src/a.ts") == "two"
        assert await store.exists("src/a.ts")
        assert await store.delete("src/a.ts") is True
        assert await store.delete("src/a.ts") is False

    @pytest.mark.asyncio
    async def test_missing_file(self):
        store = InMemoryContentStore()
        with pytest.raises(ContentNotFoundError) as exc_info:
            await store.read("nope.ts")
        assert exc_info.value.message == "File not found: nope.ts"
        assert await store.read_optional("nope.ts") is None

    @pytest.mark.asyncio
    async def test_list_by_prefix(self):
        store = InMemoryContentStore({"src/a.ts": "", "src/lib/b.ts": "", "srcx/c.ts": "", "README.md": ""})
        assert await store.list() == ["README.md", "src/a.ts", "src/lib/b.ts", "srcx/c.ts"]
        assert await store.list("src") == ["src/a.ts", "src/lib/b.ts"]

    @pytest.mark.asyncio
    async def test_lock_serializes_writers_per_path(self):
        store = InMemoryContentStore()
        order = []

        async def writer(path, name):
            async with store.lock(path):
                order.append(f"{name} in")
                await asyncio.sleep(0.01)
                order.append(f"{name} out")

        await asyncio.gather(writer("src/a.ts", "first"), writer("./src/a.ts", "second"))
        assert order == ["first in", "first out", "second in", "second out"]

        order.clear()
        await asyncio.gather(writer("src/a.ts", "a"), writer("src/b.ts", "b"))
        assert order[:2] == ["a in", "b in"]

    @pytest.mark.asyncio
    async def test_lock_entries_are_released(self):
        store = InMemoryContentStore()

        for n in range(50):
            async with store.lock(f"src/file_{n}.ts"):
                assert len(store._locks) == 1

        async def held(path):
            async with store.lock(path):
                await asyncio.sleep(0.01)

        await asyncio.gather(*(held("src/a.ts") for _ in range(3)), held("src/b.ts"))
        assert store._locks == {}

        with pytest.raises(RuntimeError):
            async with store.lock("src/a.ts"):
                raise RuntimeError("write failed")
        assert store._locks == {}


class TestLocalContentStore:

    @pytest.mark.asyncio
    async def test_files_on_disk(self, tmp_path):
        store = LocalContentStore(tmp_path)

        assert await store.write("src/components/Button.tsx", "export {}") is True
        assert (tmp_path / "src" / "components" / "Button.tsx").read_text() == "export {}"
        assert await store.read("src/components/Button.tsx") == "export {}"
        assert await store.list() == ["src/components/Button.tsx"]
        assert await store.list("src/components") == ["src/components/Button.tsx"]
        assert await store.list("missing") == []

        assert await store.delete("src/components/Button.tsx") is True
        assert not await store.exists("src/components/Button.tsx")

    @pytest.mark.asyncio
    async def test_missing_and_escape(self, tmp_path):
        store = LocalContentStore(tmp_path / "workspace")
        with pytest.raises(ContentNotFoundError):
            await store.read("nope.txt")
        with pytest.raises(ContentStoreError):
            await store.write("../outside.txt", "x")
        assert not (tmp_path / "outside.txt").exists()
