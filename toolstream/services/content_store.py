"""
Content Store - where generated application files live

Two implementations:
- InMemoryContentStore: dict-backed, for tests and dry runs
- LocalContentStore: a directory on disk, written with aiofiles

Both serialize writers per path with their own asyncio locks, so sessions
sharing a store never need locks of their own.
"""

from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from pathlib import Path, PurePosixPath
from typing import AsyncIterator, Dict, List, Optional
import asyncio

import aiofiles
import aiofiles.os

from toolstream.core.exceptions import ContentNotFoundError, ContentStoreError
from toolstream.core.logging_config import logger


def normalize_path(path: str) -> str:
    """
    Canonical store path: forward slashes, no leading './' or '/'.

    Raises:
        ContentStoreError: empty path or one that escapes the root
    """
    cleaned = (path or "").strip().replace("\\", "/")
    while cleaned.startswith("./"):
        cleaned = cleaned[2:]
    cleaned = cleaned.lstrip("/")
    if not cleaned:
        raise ContentStoreError("Empty file path", path=path)
    parts = PurePosixPath(cleaned).parts
    if any(part == ".." for part in parts):
        raise ContentStoreError(f"Path escapes the workspace: {path}", path=path)
    return str(PurePosixPath(*parts))


class ContentStore(ABC):
    """Path-addressed text file store"""

    def __init__(self):
        # path -> [lock, holders]; dropped when the last holder leaves
        self._locks: Dict[str, List] = {}

    @asynccontextmanager
    async def lock(self, path: str) -> AsyncIterator[None]:
        """Per-path lock; hold it for read-modify-write sequences"""
        key = normalize_path(path)
        entry = self._locks.get(key)
        if entry is None:
            entry = self._locks[key] = [asyncio.Lock(), 0]
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if entry[1] == 0:
                del self._locks[key]

    @abstractmethod
    async def read(self, path: str) -> str:
        """Raises ContentNotFoundError when missing"""

    @abstractmethod
    async def write(self, path: str, content: str) -> bool:
        """Write a file; returns True when it was created"""

    @abstractmethod
    async def delete(self, path: str) -> bool:
        """Delete a file; returns False when it did not exist"""

    @abstractmethod
    async def exists(self, path: str) -> bool:
        ...

    @abstractmethod
    async def list(self, prefix: str = "") -> List[str]:
        """Sorted paths under prefix"""

    async def read_optional(self, path: str) -> Optional[str]:
        try:
            return await self.read(path)
        except ContentNotFoundError:
            return None


class InMemoryContentStore(ContentStore):

    def __init__(self, files: Optional[Dict[str, str]] = None):
        super().__init__()
        self._files: Dict[str, str] = {normalize_path(p): c for p, c in (files or {}).items()}

    async def read(self, path: str) -> str:
        key = normalize_path(path)
        if key not in self._files:
            raise ContentNotFoundError(key)
        return self._files[key]

    async def write(self, path: str, content: str) -> bool:
        key = normalize_path(path)
        created = key not in self._files
        self._files[key] = content
        return created

    async def delete(self, path: str) -> bool:
        return self._files.pop(normalize_path(path), None) is not None

    async def exists(self, path: str) -> bool:
        return normalize_path(path) in self._files

    async def list(self, prefix: str = "") -> List[str]:
        prefix = prefix.strip("/")
        return sorted(p for p in self._files if not prefix or p == prefix or p.startswith(prefix + "/"))

    def snapshot(self) -> Dict[str, str]:
        return dict(self._files)


class LocalContentStore(ContentStore):
    """Files under a root directory on local disk"""

    def __init__(self, root: Path):
        super().__init__()
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def _full_path(self, path: str) -> Path:
        full_path = (self.root / normalize_path(path)).resolve()
        if self.root not in full_path.parents and full_path != self.root:
            raise ContentStoreError(f"Path escapes the workspace: {path}", path=path)
        return full_path

    async def read(self, path: str) -> str:
        full_path = self._full_path(path)
        if not full_path.is_file():
            raise ContentNotFoundError(normalize_path(path))
        async with aiofiles.open(full_path, 'r', encoding='utf-8') as f:
            return await f.read()

    async def write(self, path: str, content: str) -> bool:
        full_path = self._full_path(path)
        created = not full_path.exists()
        full_path.parent.mkdir(parents=True, exist_ok=True)
        async with aiofiles.open(full_path, 'w', encoding='utf-8') as f:
            await f.write(content)
        logger.debug(f"[ContentStore] Wrote {normalize_path(path)} ({len(content)} chars)")
        return created

    async def delete(self, path: str) -> bool:
        full_path = self._full_path(path)
        if not full_path.is_file():
            return False
        await aiofiles.os.remove(full_path)
        return True

    async def exists(self, path: str) -> bool:
        return self._full_path(path).is_file()

    async def list(self, prefix: str = "") -> List[str]:
        base = self._full_path(prefix) if prefix.strip("/") else self.root
        if base.is_file():
            return [normalize_path(prefix)]
        if not base.exists():
            return []
        return sorted(
            str(p.relative_to(self.root).as_posix())
            for p in base.rglob('*') if p.is_file()
        )
