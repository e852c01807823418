"""
Search over workspace files.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
import fnmatch
import re

from toolstream.core.exceptions import ContentStoreError
from toolstream.services.content_store import ContentStore


@dataclass
class SearchMatch:
    path: str
    line_number: int
    line: str

    def to_dict(self) -> Dict[str, Any]:
        return {"path": self.path, "line": self.line_number, "text": self.line}


class SearchIndex(ABC):

    @abstractmethod
    async def query(
        self,
        pattern: str,
        path_glob: Optional[str] = None,
        case_sensitive: bool = False,
        limit: int = 50,
    ) -> List[SearchMatch]:
        ...


class StoreSearchIndex(SearchIndex):
    """Regex scan of every file in a content store"""

    def __init__(self, store: ContentStore):
        self.store = store

    async def query(
        self,
        pattern: str,
        path_glob: Optional[str] = None,
        case_sensitive: bool = False,
        limit: int = 50,
    ) -> List[SearchMatch]:
        try:
            regex = re.compile(pattern, 0 if case_sensitive else re.IGNORECASE)
        except re.error as e:
            raise ContentStoreError(f"Invalid search pattern {pattern!r}: {e}") from None

        matches: List[SearchMatch] = []
        for path in await self.store.list():
            if path_glob and not fnmatch.fnmatch(path, path_glob):
                continue
            content = await self.store.read_optional(path)
            if content is None:
                continue
            for number, line in enumerate(content.splitlines(), 1):
                if regex.search(line):
                    matches.append(SearchMatch(path, number, line.strip()))
                    if len(matches) >= limit:
                        return matches
        return matches
