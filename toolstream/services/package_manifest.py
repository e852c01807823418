"""
Package manifest (package.json) dependency edits.
"""

from typing import Any, Dict, Optional
import json

from toolstream.core.exceptions import ContentStoreError
from toolstream.core.logging_config import logger
from toolstream.services.content_store import ContentStore


MANIFEST_PATH = "package.json"


class PackageManifest:
    """Reads and rewrites dependencies in the workspace's package.json"""

    def __init__(self, store: ContentStore, path: str = MANIFEST_PATH):
        self.store = store
        self.path = path

    async def load(self) -> Dict[str, Any]:
        content = await self.store.read_optional(self.path)
        if content is None or not content.strip():
            return {}
        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            raise ContentStoreError(f"{self.path} is not valid JSON: {e.msg}", path=self.path) from None
        if not isinstance(data, dict):
            raise ContentStoreError(f"{self.path} must contain a JSON object", path=self.path)
        return data

    async def _save(self, data: Dict[str, Any]) -> None:
        await self.store.write(self.path, json.dumps(data, indent=2) + "\n")

    async def has_dependency(self, name: str) -> bool:
        data = await self.load()
        return name in data.get("dependencies", {}) or name in data.get("devDependencies", {})

    async def add_dependency(self, name: str, version: Optional[str] = None, dev: bool = False) -> Dict[str, Any]:
        section = "devDependencies" if dev else "dependencies"
        async with self.store.lock(self.path):
            data = await self.load()
            data.setdefault(section, {})[name] = version or "latest"
            await self._save(data)
        logger.info(f"[PackageManifest] Added {name}@{version or 'latest'} to {section}")
        return {"name": name, "version": version or "latest", "section": section}

    async def remove_dependency(self, name: str) -> bool:
        async with self.store.lock(self.path):
            data = await self.load()
            removed = False
            for section in ("dependencies", "devDependencies"):
                if name in data.get(section, {}):
                    del data[section][name]
                    removed = True
            if removed:
                await self._save(data)
        if removed:
            logger.info(f"[PackageManifest] Removed {name}")
        return removed
