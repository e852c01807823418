"""
Workspace tools available to the model.

Usage:
    from toolstream.modules.tools import build_default_registry

    registry = build_default_registry(store)
"""

from toolstream.modules.orchestrator.executor import ToolRegistry
from toolstream.modules.tools.file_tools import register_file_tools
from toolstream.modules.tools.workspace_tools import register_workspace_tools
from toolstream.services.content_store import ContentStore
from toolstream.services.package_manifest import PackageManifest
from toolstream.services.search_index import StoreSearchIndex


def build_default_registry(store: ContentStore) -> ToolRegistry:
    """File, search and dependency tools over one content store"""
    registry = ToolRegistry()
    register_file_tools(registry, store)
    register_workspace_tools(registry, StoreSearchIndex(store), PackageManifest(store))
    return registry


__all__ = ["build_default_registry", "register_file_tools", "register_workspace_tools"]
