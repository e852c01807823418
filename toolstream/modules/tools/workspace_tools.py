"""
Search and dependency tools.
"""

from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from toolstream.core.exceptions import ContentStoreError, ToolExecutionError
from toolstream.modules.orchestrator.executor import ToolContext, ToolRegistry
from toolstream.services.package_manifest import MANIFEST_PATH, PackageManifest
from toolstream.services.search_index import SearchIndex


class SearchFilesArgs(BaseModel):
    query: str = Field(..., description="Regular expression to search for")
    path_glob: Optional[str] = Field(None, description="Only search paths matching this glob, e.g. src/**/*.tsx")
    case_sensitive: bool = False
    limit: int = Field(50, ge=1, le=500)


class AddDependencyArgs(BaseModel):
    name: str = Field(..., min_length=1, description="npm package name")
    version: Optional[str] = Field(None, description="Version range; defaults to latest")
    dev: bool = Field(False, description="Add to devDependencies")


class RemoveDependencyArgs(BaseModel):
    name: str = Field(..., min_length=1)


def manifest_resource(arguments: Dict[str, Any]) -> str:
    return f"file:{MANIFEST_PATH}"


def register_workspace_tools(
    registry: ToolRegistry,
    search_index: SearchIndex,
    manifest: PackageManifest,
) -> None:

    @registry.tool("search_files", "Search workspace files with a regular expression.", SearchFilesArgs)
    async def search_files(args: SearchFilesArgs, ctx: ToolContext) -> Dict[str, Any]:
        try:
            matches = await search_index.query(args.query, args.path_glob, args.case_sensitive, args.limit)
        except ContentStoreError as e:
            raise ToolExecutionError(e.message, "search_files") from None
        return {"matches": [m.to_dict() for m in matches], "count": len(matches)}

    @registry.tool(
        "add_dependency",
        "Add a package to package.json dependencies.",
        AddDependencyArgs,
        resource_key=manifest_resource,
    )
    async def add_dependency(args: AddDependencyArgs, ctx: ToolContext) -> Dict[str, Any]:
        try:
            added = await manifest.add_dependency(args.name, args.version, args.dev)
        except ContentStoreError as e:
            raise ToolExecutionError(e.message, "add_dependency") from None
        ctx.record_side_effect(f"added {args.name} to {added['section']}")
        return added

    @registry.tool(
        "remove_dependency",
        "Remove a package from package.json.",
        RemoveDependencyArgs,
        resource_key=manifest_resource,
    )
    async def remove_dependency(args: RemoveDependencyArgs, ctx: ToolContext) -> Dict[str, Any]:
        try:
            removed = await manifest.remove_dependency(args.name)
        except ContentStoreError as e:
            raise ToolExecutionError(e.message, "remove_dependency") from None
        if not removed:
            raise ToolExecutionError(f"{args.name} is not a dependency", "remove_dependency")
        ctx.record_side_effect(f"removed {args.name}")
        return {"name": args.name, "removed": True}
