"""
File tools over the content store.

Every tool here declares the file it touches as its resource key, so two
calls on the same file in one turn run in the order the model issued them.
"""

from typing import Any, Dict

from pydantic import BaseModel, Field, field_validator

from toolstream.core.exceptions import ContentNotFoundError, ToolExecutionError
from toolstream.modules.orchestrator.executor import ToolContext, ToolRegistry
from toolstream.services.content_store import ContentStore, normalize_path


def file_resource(arguments: Dict[str, Any]) -> str:
    return f"file:{normalize_path(arguments['path'])}"


class PathArgs(BaseModel):
    path: str = Field(..., description="File path relative to the workspace root")

    @field_validator("path")
    @classmethod
    def path_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("path must not be empty")
        return v.strip()


class WriteFileArgs(PathArgs):
    content: str = Field(..., description="Complete new file content")


class ReplaceInFileArgs(PathArgs):
    old_string: str = Field(..., description="Exact text to replace; must occur exactly once")
    new_string: str = Field(..., description="Replacement text")


class LineReplaceArgs(PathArgs):
    search: str = Field("", description="Text expected inside the line range")
    first_line: int = Field(..., ge=1, description="First line to replace (1-based)")
    last_line: int = Field(..., ge=1, description="Last line to replace (inclusive)")
    replace: str = Field(..., description="New content for the line range")


class FileTools:
    """Handlers bound to one content store"""

    def __init__(self, store: ContentStore):
        self.store = store

    async def write_file(self, args: WriteFileArgs, ctx: ToolContext) -> Dict[str, Any]:
        async with self.store.lock(args.path):
            created = await self.store.write(args.path, args.content)
        ctx.record_side_effect(f"{'created' if created else 'overwrote'} {args.path}")
        return {"path": args.path, "created": created, "bytes": len(args.content.encode("utf-8"))}

    async def read_file(self, args: PathArgs, ctx: ToolContext) -> Dict[str, Any]:
        try:
            content = await self.store.read(args.path)
        except ContentNotFoundError as e:
            raise ToolExecutionError(e.message, "read_file") from None
        return {"path": args.path, "content": content}

    async def replace_in_file(self, args: ReplaceInFileArgs, ctx: ToolContext) -> Dict[str, Any]:
        async with self.store.lock(args.path):
            content = await self._read(args.path, "replace_in_file")
            occurrences = content.count(args.old_string) if args.old_string else 0
            if occurrences == 0:
                raise ToolExecutionError(f"old_string not found in {args.path}", "replace_in_file")
            if occurrences > 1:
                raise ToolExecutionError(
                    f"old_string occurs {occurrences} times in {args.path}; add surrounding context",
                    "replace_in_file"
                )
            await self.store.write(args.path, content.replace(args.old_string, args.new_string, 1))
        ctx.record_side_effect(f"edited {args.path}")
        return {"path": args.path, "replaced": 1}

    async def line_replace(self, args: LineReplaceArgs, ctx: ToolContext) -> Dict[str, Any]:
        if args.last_line < args.first_line:
            raise ToolExecutionError(
                f"last_line {args.last_line} is before first_line {args.first_line}", "line_replace"
            )
        async with self.store.lock(args.path):
            content = await self._read(args.path, "line_replace")
            lines = content.split("\n")
            if args.last_line > len(lines):
                raise ToolExecutionError(
                    f"{args.path} has {len(lines)} lines; cannot replace {args.first_line}-{args.last_line}",
                    "line_replace"
                )
            current = "\n".join(lines[args.first_line - 1:args.last_line])
            if args.search.strip() and args.search.strip() not in current:
                raise ToolExecutionError(
                    f"Search pattern does not match lines {args.first_line}-{args.last_line} of {args.path}",
                    "line_replace"
                )
            lines[args.first_line - 1:args.last_line] = args.replace.split("\n")
            await self.store.write(args.path, "\n".join(lines))
        ctx.record_side_effect(f"replaced lines {args.first_line}-{args.last_line} of {args.path}")
        return {"path": args.path, "first_line": args.first_line, "last_line": args.last_line}

    async def delete_file(self, args: PathArgs, ctx: ToolContext) -> Dict[str, Any]:
        async with self.store.lock(args.path):
            deleted = await self.store.delete(args.path)
        if not deleted:
            raise ToolExecutionError(f"File not found: {args.path}", "delete_file")
        ctx.record_side_effect(f"deleted {args.path}")
        return {"path": args.path, "deleted": True}

    async def _read(self, path: str, tool_name: str) -> str:
        try:
            return await self.store.read(path)
        except ContentNotFoundError as e:
            raise ToolExecutionError(e.message, tool_name) from None


def register_file_tools(registry: ToolRegistry, store: ContentStore) -> FileTools:
    tools = FileTools(store)
    registry.tool(
        "write_file",
        "Create a file or replace its entire content.",
        WriteFileArgs,
        resource_key=file_resource,
    )(tools.write_file)
    registry.tool(
        "read_file",
        "Read the current content of a file.",
        PathArgs,
        resource_key=file_resource,
    )(tools.read_file)
    registry.tool(
        "replace_in_file",
        "Replace one exact occurrence of old_string with new_string in a file.",
        ReplaceInFileArgs,
        resource_key=file_resource,
    )(tools.replace_in_file)
    registry.tool(
        "line_replace",
        "Replace an inclusive 1-based line range of a file. search must appear in that range.",
        LineReplaceArgs,
        resource_key=file_resource,
    )(tools.line_replace)
    registry.tool(
        "delete_file",
        "Delete a file.",
        PathArgs,
        resource_key=file_resource,
    )(tools.delete_file)
    return tools
