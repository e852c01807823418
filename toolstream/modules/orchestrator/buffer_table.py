"""
Tool Call Buffer Table

Accumulates the argument text of every tool call in the current model turn,
keyed by the stream's content block index. One table per session; the
table is cleared when the owning iteration completes.
"""

from typing import Callable, Dict, List, Optional, Type
import uuid

from pydantic import BaseModel, ValidationError

from toolstream.core.config import settings
from toolstream.core.exceptions import ArgumentParseError, ToolStreamError
from toolstream.core.logging_config import logger
from toolstream.modules.orchestrator.arguments import parse_arguments
from toolstream.modules.orchestrator.session import ToolCallBuffer
from toolstream.modules.orchestrator.state_machine import BufferStatus


SchemaLookup = Callable[[str], Optional[Type[BaseModel]]]


def format_validation_error(error: ValidationError) -> str:
    parts = []
    for err in error.errors():
        location = ".".join(str(p) for p in err.get("loc", ())) or "arguments"
        parts.append(f"{location}: {err.get('msg')}")
    return "; ".join(parts)


class ToolCallBufferTable:
    """
    Per-session map of stream block index → ToolCallBuffer.

    Lookups are by block index only, never by tool name, so two concurrent
    calls to the same tool cannot mix their argument text.
    """

    def __init__(
        self,
        session_id: str,
        max_blocks: Optional[int] = None,
        schema_lookup: Optional[SchemaLookup] = None,
    ):
        self.session_id = session_id
        self.max_blocks = max_blocks or settings.STREAM_MAX_BLOCKS
        self._schema_lookup = schema_lookup
        self._buffers: Dict[int, ToolCallBuffer] = {}
        self._issued = 0
        self.dropped = 0

    def __len__(self) -> int:
        return len(self._buffers)

    def __contains__(self, index: int) -> bool:
        return index in self._buffers

    @property
    def buffers(self) -> List[ToolCallBuffer]:
        """Buffers in stream block order"""
        return [self._buffers[i] for i in sorted(self._buffers)]

    def get(self, index: int) -> Optional[ToolCallBuffer]:
        return self._buffers.get(index)

    def get_by_id(self, buffer_id: str) -> Optional[ToolCallBuffer]:
        for buffer in self._buffers.values():
            if buffer.id == buffer_id:
                return buffer
        return None

    def is_valid_index(self, index) -> bool:
        return isinstance(index, int) and not isinstance(index, bool) and 0 <= index < self.max_blocks

    def _drop(self, index, reason: str) -> None:
        self.dropped += 1
        logger.warning(f"[BufferTable] Dropping event for block {index!r}: {reason}")

    def _open_buffer(self, index) -> Optional[ToolCallBuffer]:
        if not self.is_valid_index(index):
            self._drop(index, "index out of range")
            return None
        buffer = self._buffers.get(index)
        if buffer is None:
            self._drop(index, "no tool call started at this index")
            return None
        if buffer.status != BufferStatus.OPEN:
            self._drop(index, f"buffer {buffer.id} is already {buffer.status.value}")
            return None
        return buffer

    def open(self, index, name: str, tool_call_id: Optional[str] = None) -> Optional[ToolCallBuffer]:
        """Allocate a buffer for a tool_use block start"""
        if not self.is_valid_index(index):
            self._drop(index, "index out of range")
            return None
        if index in self._buffers:
            self._drop(index, f"duplicate block start (already holds {self._buffers[index].id})")
            return None

        buffer = ToolCallBuffer(
            id=tool_call_id or f"toolu_{uuid.uuid4().hex[:24]}",
            name=name,
            stream_block_index=index,
            issue_order=self._issued,
        )
        self._issued += 1
        self._buffers[index] = buffer
        logger.debug(f"[BufferTable] Opened {buffer.id} ({name}) at block {index}")
        return buffer

    def append(self, index, fragment: str) -> Optional[ToolCallBuffer]:
        """Append raw argument text to the buffer at this block index"""
        buffer = self._open_buffer(index)
        if buffer is None:
            return None
        buffer.partial_arguments += fragment or ""
        return buffer

    def close(self, index) -> Optional[ToolCallBuffer]:
        """
        Parse the accumulated arguments and mark the buffer complete.

        Raises:
            ArgumentParseError: the buffer is marked failed first
        """
        buffer = self._open_buffer(index)
        if buffer is None:
            return None

        try:
            arguments = parse_arguments(
                buffer.partial_arguments,
                tool_name=buffer.name,
                tool_call_id=buffer.id,
            )
            arguments = self._validate(buffer, arguments)
        except ArgumentParseError as e:
            buffer.fail(e)
            logger.warning(f"[BufferTable] {buffer.id} failed to parse: {e.reason}")
            raise

        buffer.arguments = arguments
        buffer.advance(BufferStatus.COMPLETE)
        return buffer

    def _validate(self, buffer: ToolCallBuffer, arguments: dict) -> dict:
        model = self._schema_lookup(buffer.name) if self._schema_lookup else None
        if model is None:
            return arguments
        try:
            return model.model_validate(arguments).model_dump()
        except ValidationError as e:
            raise ArgumentParseError(
                format_validation_error(e),
                tool_name=buffer.name,
                tool_call_id=buffer.id,
                raw_arguments=buffer.partial_arguments,
            ) from None

    def fail_open(self, make_error: Callable[[ToolCallBuffer], ToolStreamError]) -> List[ToolCallBuffer]:
        """Fail every buffer still open (the stream ended without their stop)"""
        failed = []
        for buffer in self.buffers:
            if buffer.status == BufferStatus.OPEN:
                buffer.fail(make_error(buffer))
                failed.append(buffer)
        return failed

    def clear(self) -> None:
        self._buffers.clear()
        self._issued = 0
