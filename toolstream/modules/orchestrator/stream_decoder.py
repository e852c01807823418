"""
Stream Decoder

Turns a provider event stream (Anthropic Messages streaming vocabulary)
into ordered per-block events and drives the tool call buffer table.

Event flow for one tool call:

    content_block_start(index=i, tool_use) → TOOL_STARTED
    content_block_delta(index=i, input_json_delta)* → ARGUMENT_DELTA
    content_block_stop(index=i) → TOOL_COMPLETED (on_tool_complete fires)
                                 or TOOL_FAILED (on_tool_failed fires)

Routing is by block index only. Events that cannot be routed are logged and
dropped; they never touch another block's buffer.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterable, AsyncIterator, Callable, Dict, List, Mapping, Optional, Set, Union
import codecs
import json

from toolstream.core.exceptions import ArgumentParseError, FatalModelError, StreamParseError, ToolStreamError
from toolstream.core.logging_config import logger
from toolstream.modules.orchestrator.buffer_table import ToolCallBufferTable
from toolstream.modules.orchestrator.session import ToolCallBuffer


class StreamEventType(str, Enum):
    """Raw stream event types"""
    MESSAGE_START = "message_start"
    BLOCK_START = "content_block_start"
    BLOCK_DELTA = "content_block_delta"
    BLOCK_STOP = "content_block_stop"
    MESSAGE_DELTA = "message_delta"
    TURN_END = "message_stop"
    PING = "ping"
    ERROR = "error"


class DecodedEventType(str, Enum):
    """Events emitted by the decoder"""
    MESSAGE_STARTED = "message_started"
    TEXT_STARTED = "text_started"
    TEXT_DELTA = "text_delta"
    TEXT_COMPLETED = "text_completed"
    TOOL_STARTED = "tool_started"
    ARGUMENT_DELTA = "argument_delta"
    TOOL_COMPLETED = "tool_completed"
    TOOL_FAILED = "tool_failed"
    MESSAGE_DELTA = "message_delta"
    TURN_ENDED = "turn_ended"


@dataclass(frozen=True)
class StreamEvent:
    """One raw event from the model stream"""
    type: StreamEventType
    index: Optional[Any] = None
    data: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, payload: Any) -> "StreamEvent":
        if not isinstance(payload, Mapping):
            raise StreamParseError(f"Stream event must be an object, got {type(payload).__name__}")
        raw_type = payload.get("type")
        if not raw_type:
            raise StreamParseError("Stream event missing type field")
        try:
            event_type = StreamEventType(raw_type)
        except ValueError:
            raise StreamParseError(f"Unknown stream event type: {raw_type!r}") from None
        return cls(type=event_type, index=payload.get("index"), data=dict(payload))

    def to_dict(self) -> Dict[str, Any]:
        payload = dict(self.data)
        payload["type"] = self.type.value
        if self.index is not None:
            payload["index"] = self.index
        return payload


@dataclass
class DecodedEvent:
    buffer_id: Optional[str]
    event_type: DecodedEventType
    payload: Dict[str, Any] = field(default_factory=dict)
    block_index: Optional[int] = None


@dataclass
class TurnSummary:
    """What the model said in one turn, by block index"""
    text_blocks: Dict[int, str] = field(default_factory=dict)
    tool_blocks: Dict[int, ToolCallBuffer] = field(default_factory=dict)
    message_id: Optional[str] = None
    stop_reason: Optional[str] = None
    usage: Dict[str, Any] = field(default_factory=dict)
    ended: bool = False

    @property
    def text(self) -> str:
        return "".join(self.text_blocks[i] for i in sorted(self.text_blocks))

    @property
    def tool_calls(self) -> List[ToolCallBuffer]:
        return [self.tool_blocks[i] for i in sorted(self.tool_blocks)]

    def content_blocks(self) -> List[Dict[str, Any]]:
        """Assistant message content in block order"""
        blocks: List[Dict[str, Any]] = []
        for index in sorted(set(self.text_blocks) | set(self.tool_blocks)):
            if index in self.text_blocks:
                if self.text_blocks[index]:
                    blocks.append({"type": "text", "text": self.text_blocks[index]})
                continue
            buffer = self.tool_blocks[index]
            blocks.append({
                "type": "tool_use",
                "id": buffer.id,
                "name": buffer.name,
                "input": buffer.arguments or {},
            })
        return blocks


ToolCallback = Callable[[ToolCallBuffer], Optional[str]]
FailureCallback = Callable[[ToolCallBuffer, ToolStreamError], None]
RawEvent = Union[StreamEvent, Mapping[str, Any]]


class StreamDecoder:
    """
    Sequential decoder for one model turn at a time.

    Args:
        table: the session's buffer table
        on_tool_complete: called once per successfully parsed tool call, at
            its block stop. Its return value (an execution id) is added to
            the TOOL_COMPLETED payload.
        on_tool_failed: called for argument failures and truncated calls
    """

    def __init__(
        self,
        table: ToolCallBufferTable,
        on_tool_complete: Optional[ToolCallback] = None,
        on_tool_failed: Optional[FailureCallback] = None,
    ):
        self.table = table
        self.on_tool_complete = on_tool_complete
        self.on_tool_failed = on_tool_failed
        self.turn = TurnSummary()
        self.parse_errors = 0
        self.dropped = 0
        self._ignored_blocks: Set[int] = set()

    def reset(self) -> None:
        """Start a new turn"""
        self.turn = TurnSummary()
        self._ignored_blocks = set()

    async def decode(self, source: AsyncIterable[RawEvent]) -> AsyncIterator[DecodedEvent]:
        """Decode a whole turn; events are yielded in arrival order"""
        async for raw in source:
            for decoded in self.feed(raw):
                yield decoded
        for decoded in self.finish():
            yield decoded

    def feed(self, raw: RawEvent) -> List[DecodedEvent]:
        """
        Decode one raw event.

        Raises:
            FatalModelError: the provider reported an error in-stream
        """
        try:
            event = raw if isinstance(raw, StreamEvent) else StreamEvent.from_dict(raw)
            return self._handle(event)
        except StreamParseError as e:
            self.parse_errors += 1
            logger.warning(f"[StreamDecoder] Dropping malformed event: {e.message}")
            return []

    def finish(self) -> List[DecodedEvent]:
        """Close the turn; fails tool calls left open by a truncated stream"""
        if self.turn.ended:
            return []

        logger.warning("[StreamDecoder] Stream ended without message_stop")
        failed = self.table.fail_open(
            lambda b: StreamParseError(
                f"Stream ended before tool call {b.id} was complete",
                block_index=b.stream_block_index,
            )
        )
        events = []
        for buffer in failed:
            if self.on_tool_failed:
                self.on_tool_failed(buffer, buffer.error)
            events.append(self._tool_failed_event(buffer))

        self.turn.stop_reason = self.turn.stop_reason or "truncated"
        self.turn.ended = True
        events.append(DecodedEvent(None, DecodedEventType.TURN_ENDED, {"stop_reason": self.turn.stop_reason}))
        return events

    # ------------------------------------------------------------------
    # Event handlers
    # ------------------------------------------------------------------

    def _handle(self, event: StreamEvent) -> List[DecodedEvent]:
        if event.type == StreamEventType.BLOCK_START:
            return self._on_block_start(event)
        if event.type == StreamEventType.BLOCK_DELTA:
            return self._on_block_delta(event)
        if event.type == StreamEventType.BLOCK_STOP:
            return self._on_block_stop(event)
        if event.type == StreamEventType.MESSAGE_START:
            message = event.data.get("message") or {}
            self.turn.message_id = message.get("id")
            self.turn.usage.update(message.get("usage") or {})
            return [DecodedEvent(None, DecodedEventType.MESSAGE_STARTED, {"message_id": self.turn.message_id})]
        if event.type == StreamEventType.MESSAGE_DELTA:
            delta = event.data.get("delta") or {}
            if delta.get("stop_reason"):
                self.turn.stop_reason = delta["stop_reason"]
            self.turn.usage.update(event.data.get("usage") or {})
            return [DecodedEvent(None, DecodedEventType.MESSAGE_DELTA, {"stop_reason": self.turn.stop_reason})]
        if event.type == StreamEventType.TURN_END:
            self.turn.ended = True
            return [DecodedEvent(None, DecodedEventType.TURN_ENDED, {"stop_reason": self.turn.stop_reason})]
        if event.type == StreamEventType.ERROR:
            error = event.data.get("error") or {}
            raise FatalModelError(
                f"Model stream error: {error.get('type', 'error')}: {error.get('message', 'unknown')}"
            )
        return []

    def _drop(self, index, reason: str) -> List[DecodedEvent]:
        self.dropped += 1
        logger.warning(f"[StreamDecoder] Dropping event for block {index!r}: {reason}")
        return []

    def _on_block_start(self, event: StreamEvent) -> List[DecodedEvent]:
        index = event.index
        block = event.data.get("content_block")
        if not isinstance(block, Mapping):
            raise StreamParseError("content_block_start without content_block", block_index=index)
        if not self.table.is_valid_index(index):
            return self._drop(index, "index out of range")
        if index in self.turn.text_blocks or index in self._ignored_blocks or index in self.table:
            return self._drop(index, "duplicate block start")

        block_type = block.get("type")
        if block_type == "tool_use":
            name = block.get("name")
            if not name:
                raise StreamParseError("tool_use block without name", block_index=index)
            buffer = self.table.open(index, name, block.get("id"))
            if buffer is None:
                return []
            # Some providers send the complete input up front
            initial = block.get("input")
            if isinstance(initial, Mapping) and initial:
                buffer.partial_arguments = json.dumps(initial)
            self.turn.tool_blocks[index] = buffer
            logger.info(f"[StreamDecoder] Tool call detected: {name} ({buffer.id}) at block {index}")
            return [DecodedEvent(buffer.id, DecodedEventType.TOOL_STARTED, {"name": name}, index)]

        if block_type == "text":
            self.turn.text_blocks[index] = block.get("text") or ""
            return [DecodedEvent(None, DecodedEventType.TEXT_STARTED, {}, index)]

        # thinking, redacted_thinking and anything newer are not routed
        self._ignored_blocks.add(index)
        return []

    def _on_block_delta(self, event: StreamEvent) -> List[DecodedEvent]:
        index = event.index
        delta = event.data.get("delta")
        if not isinstance(delta, Mapping):
            raise StreamParseError("content_block_delta without delta", block_index=index)
        if not self.table.is_valid_index(index):
            return self._drop(index, "index out of range")

        delta_type = delta.get("type")
        if delta_type == "input_json_delta":
            fragment = delta.get("partial_json") or ""
            buffer = self.table.append(index, fragment)
            if buffer is None:
                return []
            return [DecodedEvent(buffer.id, DecodedEventType.ARGUMENT_DELTA, {"fragment": fragment}, index)]

        if delta_type == "text_delta":
            if index not in self.turn.text_blocks:
                return self._drop(index, "text delta for unknown block")
            text = delta.get("text") or ""
            self.turn.text_blocks[index] += text
            return [DecodedEvent(None, DecodedEventType.TEXT_DELTA, {"text": text}, index)]

        if delta_type in ("thinking_delta", "signature_delta", "citations_delta"):
            return []

        raise StreamParseError(f"Unknown delta type: {delta_type!r}", block_index=index)

    def _on_block_stop(self, event: StreamEvent) -> List[DecodedEvent]:
        index = event.index
        if not self.table.is_valid_index(index):
            return self._drop(index, "index out of range")
        if index in self.turn.text_blocks:
            return [DecodedEvent(None, DecodedEventType.TEXT_COMPLETED, {"text": self.turn.text_blocks[index]}, index)]
        if index in self._ignored_blocks:
            return []
        if index not in self.table:
            return self._drop(index, "stop for unknown block")

        try:
            buffer = self.table.close(index)
        except ArgumentParseError as e:
            buffer = self.table.get(index)
            if self.on_tool_failed:
                self.on_tool_failed(buffer, e)
            return [self._tool_failed_event(buffer)]

        if buffer is None:
            return []

        execution_id = self.on_tool_complete(buffer) if self.on_tool_complete else None
        return [DecodedEvent(
            buffer.id,
            DecodedEventType.TOOL_COMPLETED,
            {"name": buffer.name, "arguments": buffer.arguments, "execution_id": execution_id},
            index,
        )]

    @staticmethod
    def _tool_failed_event(buffer: ToolCallBuffer) -> DecodedEvent:
        return DecodedEvent(
            buffer.id,
            DecodedEventType.TOOL_FAILED,
            {"name": buffer.name, "error": buffer.error.to_dict() if buffer.error else None},
            buffer.stream_block_index,
        )


# ----------------------------------------------------------------------
# Server-Sent Events framing
# ----------------------------------------------------------------------

def parse_sse_frame(frame: str) -> Optional[Dict[str, Any]]:
    """
    Parse one SSE frame into a raw event dict.

    Returns None for comments, keep-alives and the [DONE] sentinel.

    Raises:
        StreamParseError: the data payload is not JSON
    """
    event_name = None
    data_lines: List[str] = []
    for line in frame.split("\n"):
        if not line or line.startswith(":"):
            continue
        if line.startswith("event:"):
            event_name = line[6:].strip()
        elif line.startswith("data:"):
            data_lines.append(line[5:].lstrip(" "))

    if not data_lines:
        return None
    data = "\n".join(data_lines)
    if data.strip() == "[DONE]":
        return None

    try:
        payload = json.loads(data)
    except json.JSONDecodeError as e:
        raise StreamParseError(f"Undecodable SSE data: {e.msg}") from None

    if isinstance(payload, dict) and "type" not in payload and event_name:
        payload["type"] = event_name
    return payload


async def iter_sse_events(chunks: AsyncIterable[Union[str, bytes]]) -> AsyncIterator[Dict[str, Any]]:
    """Split a chunked SSE body into raw event dicts"""
    decoder = codecs.getincrementaldecoder("utf-8")()
    pending = ""

    async for chunk in chunks:
        text = decoder.decode(chunk) if isinstance(chunk, bytes) else chunk
        # CRLF may straddle two chunks
        pending = (pending + text).replace("\r\n", "\n")
        while "\n\n" in pending:
            frame, pending = pending.split("\n\n", 1)
            payload = _safe_parse_frame(frame)
            if payload is not None:
                yield payload

    pending += decoder.decode(b"", final=True)
    if pending.strip():
        payload = _safe_parse_frame(pending)
        if payload is not None:
            yield payload


def _safe_parse_frame(frame: str) -> Optional[Dict[str, Any]]:
    try:
        return parse_sse_frame(frame)
    except StreamParseError as e:
        logger.warning(f"[SSE] Skipping frame: {e.message}")
        return None
