"""
Scripted model client for testing
Replays streamed turns as raw Messages API events without calling the API
"""
from typing import Any, Callable, Dict, List, Optional, Union
import asyncio
import copy
import json

from toolstream.utils.claude_stream_client import ModelClient


def message_start(message_id: str = "msg_test") -> Dict[str, Any]:
    return {
        "type": "message_start",
        "message": {
            "id": message_id,
            "type": "message",
            "role": "assistant",
            "content": [],
            "usage": {"input_tokens": 10, "output_tokens": 0},
        },
    }


def message_end(stop_reason: str = "end_turn") -> List[Dict[str, Any]]:
    return [
        {"type": "message_delta", "delta": {"stop_reason": stop_reason}, "usage": {"output_tokens": 42}},
        {"type": "message_stop"},
    ]


def text_block(index: int, text: str, chunk_size: int = 16) -> List[Dict[str, Any]]:
    """Text block streamed in chunks"""
    events = [{"type": "content_block_start", "index": index, "content_block": {"type": "text", "text": ""}}]
    for i in range(0, len(text), chunk_size):
        events.append({
            "type": "content_block_delta",
            "index": index,
            "delta": {"type": "text_delta", "text": text[i:i + chunk_size]},
        })
    events.append({"type": "content_block_stop", "index": index})
    return events


def tool_block_start(index: int, name: str, tool_id: Optional[str] = None) -> Dict[str, Any]:
    return {
        "type": "content_block_start",
        "index": index,
        "content_block": {"type": "tool_use", "id": tool_id or f"toolu_{index:02d}", "name": name, "input": {}},
    }


def argument_deltas(index: int, arguments: Union[Dict[str, Any], str], chunk_size: int = 7) -> List[Dict[str, Any]]:
    """input_json_delta events; a str is sent as-is (may be invalid JSON)"""
    text = arguments if isinstance(arguments, str) else json.dumps(arguments)
    return [
        {
            "type": "content_block_delta",
            "index": index,
            "delta": {"type": "input_json_delta", "partial_json": text[i:i + chunk_size]},
        }
        for i in range(0, len(text), chunk_size)
    ]


def block_stop(index: int) -> Dict[str, Any]:
    return {"type": "content_block_stop", "index": index}


def tool_block(
    index: int,
    name: str,
    arguments: Union[Dict[str, Any], str],
    tool_id: Optional[str] = None,
    chunk_size: int = 7,
) -> List[Dict[str, Any]]:
    """Complete tool_use block: start, argument deltas, stop"""
    return (
        [tool_block_start(index, name, tool_id)]
        + argument_deltas(index, arguments, chunk_size)
        + [block_stop(index)]
    )


def turn(*blocks: List[Dict[str, Any]], stop_reason: Optional[str] = None) -> List[Dict[str, Any]]:
    """A whole model turn from block event lists"""
    events = [message_start()]
    has_tools = False
    for block in blocks:
        events.extend(block)
        has_tools = has_tools or any(
            e.get("content_block", {}).get("type") == "tool_use" for e in block
        )
    events.extend(message_end(stop_reason or ("tool_use" if has_tools else "end_turn")))
    return events


def text_turn(text: str = "All done.") -> List[Dict[str, Any]]:
    return turn(text_block(0, text))


Script = Union[List[Any], Exception, Callable[[List[Dict[str, Any]]], List[Any]]]


class ScriptedModelClient(ModelClient):
    """
    Model client that replays one script per turn.

    A script is a list of raw events (an Exception inside the list is raised
    at that point), an Exception (raised before any event) or a callable
    taking the conversation and returning a list. After the last script the
    client answers with a plain text turn, or repeats the last script when
    repeat_last is set.
    """

    def __init__(self, scripts: Optional[List[Script]] = None, repeat_last: bool = False, delay: float = 0):
        self.scripts = list(scripts or [])
        self.repeat_last = repeat_last
        self.delay = delay
        self.calls: List[Dict[str, Any]] = []
        self._used_ids = set()

    @property
    def call_count(self) -> int:
        return len(self.calls)

    async def stream_turn(self, messages, tools, system=None):
        self.calls.append({
            "messages": copy.deepcopy(messages),
            "tools": [t["name"] for t in tools],
            "system": system,
        })
        index = len(self.calls) - 1
        if index < len(self.scripts):
            script = self.scripts[index]
        elif self.repeat_last and self.scripts:
            script = self.scripts[-1]
        else:
            script = text_turn()

        if callable(script):
            script = script(messages)
        if isinstance(script, Exception):
            raise script

        for event in script:
            if isinstance(event, Exception):
                raise event
            await asyncio.sleep(self.delay)
            yield self._unique_ids(event, index)

    def _unique_ids(self, event: Dict[str, Any], call_index: int) -> Dict[str, Any]:
        """The API never reuses a tool_use id; replayed scripts must not either"""
        block = event.get("content_block") if isinstance(event, dict) else None
        if not block or block.get("type") != "tool_use" or not block.get("id"):
            return event
        if block["id"] in self._used_ids:
            event = copy.deepcopy(event)
            event["content_block"]["id"] = f"{block['id']}_{call_index}"
        self._used_ids.add(event["content_block"]["id"])
        return event
