"""
Tool argument canonicalization.

This is the only place where argument keys are normalized. Callers get a
plain dict with string keys and never see symbol-style (":path") keys.
"""

import json
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from toolstream.core.exceptions import ArgumentParseError


class _DuplicateKey(ValueError):
    def __init__(self, key: str):
        super().__init__(key)
        self.key = key


def normalize_key(key: Any) -> str:
    """':path', ' path ' and 'path' all become 'path'"""
    text = str(key).strip()
    if text.startswith(":"):
        text = text[1:].strip()
    return text


def _build_object(pairs: List[Tuple[Any, Any]]) -> Dict[str, Any]:
    result: Dict[str, Any] = {}
    for key, value in pairs:
        canonical = normalize_key(key)
        if canonical in result:
            raise _DuplicateKey(canonical)
        result[canonical] = value
    return result


def _normalize(value: Any) -> Any:
    if isinstance(value, Mapping):
        return _build_object([(k, _normalize(v)) for k, v in value.items()])
    if isinstance(value, (list, tuple)):
        return [_normalize(item) for item in value]
    return value


def parse_arguments(
    raw: Union[str, Mapping, None],
    tool_name: Optional[str] = None,
    tool_call_id: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Parse accumulated argument text into the canonical argument dict.

    Empty text parses to {}. Keys are normalized recursively; two spellings
    of the same key in one object are rejected rather than merged.

    Raises:
        ArgumentParseError: invalid JSON, non-object top level or duplicate keys
    """
    raw_text = raw if isinstance(raw, str) else None

    def error(reason: str) -> ArgumentParseError:
        return ArgumentParseError(
            reason,
            tool_name=tool_name,
            tool_call_id=tool_call_id,
            raw_arguments=raw_text,
        )

    if raw is None:
        return {}

    try:
        if isinstance(raw, str):
            if not raw.strip():
                return {}
            parsed = json.loads(raw, object_pairs_hook=_build_object)
        else:
            parsed = _normalize(raw)
    except _DuplicateKey as e:
        raise error(f"duplicate key '{e.key}'") from None
    except json.JSONDecodeError as e:
        raise error(f"invalid JSON ({e.msg} at position {e.pos})") from None

    if not isinstance(parsed, dict):
        raise error(f"expected a JSON object, got {type(parsed).__name__}")

    return parsed
