"""
Partial argument extraction for streamed tool calls.

WHAT THIS FILE DOES:
-------------------
While a model streams a tool call, its arguments arrive as a growing
prefix of a JSON object literal:

    {"path": "src/ma
    {"path": "src/main.py", "conte
    {"path": "src/main.py", "content": "print('hi')"}

json.loads() fails on every line but the last. The UI still wants to show
which file is being written as soon as that is known, so this module
pulls out only the key/value pairs that are already FULLY formed.

RULES:
-----
1. A string value is complete once its closing (unescaped) quote arrives.
2. A number/true/false/null is complete only when a ',' or '}' follows it.
   A trailing "12" could still become "123", so it is left out.
3. Scanning stops at the first pair that is incomplete or unparseable.
   Everything before it is returned.
4. Nested objects and arrays stop the scan (tool arguments are flat).
5. Never raises. Garbage in gives {} out.

The result is a fresh snapshot every time; callers recompute it from the
whole argument string on each delta instead of patching previous output.
"""

import json
import re
from typing import Any


_LITERAL_RE = re.compile(
    r"-?(?:0|[1-9]\d*)(?:\.\d+)?(?:[eE][+-]?\d+)?|true|false|null"
)
_WHITESPACE = " \t\r\n"
_TERMINATORS = ",}"

# strict=False tolerates raw control characters inside strings, which
# models emit regularly (unescaped newlines in file content).
_DECODER = json.JSONDecoder(strict=False)

_INCOMPLETE = object()


def _skip_ws(raw: str, pos: int) -> int:
    while pos < len(raw) and raw[pos] in _WHITESPACE:
        pos += 1
    return pos


def _scan_string(raw: str, start: int) -> int:
    """
    Find the end of the string literal opening at raw[start].

    Returns:
        Index just past the closing quote, or -1 if the quote has not
        arrived yet.
    """
    pos = start + 1
    while pos < len(raw):
        ch = raw[pos]
        if ch == "\\":
            pos += 2
            continue
        if ch == '"':
            return pos + 1
        pos += 1
    return -1


def _read_string(raw: str, start: int) -> tuple[Any, int]:
    end = _scan_string(raw, start)
    if end < 0:
        return _INCOMPLETE, start
    try:
        return _DECODER.decode(raw[start:end]), end
    except ValueError:
        return _INCOMPLETE, start


def _read_literal(raw: str, start: int) -> tuple[Any, int]:
    match = _LITERAL_RE.match(raw, start)
    if not match:
        return _INCOMPLETE, start
    after = _skip_ws(raw, match.end())
    if after >= len(raw) or raw[after] not in _TERMINATORS:
        return _INCOMPLETE, start
    return json.loads(match.group()), match.end()


def extract_complete_args(raw: Any) -> dict[str, Any]:
    """
    Extract the fully-formed key/value pairs from a partial JSON object.

    Args:
        raw: Argument text received so far (any prefix of a flat object)

    Returns:
        Dict of every pair that can no longer change as more text arrives

    Example:
        >>> extract_complete_args('{"a": "x", "b": "incomple')
        {'a': 'x'}
        >>> extract_complete_args('{"n": 10, "b": true, "p": "unfin')
        {'n': 10, 'b': True}
    """
    if not isinstance(raw, str):
        return {}

    pos = _skip_ws(raw, 0)
    if pos >= len(raw) or raw[pos] != "{":
        return {}
    pos += 1

    result: dict[str, Any] = {}
    while True:
        pos = _skip_ws(raw, pos)
        if pos >= len(raw) or raw[pos] != '"':
            break

        key, pos = _read_string(raw, pos)
        if key is _INCOMPLETE:
            break

        pos = _skip_ws(raw, pos)
        if pos >= len(raw) or raw[pos] != ":":
            break
        pos = _skip_ws(raw, pos + 1)
        if pos >= len(raw):
            break

        if raw[pos] == '"':
            value, pos = _read_string(raw, pos)
        else:
            value, pos = _read_literal(raw, pos)
        if value is _INCOMPLETE:
            break

        result[key] = value

        pos = _skip_ws(raw, pos)
        if pos < len(raw) and raw[pos] == ",":
            pos += 1
            continue
        break

    return result
