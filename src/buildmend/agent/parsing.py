"""Extract tool-call directives from free-text reasoning replies.

Two shapes are recognised::

    TOOL_CALL: read_file({"file_path": "src/main.ts"})
    read_file({"file_path": "src/main.ts"})

The bare form is accepted only for tools in the catalogue. Arguments are
parsed as strict JSON first, then once more after a lenient pass that
swaps single quotes and quotes bare keys. Calls that still fail to parse
are skipped.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Iterable

from buildmend.agent.state import ToolCall

logger = logging.getLogger(__name__)

_DIRECTIVE = re.compile(r"TOOL_CALL:\s*([A-Za-z_]\w*)\s*\(")
_BARE_KEY = re.compile(r"([{,]\s*)([A-Za-z_]\w*)\s*:")
_decoder = json.JSONDecoder()


def _balanced_object(text: str, start: int) -> str | None:
    """Return the ``{...}`` starting at *start*, honouring nested braces and strings."""
    if start >= len(text) or text[start] != "{":
        return None
    depth = 0
    quote: str | None = None
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if quote:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == quote:
                quote = None
            continue
        if ch in ("'", '"'):
            quote = ch
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return text[start : i + 1]
    return None


def _lenient(raw: str) -> str:
    fixed = raw.replace("'", '"')
    return _BARE_KEY.sub(r'\1"\2":', fixed)


def parse_arguments(text: str, start: int) -> dict[str, Any] | None:
    """Parse the argument object that begins at or after *start*."""
    while start < len(text) and text[start].isspace():
        start += 1
    if start < len(text) and text[start] == ")":
        return {}

    try:
        value, _ = _decoder.raw_decode(text, start)
        if isinstance(value, dict):
            return value
    except ValueError:
        pass

    raw = _balanced_object(text, start)
    if raw is None:
        return None
    try:
        value = json.loads(_lenient(raw))
    except ValueError:
        return None
    return value if isinstance(value, dict) else None


def parse_tool_calls(text: str, known_tools: Iterable[str] = ()) -> list[ToolCall]:
    """All tool calls found in *text*, in order of appearance."""
    found: list[tuple[int, str, dict[str, Any]]] = []
    consumed: list[tuple[int, int]] = []

    for m in _DIRECTIVE.finditer(text):
        name = m.group(1)
        consumed.append((m.start(), m.end()))
        args = parse_arguments(text, m.end())
        if args is None:
            logger.info("Skipping unparsable tool call to %s", name)
            continue
        found.append((m.start(), name, args))

    known = set(known_tools)
    if known:
        bare = re.compile(r"\b(" + "|".join(sorted(map(re.escape, known))) + r")\s*\(\s*(?=\{)")
        for m in bare.finditer(text):
            if any(s <= m.start() < e for s, e in consumed):
                continue
            args = parse_arguments(text, m.end())
            if args is None:
                logger.info("Skipping unparsable tool call to %s", m.group(1))
                continue
            found.append((m.start(), m.group(1), args))

    found.sort(key=lambda item: item[0])
    return [
        ToolCall(id=f"call_{i}", name=name, arguments=args)
        for i, (_, name, args) in enumerate(found, start=1)
    ]
