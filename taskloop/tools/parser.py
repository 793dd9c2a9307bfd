"""
Tool-call parser.

Model output embeds tool calls as nested tags:

    <write_file>
    <path>src/app.py</path>
    <content>
    print("hi")
    </content>
    </write_file>

The outer tag names the tool and each inner tag is one argument. Parsing
never raises: an unterminated or malformed tag is left as prose.
"""

from __future__ import annotations

import re

from taskloop.tools import RAW_ARGS, TOOL_ARGS, ToolInvocation

_TAG = re.compile(r"<(\w+)>(.*?)</\1>", re.DOTALL)

# Tags that hold prose rather than a call
PROSE_TAGS = frozenset({"thinking"})


def _strip_one_newline(value: str) -> str:
    if value.startswith("\r\n"):
        value = value[2:]
    elif value.startswith("\n"):
        value = value[1:]
    if value.endswith("\r\n"):
        value = value[:-2]
    elif value.endswith("\n"):
        value = value[:-1]
    return value


def _parse_args(body: str) -> dict[str, str]:
    args: dict[str, str] = {}
    for match in _TAG.finditer(body):
        name, value = match.group(1), match.group(2)
        if name in args:
            continue
        args[name] = _strip_one_newline(value) if name in RAW_ARGS else value.strip()
    return args


def parse_tool_calls(text: str) -> list[ToolInvocation]:
    """
    Every tool call in ``text``, in document order.

    An outer element counts as a call when its name is a known tool or it
    carries at least one argument element; unknown names are returned as
    calls so the dispatcher can report them.
    """
    if not text:
        return []

    calls: list[ToolInvocation] = []
    for match in _TAG.finditer(text):
        name, body = match.group(1), match.group(2)
        if name in PROSE_TAGS:
            continue
        args = _parse_args(body)
        if name not in TOOL_ARGS and not args:
            continue
        calls.append(ToolInvocation(name=name, args=args))
    return calls
