from __future__ import annotations

from typing import Any, Iterable

from .transcript import ToolType

DEFAULT_HIDDEN_TOOLS = frozenset({"report_intent", "ask_user"})

# Tools whose start only updates the intent indicator.
INTENT_TOOL = "report_intent"

_SHELL_TOOLS = frozenset({"bash", "shell"})
_FILE_EDIT_TOOLS = frozenset({"edit", "create", "write"})
_FILE_READ_TOOLS = frozenset({"view", "read", "glob", "grep"})

# Arg keys never used as a generic subtitle.
_TITLE_SKIP = frozenset({"path", "file", "command", "cmd", "completed", "success", "_toolName"})
_TITLE_MAX_CHARS = 100


def tool_type_for(tool_name: str) -> ToolType:
    if tool_name in _SHELL_TOOLS:
        return ToolType.SHELL
    if tool_name in _FILE_EDIT_TOOLS:
        return ToolType.FILE_EDIT
    if tool_name in _FILE_READ_TOOLS:
        return ToolType.FILE_READ
    return ToolType.GENERIC


def _str_or(value: Any, fallback: str) -> str:
    if value is None:
        return fallback
    return str(value)


def tool_title(tool_name: str, tool_type: ToolType, args: dict[str, Any]) -> str:
    if tool_type is ToolType.SHELL:
        return _str_or(args.get("command"), tool_name)
    if tool_type is ToolType.FILE_EDIT:
        return _str_or(args.get("path"), tool_name)
    if tool_type is ToolType.FILE_READ:
        value = args.get("path")
        if value is None:
            value = args.get("pattern")
        return _str_or(value, tool_name)
    if tool_name == "task":
        return f"Sub-agent: {_str_or(args.get('description'), tool_name)}"
    for key, value in args.items():
        if key in _TITLE_SKIP:
            continue
        if isinstance(value, str) and 0 < len(value) <= _TITLE_MAX_CHARS:
            return f"{tool_name}: {value}"
    return tool_name


def subagent_title(display_name: str, description: str) -> str:
    return f"Sub-agent {display_name}: {description}"


def intent_from_args(args: dict[str, Any]) -> str:
    value = args.get("intent")
    if value is None:
        value = args.get("description")
    return "" if value is None else str(value)


def result_key(tool_type: ToolType, payload: dict[str, Any]) -> str | None:
    """
    Payload key a completion result is stored under, or None to drop it.

    Shell results only fill `output` when nothing was streamed.
    """

    if tool_type is ToolType.SHELL:
        return None if payload.get("output") else "output"
    if tool_type is ToolType.FILE_READ:
        return "content"
    return "result"


def normalize_hidden(names: Iterable[str] | None) -> frozenset[str]:
    if names is None:
        return DEFAULT_HIDDEN_TOOLS
    return frozenset(str(n) for n in names)
