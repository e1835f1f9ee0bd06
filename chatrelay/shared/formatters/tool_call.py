"""Plain-text summaries of tool inputs for the ``toolUse`` event.

Registry-based: most tools need no summary (the client renders the raw
input), so only tools with a registered formatter get one. Adding a new
summary requires a single decorated function:

    @tool_formatter("MyTool")
    def _format_my_tool(args):
        return "..."
"""

from __future__ import annotations

from typing import Any, Callable

_FORMATTERS: dict[str, Callable[[dict[str, Any]], str]] = {}

_TODO_STATUS_TAGS = {
    "completed": "[DONE]",
    "in_progress": "[IN PROGRESS]",
}


def tool_formatter(name: str):
    """Decorator to register a summary formatter for a tool name."""

    def decorator(fn: Callable[[dict[str, Any]], str]):
        _FORMATTERS[name] = fn
        return fn

    return decorator


def format_tool_input(name: str, tool_input: Any) -> str:
    """Summary text for a tool invocation, or ``""`` when there is none."""
    formatter = _FORMATTERS.get(name)
    if formatter is None or not isinstance(tool_input, dict):
        return ""
    return formatter(tool_input)


@tool_formatter("TodoWrite")
def _format_todo_write(args: dict[str, Any]) -> str:
    todos = args.get("todos")
    if not isinstance(todos, list):
        return ""
    lines = ["Todo List Update:"]
    for todo in todos:
        if not isinstance(todo, dict):
            continue
        tag = _TODO_STATUS_TAGS.get(todo.get("status"), "[TODO]")
        lines.append(f"{tag} {todo.get('content', '')} (priority: {todo.get('priority')})")
    return "\n".join(lines)
