"""Readable renderings of agent tool calls for the log and live stream."""

from __future__ import annotations

from typing import Any

QUESTION_TOOL = "AskUserQuestion"
TASK_TRACKING_TOOLS = frozenset({"TaskCreate", "TaskUpdate", "TodoWrite"})
TRUNCATION_MARKER = "\n... (truncated)"


def summarize_tool_input(tool_name: str, tool_input: dict[str, Any]) -> str:
    """One-line summary built from the tool's most salient input fields."""

    if tool_name == "Bash":
        return f"Bash: {_field(tool_input, 'command')}"
    if tool_name in {"Read", "Write", "Edit"}:
        return f"{tool_name}: {_field(tool_input, 'file_path')}"
    if tool_name == "Glob":
        return f"Glob: {_field(tool_input, 'pattern')}"
    if tool_name == "Grep":
        return f"Grep: {_field(tool_input, 'pattern')} {_field(tool_input, 'path')}".strip()
    return f"{tool_name}({', '.join(tool_input)})"


def truncate_tool_result(content: str, max_chars: int) -> str:
    if len(content) <= max_chars:
        return content
    return content[:max_chars] + TRUNCATION_MARKER


def extract_todos(tool_name: str, tool_input: dict[str, Any]) -> list[dict[str, str]]:
    """Todo payloads keyed by a stable id taken from the tool input."""

    if tool_name == "TodoWrite":
        items = tool_input.get("todos")
        if not isinstance(items, list):
            return []
        todos: list[dict[str, str]] = []
        for item in items:
            if not isinstance(item, dict):
                continue
            subject = _field(item, "content") or "Task"
            todos.append(
                {
                    "id": _field(item, "id") or subject,
                    "subject": subject,
                    "status": _field(item, "status") or "pending",
                },
            )
        return todos

    subject = _field(tool_input, "subject")
    return [
        {
            "id": subject or _field(tool_input, "taskId") or "unknown",
            "subject": subject or "Task",
            "status": _field(tool_input, "status") or "pending",
        },
    ]


def extract_first_question(tool_input: dict[str, Any]) -> dict[str, Any]:
    """First question of an interactive-question call; missing fields become empty."""

    questions = tool_input.get("questions")
    first: dict[str, Any] = {}
    if isinstance(questions, list) and questions and isinstance(questions[0], dict):
        first = questions[0]
    options = first.get("options")
    return {
        "question": _field(first, "question"),
        "header": _field(first, "header"),
        "options": options if isinstance(options, list) else [],
        "multiSelect": bool(first.get("multiSelect", False)),
    }


def _field(source: dict[str, Any], key: str) -> str:
    value = source.get(key)
    if value is None:
        return ""
    return value if isinstance(value, str) else str(value)
