"""Views reconstructed by replaying a card's execution log."""

from __future__ import annotations

from collections.abc import Iterable

from kanban_agent.execution.models import (
    ExecutionLogEntry,
    LogStep,
    OutstandingQuestion,
    TodoItem,
)


def build_todo_list(entries: Iterable[ExecutionLogEntry]) -> list[TodoItem]:
    """Latest state per todo id, in the order ids were first seen."""

    todos: dict[str, TodoItem] = {}
    for entry in entries:
        if entry.step != LogStep.TODO.value:
            continue
        data = entry.data or {}
        todo_id = str(data.get("id") or "unknown")
        todos[todo_id] = TodoItem(
            id=todo_id,
            subject=str(data.get("subject") or entry.message),
            status=str(data.get("status") or "pending"),
        )
    return list(todos.values())


def find_outstanding_question(
    entries: Iterable[ExecutionLogEntry],
) -> OutstandingQuestion | None:
    """Most recent question, present only while questions outnumber answers."""

    questions: list[ExecutionLogEntry] = []
    answers = 0
    for entry in entries:
        if entry.step == LogStep.QUESTION.value:
            questions.append(entry)
        elif entry.step == LogStep.ANSWER.value:
            answers += 1
    if len(questions) <= answers:
        return None

    latest = questions[-1]
    data = latest.data or {}
    options = data.get("options")
    return OutstandingQuestion(
        question_id=latest.entry_id,
        question=str(data.get("question", latest.message) or ""),
        header=str(data.get("header") or ""),
        options=list(options) if isinstance(options, list) else [],
        multi_select=bool(data.get("multiSelect", False)),
    )
