"""Domain models for card execution, its log and derived views."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class ExecutionStatus(str, Enum):
    """Execution lifecycle persisted on the card."""

    RUNNING = "running"
    PAUSED_QUESTION = "paused_question"
    COMPLETED = "completed"
    FAILED = "failed"


class LogStep(str, Enum):
    """Step labels of execution log entries and outbound messages."""

    START = "start"
    AI_OUTPUT = "ai_output"
    TOOL_START = "tool_start"
    TOOL_COMPLETE = "tool_complete"
    TOOL_RESULT = "tool_result"
    TODO = "todo"
    QUESTION = "question"
    ANSWER = "answer"
    EXECUTING = "executing"
    EXECUTED = "executed"
    DONE = "done"
    ERROR = "error"


class CardColumn(str, Enum):
    INBOX = "inbox"
    IN_PROCESS = "in_process"
    REVIEW = "review"
    AI_DO = "ai_do"
    HUMAN_DO = "human_do"
    DONE = "done"


@dataclass(slots=True)
class CardCreate:
    """Input payload for creating a card."""

    title: str
    body: str | None = None
    proposed_action: str | None = None
    source_type: str = "manual"
    source_id: str | None = None
    column_name: CardColumn = CardColumn.INBOX


@dataclass(slots=True)
class CardView:
    """Card fields the orchestrator reads and mutates."""

    card_id: int
    board_id: int
    title: str
    body: str | None
    proposed_action: str | None
    source_type: str
    source_id: str | None
    column_name: CardColumn
    session_id: str | None
    execution_status: ExecutionStatus | None
    worktree_path: str | None
    branch_name: str | None
    execution_result: str | None
    created_at: datetime
    updated_at: datetime

    def to_payload(self) -> dict[str, Any]:
        return {
            "id": self.card_id,
            "board_id": self.board_id,
            "title": self.title,
            "body": self.body,
            "proposed_action": self.proposed_action,
            "source_type": self.source_type,
            "source_id": self.source_id,
            "column_name": self.column_name.value,
            "session_id": self.session_id,
            "execution_status": (
                self.execution_status.value if self.execution_status is not None else None
            ),
            "worktree_path": self.worktree_path,
            "branch_name": self.branch_name,
            "execution_result": self.execution_result,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass(slots=True)
class ExecutionLogEntry:
    """One persisted execution log row."""

    entry_id: int
    card_id: int
    session_id: str | None
    step: str
    message: str
    data: dict[str, Any] | None
    created_at: datetime

    def to_payload(self) -> dict[str, Any]:
        return {
            "id": self.entry_id,
            "card_id": self.card_id,
            "session_id": self.session_id,
            "step": self.step,
            "message": self.message,
            "data": self.data,
            "created_at": self.created_at.isoformat(),
        }


@dataclass(slots=True)
class StreamMessage:
    """One outbound message of an attempt's live stream."""

    step: LogStep
    message: str
    data: dict[str, Any] | None = None
    card: CardView | None = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"step": self.step.value, "message": self.message}
        if self.data is not None:
            payload["data"] = self.data
        if self.card is not None:
            payload["card"] = self.card.to_payload()
        return payload


@dataclass(slots=True)
class TodoItem:
    id: str
    subject: str
    status: str


@dataclass(slots=True)
class OutstandingQuestion:
    """Most recent unanswered question replayed from the log."""

    question_id: int
    question: str
    header: str
    options: list[Any] = field(default_factory=list)
    multi_select: bool = False


@dataclass(slots=True)
class WorktreeInfo:
    worktree_path: str
    branch_name: str


@dataclass(slots=True)
class DiffFile:
    path: str
    status: str
    additions: int
    deletions: int
    diff: str

    def to_payload(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "status": self.status,
            "additions": self.additions,
            "deletions": self.deletions,
            "diff": self.diff,
        }


@dataclass(slots=True)
class DiffStats:
    total_files: int
    total_additions: int
    total_deletions: int


@dataclass(slots=True)
class WorktreeDiff:
    files: list[DiffFile]
    stats: DiffStats

    def to_payload(self) -> dict[str, Any]:
        return {
            "files": [item.to_payload() for item in self.files],
            "stats": {
                "totalFiles": self.stats.total_files,
                "totalAdditions": self.stats.total_additions,
                "totalDeletions": self.stats.total_deletions,
            },
        }
