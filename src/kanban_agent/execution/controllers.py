"""Controllers for board and execution CLI commands."""

from __future__ import annotations

import json
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from kanban_agent.config import Settings
from kanban_agent.execution.attempts import ActiveAttempts
from kanban_agent.execution.backend import CliAgentBackend
from kanban_agent.execution.models import CardCreate, ExecutionStatus, StreamMessage
from kanban_agent.execution.orchestrator import ExecutionOrchestrator
from kanban_agent.execution.repository import ExecutionRepository
from kanban_agent.git.worktree import WorktreeManager


@dataclass(slots=True)
class CardAddCommand:
    """CLI input for card creation."""

    db_path: Path | None
    title: str
    body: str | None
    proposed_action: str | None


@dataclass(slots=True)
class CardListCommand:
    db_path: Path | None
    limit: int


@dataclass(slots=True)
class ExecPrepareCommand:
    """CLI input for worktree preparation."""

    db_path: Path | None
    card_id: int
    repo_path: Path


@dataclass(slots=True)
class ExecStartCommand:
    """CLI input for a fresh execution attempt."""

    db_path: Path | None
    card_id: int
    prompt: str | None


@dataclass(slots=True)
class ExecAnswerCommand:
    """CLI input for answering a paused card."""

    db_path: Path | None
    card_id: int
    answer: str


@dataclass(slots=True)
class ExecInspectCommand:
    """CLI input for log, todo, question and diff inspection."""

    db_path: Path | None
    card_id: int
    output_format: str = "table"


class JsonLinesSink:
    """Outbound stream writing one JSON object per line."""

    def __init__(self, write_line: Callable[[str], None]) -> None:
        self._write_line = write_line
        self.closed = False

    def send(self, message: StreamMessage) -> None:
        if self.closed:
            return
        self._write_line(json.dumps(message.to_payload(), ensure_ascii=False))

    def close(self) -> None:
        self.closed = True


class ExecutionCliController:
    """Coordinates card seeding, execution attempts and their inspection."""

    def add_card(self, command: CardAddCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            card = repository.create_card(
                CardCreate(
                    title=command.title,
                    body=command.body,
                    proposed_action=command.proposed_action,
                ),
            )
        return [f"Card created: card_id={card.card_id} title={card.title}"]

    def list_cards(self, command: CardListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            cards = repository.list_cards(limit=command.limit)
        if not cards:
            return ["No cards."]
        lines = [f"Cards: {len(cards)}"]
        for card in cards:
            status = card.execution_status.value if card.execution_status else "-"
            lines.append(
                f"- {card.card_id} [{card.column_name.value}] {card.title} "
                f"execution={status}",
            )
        return lines

    def prepare(self, command: ExecPrepareCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _orchestrator(settings) as orchestrator:
            info = orchestrator.prepare_workspace(command.card_id, command.repo_path)
        return [
            "Worktree ready: "
            f"card_id={command.card_id} path={info.worktree_path} branch={info.branch_name}",
        ]

    def start(
        self,
        command: ExecStartCommand,
        write_line: Callable[[str], None],
    ) -> ExecutionStatus | None:
        settings = Settings.from_env(db_path=command.db_path)
        with _orchestrator(settings) as orchestrator:
            return orchestrator.start(
                command.card_id,
                JsonLinesSink(write_line),
                prompt=command.prompt,
            )

    def answer(
        self,
        command: ExecAnswerCommand,
        write_line: Callable[[str], None],
    ) -> ExecutionStatus | None:
        settings = Settings.from_env(db_path=command.db_path)
        with _orchestrator(settings) as orchestrator:
            return orchestrator.answer(command.card_id, command.answer, JsonLinesSink(write_line))

    def log(self, command: ExecInspectCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _orchestrator(settings) as orchestrator:
            entries = orchestrator.get_log(command.card_id)
        if command.output_format == "json":
            return [json.dumps(entry.to_payload(), ensure_ascii=False) for entry in entries]
        if not entries:
            return [f"No execution log for card {command.card_id}."]
        return [
            f"{entry.created_at.isoformat(timespec='seconds')} {entry.step}: {entry.message}"
            for entry in entries
        ]

    def todos(self, command: ExecInspectCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _orchestrator(settings) as orchestrator:
            todos = orchestrator.todos(command.card_id)
        if not todos:
            return ["No todos."]
        return [f"[{todo.status}] {todo.subject}" for todo in todos]

    def question(self, command: ExecInspectCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _orchestrator(settings) as orchestrator:
            question = orchestrator.outstanding_question(command.card_id)
        if question is None:
            return ["No outstanding question."]
        lines = [f"Question {question.question_id}: {question.question}"]
        if question.header:
            lines.append(f"header={question.header}")
        for option in question.options:
            label = option.get("label", "") if isinstance(option, dict) else str(option)
            lines.append(f"- {label}")
        if question.multi_select:
            lines.append("multi-select: yes")
        return lines

    def diff(self, command: ExecInspectCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _orchestrator(settings) as orchestrator:
            diff = orchestrator.get_diff(command.card_id)
        if command.output_format == "json":
            return [json.dumps(diff.to_payload(), ensure_ascii=False)]
        lines = [
            "Diff: "
            f"files={diff.stats.total_files} "
            f"additions={diff.stats.total_additions} "
            f"deletions={diff.stats.total_deletions}",
        ]
        for item in diff.files:
            lines.append(f"- {item.status} {item.path} +{item.additions} -{item.deletions}")
        return lines


@contextmanager
def _repository(settings: Settings) -> Iterator[ExecutionRepository]:
    repository = ExecutionRepository(
        db_path=settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


@contextmanager
def _orchestrator(settings: Settings) -> Iterator[ExecutionOrchestrator]:
    with _repository(settings) as repository:
        yield ExecutionOrchestrator(
            repository=repository,
            backend=CliAgentBackend(settings.agent),
            worktrees=WorktreeManager(settings.git),
            settings=settings.agent,
            attempts=ActiveAttempts(lock_dir=settings.lock_dir),
        )
