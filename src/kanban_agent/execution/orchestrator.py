"""Execution orchestrator: one agent attempt per call, paused or run to completion.

An attempt spawns the agent, decodes its stdout into domain events, persists
and forwards a log entry for each, and on a clean exit runs the completion
pipeline (commit, publish, dispose). An interactive question suspends the
attempt by terminating the agent; ``answer`` later resumes the same agent
session with the answer as the next prompt.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from pathlib import Path
from typing import Any, Protocol

from kanban_agent.config import AgentSettings
from kanban_agent.execution.attempts import ActiveAttempts, AttemptConflictError, AttemptHandle
from kanban_agent.execution.backend import (
    AgentBackend,
    AgentProcess,
    AgentRunError,
    AgentRunRequest,
)
from kanban_agent.execution.events import (
    DomainEvent,
    SessionResult,
    SessionStarted,
    TextFragment,
    ToolInvocationCompleted,
    ToolInvocationStarted,
    ToolResult,
)
from kanban_agent.execution.models import (
    CardColumn,
    CardView,
    ExecutionLogEntry,
    ExecutionStatus,
    LogStep,
    OutstandingQuestion,
    StreamMessage,
    TodoItem,
    WorktreeDiff,
    WorktreeInfo,
)
from kanban_agent.execution.repository import ExecutionRepository
from kanban_agent.execution.stream_decoder import StreamDecoder
from kanban_agent.execution.summaries import (
    QUESTION_TOOL,
    TASK_TRACKING_TOOLS,
    extract_first_question,
    extract_todos,
    summarize_tool_input,
    truncate_tool_result,
)
from kanban_agent.execution.views import build_todo_list, find_outstanding_question
from kanban_agent.git.worktree import WorktreeError, WorktreeManager

logger = logging.getLogger(__name__)

PR_FOOTER = "Generated by kanban-agent"


class ExecutionRequestError(RuntimeError):
    """Request rejected before any agent was spawned or log entry written."""


class EventSink(Protocol):
    """Outbound stream of one attempt."""

    def send(self, message: StreamMessage) -> None:
        """Deliver one message."""

    def close(self) -> None:
        """End the stream; called exactly once per attempt."""


def build_execution_prompt(card: CardView) -> str:
    """Default prompt asking the agent to carry out the card's plan."""

    plan = card.body or ""
    return (
        "Execute this implementation plan in the current repository.\n\n"
        f"Plan:\n{plan}\n\n"
        "Implement all changes described. Run tests if applicable."
    )


def build_pull_request_body(card: CardView) -> str:
    return (
        f"## Summary\n\n{card.proposed_action or ''}\n\n"
        f"## Plan\n\n{card.body or ''}\n\n"
        f"---\n{PR_FOOTER}"
    )


class ExecutionOrchestrator:
    """Runs agent attempts for cards and serves the views derived from their logs."""

    def __init__(
        self,
        *,
        repository: ExecutionRepository,
        backend: AgentBackend,
        worktrees: WorktreeManager,
        settings: AgentSettings,
        attempts: ActiveAttempts | None = None,
    ) -> None:
        self.repository = repository
        self.backend = backend
        self.worktrees = worktrees
        self.settings = settings
        self.attempts = attempts or ActiveAttempts()

    def prepare_workspace(self, card_id: int, repo_path: Path) -> WorktreeInfo:
        """Materialize the card worktree and record it on the card."""

        card = self._require_card(card_id)
        try:
            info = self.worktrees.ensure(repo_path, card.card_id, card.title)
        except WorktreeError as error:
            raise ExecutionRequestError(f"Could not prepare worktree: {error}") from error
        self.repository.set_worktree(card_id, info.worktree_path, info.branch_name)
        return info

    def start(
        self,
        card_id: int,
        sink: EventSink,
        *,
        prompt: str | None = None,
    ) -> ExecutionStatus | None:
        """Run a fresh attempt; resumes the stored agent session when one exists.

        Returns the status the attempt ended in, or None when a newer attempt
        superseded it.
        """

        card = self._require_card(card_id)
        worktree = self._require_worktree(card)
        request = AgentRunRequest(
            card_id=card_id,
            prompt=prompt or build_execution_prompt(card),
            cwd=worktree,
            session_id=card.session_id,
        )
        handle, superseded = self._register(card_id)
        attempt = _Attempt(self, handle, card, sink, session_id=card.session_id, resumed=False)

        def open_attempt() -> None:
            # Rows of a superseded live attempt are kept; otherwise a fresh log.
            if not superseded:
                with self.attempts.persisting(handle) as allowed:
                    if allowed:
                        self.repository.clear_logs(card_id)
            attempt.set_status(ExecutionStatus.RUNNING)
            attempt.emit(LogStep.START, "Starting code execution...")
            attempt.emit(LogStep.EXECUTING, f"Running agent in {worktree.name}...")

        return self._run(attempt, request, open_attempt)

    def answer(self, card_id: int, answer: str, sink: EventSink) -> ExecutionStatus | None:
        """Resume a paused card's agent session with ``answer`` as the next prompt."""

        card = self._require_card(card_id)
        if card.execution_status != ExecutionStatus.PAUSED_QUESTION:
            raise ExecutionRequestError(f"Card {card_id} is not waiting for an answer")
        if not card.session_id:
            raise ExecutionRequestError(f"Card {card_id} has no agent session to resume")
        worktree = self._require_worktree(card)
        if not answer.strip():
            raise ExecutionRequestError("Answer must not be empty")

        request = AgentRunRequest(
            card_id=card_id,
            prompt=answer,
            cwd=worktree,
            session_id=card.session_id,
        )
        handle, _ = self._register(card_id)
        attempt = _Attempt(self, handle, card, sink, session_id=card.session_id, resumed=True)

        def open_attempt() -> None:
            attempt.emit(LogStep.ANSWER, answer)
            attempt.set_status(ExecutionStatus.RUNNING)
            attempt.emit(LogStep.START, f'Resuming with answer: "{answer}"')

        return self._run(attempt, request, open_attempt)

    def get_log(self, card_id: int) -> list[ExecutionLogEntry]:
        self._require_card(card_id)
        return self.repository.list_logs(card_id)

    def todos(self, card_id: int) -> list[TodoItem]:
        return build_todo_list(self.get_log(card_id))

    def outstanding_question(self, card_id: int) -> OutstandingQuestion | None:
        return find_outstanding_question(self.get_log(card_id))

    def get_diff(self, card_id: int) -> WorktreeDiff:
        card = self._require_card(card_id)
        worktree = self._require_worktree(card)
        try:
            return self.worktrees.diff(worktree)
        except WorktreeError as error:
            raise ExecutionRequestError(f"Could not compute diff: {error}") from error

    def _run(
        self,
        attempt: _Attempt,
        request: AgentRunRequest,
        open_attempt: Callable[[], None],
    ) -> ExecutionStatus | None:
        try:
            try:
                open_attempt()
                process = self.backend.launch(request)
                if not self.attempts.attach(attempt.handle, process):
                    return None
                attempt.consume(process)
                if attempt.handle.superseded:
                    return None
                if attempt.paused:
                    return ExecutionStatus.PAUSED_QUESTION
                if not self._complete(attempt):
                    return None
                return ExecutionStatus.COMPLETED
            except Exception as error:  # noqa: BLE001
                if attempt.handle.superseded:
                    logger.info("Superseded attempt for card %s ended: %s", attempt.card_id, error)
                    return None
                logger.exception("Execution attempt for card %s failed", attempt.card_id)
                attempt.fail(error)
                return ExecutionStatus.FAILED
        finally:
            self.attempts.release(attempt.handle)
            attempt.sink.close()

    def _complete(self, attempt: _Attempt) -> bool:
        """Commit, publish and dispose; returns False once the attempt is superseded."""

        card = attempt.card
        worktree = self._require_worktree(card)

        attempt.emit(LogStep.EXECUTING, "Committing changes...")
        self.worktrees.commit(worktree, f"feat: {card.title}")
        if attempt.handle.superseded:
            return False

        attempt.emit(LogStep.EXECUTING, "Creating pull request...")
        pr_url = ""
        try:
            pr_url = self.worktrees.publish(worktree, card.title, build_pull_request_body(card))
        except WorktreeError as error:
            logger.warning("Publishing card %s failed: %s", card.card_id, error)
            attempt.emit(LogStep.ERROR, f"PR creation failed: {error}")
        else:
            attempt.emit(LogStep.EXECUTED, f"PR created: {pr_url}")
        if attempt.handle.superseded:
            return False

        attempt.emit(LogStep.EXECUTING, "Cleaning up worktree...")
        self.worktrees.dispose(worktree)

        with self.attempts.persisting(attempt.handle) as allowed:
            if not allowed:
                return False
            self.repository.clear_worktree_path(card.card_id)
            self.repository.set_execution_result(
                card.card_id,
                f"PR: {pr_url}" if pr_url else "Code changes committed",
            )
            self.repository.move_to_column(card.card_id, CardColumn.DONE)
            self.repository.set_execution_status(card.card_id, ExecutionStatus.COMPLETED)
        attempt.emit(
            LogStep.DONE,
            f"Done! PR: {pr_url}" if pr_url else "Done!",
            with_card=True,
        )
        return True

    def _register(self, card_id: int) -> tuple[AttemptHandle, bool]:
        try:
            return self.attempts.register(card_id)
        except AttemptConflictError as error:
            raise ExecutionRequestError(str(error)) from error

    def _require_card(self, card_id: int) -> CardView:
        card = self.repository.get_card(card_id)
        if card is None:
            raise ExecutionRequestError(f"Card not found: {card_id}")
        return card

    def _require_worktree(self, card: CardView) -> Path:
        if not card.worktree_path:
            raise ExecutionRequestError(f"Card {card.card_id} has no worktree")
        worktree = Path(card.worktree_path)
        if not worktree.is_dir():
            raise ExecutionRequestError(f"Worktree does not exist: {worktree}")
        return worktree


class _Attempt:
    """Per-attempt state: session token, text buffer and pause flag."""

    def __init__(
        self,
        orchestrator: ExecutionOrchestrator,
        handle: AttemptHandle,
        card: CardView,
        sink: EventSink,
        *,
        session_id: str | None,
        resumed: bool,
    ) -> None:
        self.orchestrator = orchestrator
        self.repository = orchestrator.repository
        self.settings = orchestrator.settings
        self.handle = handle
        self.card = card
        self.card_id = card.card_id
        self.sink = sink
        self.session_id = session_id
        self.resumed = resumed
        self.paused = False
        self.last_result_status: str | None = None
        self._text_buffer = ""
        self._completed_tool_ids: set[str] = set()
        self._process: AgentProcess | None = None

    def consume(self, process: AgentProcess) -> None:
        """Decode the agent's stdout until it exits or the attempt pauses."""

        self._process = process
        decoder = StreamDecoder(self.handle_event)
        try:
            for chunk in process.read_chunks():
                decoder.feed(chunk)
                if self.paused or self.handle.superseded:
                    break
            else:
                decoder.finish()
        except BaseException:
            process.terminate()
            process.wait()
            raise
        if self.paused or self.handle.superseded:
            process.terminate()
        exit_code = process.wait()

        if self.handle.superseded:
            return
        self.flush_text()
        if self.paused:
            return
        if process.timed_out:
            raise AgentRunError(
                f"agent timed out after {self.settings.timeout_seconds}s",
                transient=True,
            )
        if exit_code != 0:
            detail = f"agent exited with code {exit_code}"
            if self.last_result_status:
                detail += f" (result: {self.last_result_status})"
            raise AgentRunError(detail, transient=False)

    def handle_event(self, event: DomainEvent) -> None:
        if self.paused or self.handle.superseded:
            return
        match event:
            case SessionStarted(session_id=session_id):
                self.remember_session(session_id)
            case TextFragment(text=text):
                self._text_buffer += text
                overflow = len(self._text_buffer) > self.settings.text_flush_chars
                if overflow or "\n" in self._text_buffer:
                    self.flush_text()
            case ToolInvocationStarted(tool_name=tool_name):
                self.flush_text()
                self.emit(LogStep.TOOL_START, f"Using: {tool_name}", {"toolName": tool_name})
            case ToolInvocationCompleted():
                self._on_tool_completed(event)
            case ToolResult(content=content):
                self.emit(
                    LogStep.TOOL_RESULT,
                    truncate_tool_result(content, self.settings.tool_result_max_chars),
                )
            case SessionResult(status=status, session_id=session_id):
                self.last_result_status = status
                if session_id:
                    self.remember_session(session_id)

    def _on_tool_completed(self, event: ToolInvocationCompleted) -> None:
        # Streamed blocks and whole assistant messages can report the same call.
        if event.tool_id:
            if event.tool_id in self._completed_tool_ids:
                return
            self._completed_tool_ids.add(event.tool_id)

        if event.tool_name in TASK_TRACKING_TOOLS:
            for todo in extract_todos(event.tool_name, event.input):
                self.emit(LogStep.TODO, f"Task: {todo['subject']}", todo)
            return

        if event.tool_name == QUESTION_TOOL:
            self.flush_text()
            self._pause_for_question(extract_first_question(event.input))
            return

        self.emit(
            LogStep.TOOL_COMPLETE,
            summarize_tool_input(event.tool_name, event.input),
            {"toolName": event.tool_name, "input": event.input},
        )

    def _pause_for_question(self, question: dict[str, Any]) -> None:
        with self.orchestrator.attempts.persisting(self.handle) as allowed:
            if not allowed:
                return
            entry = self.repository.append_log(
                self.card_id,
                LogStep.QUESTION,
                question["question"],
                session_id=self.session_id,
                data=question,
            )
            self.repository.set_execution_status(self.card_id, ExecutionStatus.PAUSED_QUESTION)
            self.paused = True
        self.sink.send(
            StreamMessage(
                step=LogStep.QUESTION,
                message=question["question"],
                data={**question, "questionId": entry.entry_id},
            ),
        )
        logger.info("Card %s paused for a question", self.card_id)
        if self._process is not None:
            self._process.terminate()

    def remember_session(self, session_id: str) -> None:
        with self.orchestrator.attempts.persisting(self.handle) as allowed:
            if not allowed:
                return
            self.session_id = session_id
            self.repository.set_session_id(self.card_id, session_id)

    def set_status(self, status: ExecutionStatus) -> None:
        with self.orchestrator.attempts.persisting(self.handle) as allowed:
            if allowed:
                self.repository.set_execution_status(self.card_id, status)

    def flush_text(self) -> None:
        if not self._text_buffer:
            return
        text, self._text_buffer = self._text_buffer, ""
        self.emit(LogStep.AI_OUTPUT, text)

    def emit(
        self,
        step: LogStep,
        message: str,
        data: dict[str, Any] | None = None,
        *,
        with_card: bool = False,
    ) -> None:
        """Persist one log entry, then forward it unless the attempt went stale."""

        with self.orchestrator.attempts.persisting(self.handle) as allowed:
            if not allowed:
                return
            self.repository.append_log(
                self.card_id,
                step,
                message,
                session_id=self.session_id,
                data=data,
            )
            card = self.repository.get_card(self.card_id) if with_card else None
        self.sink.send(StreamMessage(step=step, message=message, data=data, card=card))

    def fail(self, error: Exception) -> None:
        self._text_buffer = ""
        prefix = "Execution failed after resume" if self.resumed else "Code execution failed"
        with self.orchestrator.attempts.persisting(self.handle) as allowed:
            if not allowed:
                return
            self.repository.set_execution_status(self.card_id, ExecutionStatus.FAILED)
        detail = _readable(error)
        self.emit(LogStep.ERROR, f"{prefix}: {detail}" if detail else prefix)
        self.emit(LogStep.DONE, "Execution failed", with_card=True)


def _readable(error: Exception) -> str:
    """First line of agent and git errors; other exceptions stay in the log only."""

    if not isinstance(error, (AgentRunError, WorktreeError)):
        return ""
    text = str(error).strip()
    return text.splitlines()[0] if text else ""
