"""CLI entrypoint for kanban-agent."""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import rich_click as click

from kanban_agent import __version__
from kanban_agent.config import Settings
from kanban_agent.execution.controllers import (
    CardAddCommand,
    CardListCommand,
    ExecAnswerCommand,
    ExecInspectCommand,
    ExecPrepareCommand,
    ExecStartCommand,
    ExecutionCliController,
)
from kanban_agent.execution.models import ExecutionStatus
from kanban_agent.execution.orchestrator import ExecutionRequestError

click.rich_click.USE_MARKDOWN = True
EXECUTION_CONTROLLER = ExecutionCliController()


@click.group()
@click.version_option(version=__version__, prog_name="kanban-agent")
def kanban_agent() -> None:
    """Kanban agent CLI."""

    try:
        level = Settings.from_env().log_level
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    logging.basicConfig(
        level=level,
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@kanban_agent.group()
def board() -> None:
    """Board commands."""


@board.command("add-card")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--title", required=True, help="Card title.")
@click.option("--body", default=None, help="Card body: the implementation plan.")
@click.option("--proposed-action", default=None, help="Short summary of the proposed change.")
def board_add_card(
    db_path: Path | None,
    title: str,
    body: str | None,
    proposed_action: str | None,
) -> None:
    """Create a card on today's board."""

    _emit_lines(
        EXECUTION_CONTROLLER.add_card(
            CardAddCommand(
                db_path=db_path,
                title=title,
                body=body,
                proposed_action=proposed_action,
            ),
        ),
    )


@board.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max rows to show.",
)
def board_list(db_path: Path | None, limit: int) -> None:
    """List most recent cards."""

    _emit_lines(EXECUTION_CONTROLLER.list_cards(CardListCommand(db_path=db_path, limit=limit)))


@kanban_agent.group("exec")
def execution() -> None:
    """Card execution commands."""


@execution.command("prepare")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--repo",
    "repo_path",
    type=click.Path(path_type=Path, exists=True, file_okay=False),
    required=True,
    help="Base git repository the worktree branches from.",
)
@click.argument("card_id", type=int)
def exec_prepare(db_path: Path | None, repo_path: Path, card_id: int) -> None:
    """Create the card worktree and record it on the card."""

    with _request_errors():
        _emit_lines(
            EXECUTION_CONTROLLER.prepare(
                ExecPrepareCommand(db_path=db_path, card_id=card_id, repo_path=repo_path),
            ),
        )


@execution.command("start")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--prompt", default=None, help="Prompt text; defaults to the card plan.")
@click.argument("card_id", type=int)
def exec_start(db_path: Path | None, prompt: str | None, card_id: int) -> None:
    """Run the agent for a card, streaming JSON lines to stdout."""

    with _request_errors():
        status = EXECUTION_CONTROLLER.start(
            ExecStartCommand(db_path=db_path, card_id=card_id, prompt=prompt),
            click.echo,
        )
    _exit_for_status(status)


@execution.command("answer")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("card_id", type=int)
@click.argument("answer")
def exec_answer(db_path: Path | None, card_id: int, answer: str) -> None:
    """Answer a paused card's question and resume its agent session."""

    with _request_errors():
        status = EXECUTION_CONTROLLER.answer(
            ExecAnswerCommand(db_path=db_path, card_id=card_id, answer=answer),
            click.echo,
        )
    _exit_for_status(status)


@execution.command("log")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--json", "as_json", is_flag=True, help="Emit one JSON object per entry.")
@click.argument("card_id", type=int)
def exec_log(db_path: Path | None, as_json: bool, card_id: int) -> None:
    """Show the card's execution log in order."""

    with _request_errors():
        _emit_lines(EXECUTION_CONTROLLER.log(_inspect(db_path, card_id, as_json=as_json)))


@execution.command("todos")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("card_id", type=int)
def exec_todos(db_path: Path | None, card_id: int) -> None:
    """Show the agent's todo list replayed from the log."""

    with _request_errors():
        _emit_lines(EXECUTION_CONTROLLER.todos(_inspect(db_path, card_id)))


@execution.command("question")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("card_id", type=int)
def exec_question(db_path: Path | None, card_id: int) -> None:
    """Show the question the card is waiting on, if any."""

    with _request_errors():
        _emit_lines(EXECUTION_CONTROLLER.question(_inspect(db_path, card_id)))


@execution.command("diff")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--json", "as_json", is_flag=True, help="Emit the diff as JSON.")
@click.argument("card_id", type=int)
def exec_diff(db_path: Path | None, as_json: bool, card_id: int) -> None:
    """Show changes made in the card worktree."""

    with _request_errors():
        _emit_lines(EXECUTION_CONTROLLER.diff(_inspect(db_path, card_id, as_json=as_json)))


def _inspect(db_path: Path | None, card_id: int, *, as_json: bool = False) -> ExecInspectCommand:
    return ExecInspectCommand(
        db_path=db_path,
        card_id=card_id,
        output_format="json" if as_json else "table",
    )


@contextmanager
def _request_errors() -> Iterator[None]:
    try:
        yield
    except ExecutionRequestError as error:
        raise click.ClickException(str(error)) from error


def _exit_for_status(status: ExecutionStatus | None) -> None:
    if status == ExecutionStatus.FAILED:
        raise click.ClickException("Execution failed.")


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    kanban_agent()
