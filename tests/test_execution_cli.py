from __future__ import annotations

import json
import shlex
import sys
from pathlib import Path

import allure
import pytest
from agent_stream import encode, question_input, result, system_init, text_block, tool_block
from click.testing import CliRunner
from filelock import FileLock

from kanban_agent.config import Settings
from kanban_agent.main import kanban_agent

pytestmark = [
    allure.epic("Agent Execution"),
    allure.feature("Execution CLI"),
]

_REPLAY = f"{shlex.quote(sys.executable)} -m kanban_agent.execution.backend.replay_agent"


def _json_lines(output: str) -> list[dict]:
    return [json.loads(line) for line in output.splitlines() if line.startswith("{")]


@pytest.fixture()
def agent_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point both agent templates at replay scripts; returns the launch record file."""

    first_run = tmp_path / "first-run.jsonl"
    first_run.write_bytes(
        encode(
            [
                system_init("s1"),
                *text_block(0, "Reading the plan.\n"),
                *tool_block(
                    1,
                    "AskUserQuestion",
                    "toolu_q1",
                    question_input("Proceed with the change?", "Yes", "No"),
                ),
                result(session_id="s1"),
            ],
        ),
    )
    resumed_run = tmp_path / "resumed-run.jsonl"
    resumed_run.write_bytes(
        encode([system_init("s1"), *text_block(0, "Applied.\n"), result(session_id="s1")]),
    )
    record = tmp_path / "launches.jsonl"
    quoted_record = shlex.quote(str(record))
    monkeypatch.setenv(
        "KANBAN_AGENT_COMMAND_TEMPLATE",
        (
            f"{_REPLAY} --script {shlex.quote(str(first_run))} --record {quoted_record} "
            "--prompt {prompt}"
        ),
    )
    monkeypatch.setenv(
        "KANBAN_AGENT_RESUME_COMMAND_TEMPLATE",
        (
            f"{_REPLAY} --script {shlex.quote(str(resumed_run))} --record {quoted_record} "
            "--session-id {session_id} --prompt {prompt}"
        ),
    )
    monkeypatch.setenv("KANBAN_AGENT_BASE_REF", "main")
    monkeypatch.setenv("KANBAN_AGENT_WORKTREES_DIR", str(tmp_path / "trees"))
    monkeypatch.delenv("KANBAN_AGENT_LOG_LEVEL", raising=False)
    return record


def _add_card(runner: CliRunner, db_path: Path) -> None:
    added = runner.invoke(
        kanban_agent,
        [
            "board",
            "add-card",
            "--db-path",
            str(db_path),
            "--title",
            "Add health endpoint",
            "--body",
            "1. Add /health route",
            "--proposed-action",
            "Expose a health check",
        ],
    )
    assert added.exit_code == 0, added.output
    assert "Card created: card_id=1 title=Add health endpoint" in added.output


def test_exec_cli_pauses_on_question_and_completes_after_answer(
    git_repo: Path,
    agent_env: Path,
    tmp_path: Path,
) -> None:
    db_path = tmp_path / "kanban.db"
    runner = CliRunner()
    _add_card(runner, db_path)

    prepared = runner.invoke(
        kanban_agent,
        ["exec", "prepare", "--db-path", str(db_path), "--repo", str(git_repo), "1"],
    )
    assert prepared.exit_code == 0, prepared.output
    worktree = tmp_path / "trees" / "card-1"
    assert f"path={worktree}" in prepared.output
    assert "branch=kanban/1-add-health-endpoint" in prepared.output

    started = runner.invoke(kanban_agent, ["exec", "start", "--db-path", str(db_path), "1"])
    assert started.exit_code == 0, started.output
    messages = _json_lines(started.output)
    assert [message["step"] for message in messages] == [
        "start",
        "executing",
        "ai_output",
        "tool_start",
        "question",
    ]
    assert messages[-1]["message"] == "Proceed with the change?"
    assert messages[-1]["data"]["options"] == [{"label": "Yes"}, {"label": "No"}]

    question = runner.invoke(kanban_agent, ["exec", "question", "--db-path", str(db_path), "1"])
    assert question.exit_code == 0, question.output
    lines = question.output.splitlines()
    assert lines[0] == f"Question {messages[-1]['data']['questionId']}: Proceed with the change?"
    assert lines[1:] == ["header=Confirm", "- Yes", "- No"]

    diff = runner.invoke(kanban_agent, ["exec", "diff", "--db-path", str(db_path), "1"])
    assert diff.exit_code == 0, diff.output
    assert "Diff: files=0 additions=0 deletions=0" in diff.output

    answered = runner.invoke(
        kanban_agent,
        ["exec", "answer", "--db-path", str(db_path), "1", "Yes"],
    )
    assert answered.exit_code == 0, answered.output
    resumed = _json_lines(answered.output)
    assert [message["step"] for message in resumed] == [
        "answer",
        "start",
        "ai_output",
        "executing",
        "executing",
        "error",
        "executing",
        "done",
    ]
    assert resumed[1]["message"] == 'Resuming with answer: "Yes"'
    assert resumed[5]["message"].startswith("PR creation failed: ")
    assert resumed[-1]["message"] == "Done!"
    assert resumed[-1]["card"]["execution_status"] == "completed"
    assert resumed[-1]["card"]["column_name"] == "done"
    assert resumed[-1]["card"]["execution_result"] == "Code changes committed"
    assert not worktree.exists()

    launches = [json.loads(line) for line in agent_env.read_text("utf-8").splitlines()]
    assert launches[0]["session_id"] is None
    assert launches[0]["prompt"].startswith(
        "Execute this implementation plan in the current repository.",
    )
    assert launches[1] == {"prompt": "Yes", "session_id": "s1"}

    log = runner.invoke(kanban_agent, ["exec", "log", "--db-path", str(db_path), "--json", "1"])
    assert log.exit_code == 0, log.output
    entries = _json_lines(log.output)
    assert [entry["step"] for entry in entries] == [
        "start",
        "executing",
        "ai_output",
        "tool_start",
        "question",
        *[message["step"] for message in resumed],
    ]
    assert {entry["session_id"] for entry in entries[2:]} == {"s1"}

    listed = runner.invoke(kanban_agent, ["board", "list", "--db-path", str(db_path)])
    assert listed.exit_code == 0, listed.output
    assert "- 1 [done] Add health endpoint execution=completed" in listed.output


def test_exec_cli_rejects_answer_for_card_that_is_not_paused(
    agent_env: Path,
    tmp_path: Path,
) -> None:
    db_path = tmp_path / "kanban.db"
    runner = CliRunner()
    _add_card(runner, db_path)

    answered = runner.invoke(
        kanban_agent,
        ["exec", "answer", "--db-path", str(db_path), "1", "Yes"],
    )

    assert answered.exit_code != 0
    assert "Card 1 is not waiting for an answer" in answered.output
    assert not agent_env.exists()


def test_exec_cli_reports_missing_worktree_and_empty_views(
    agent_env: Path,
    tmp_path: Path,
) -> None:
    db_path = tmp_path / "kanban.db"
    runner = CliRunner()
    _add_card(runner, db_path)

    started = runner.invoke(kanban_agent, ["exec", "start", "--db-path", str(db_path), "1"])
    log = runner.invoke(kanban_agent, ["exec", "log", "--db-path", str(db_path), "1"])
    todos = runner.invoke(kanban_agent, ["exec", "todos", "--db-path", str(db_path), "1"])
    question = runner.invoke(kanban_agent, ["exec", "question", "--db-path", str(db_path), "1"])
    missing = runner.invoke(kanban_agent, ["exec", "log", "--db-path", str(db_path), "9"])

    assert started.exit_code != 0
    assert "Card 1 has no worktree" in started.output
    assert "No execution log for card 1." in log.output
    assert "No todos." in todos.output
    assert "No outstanding question." in question.output
    assert missing.exit_code != 0
    assert "Card not found: 9" in missing.output


def test_exec_cli_rejects_start_while_another_process_holds_the_card(
    git_repo: Path,
    agent_env: Path,
    tmp_path: Path,
) -> None:
    db_path = tmp_path / "kanban.db"
    runner = CliRunner()
    _add_card(runner, db_path)
    prepared = runner.invoke(
        kanban_agent,
        ["exec", "prepare", "--db-path", str(db_path), "--repo", str(git_repo), "1"],
    )
    assert prepared.exit_code == 0, prepared.output

    lock_dir = Settings(db_path=db_path).lock_dir
    lock_dir.mkdir(parents=True, exist_ok=True)
    with FileLock(str(lock_dir / "card-1.lock")):
        started = runner.invoke(kanban_agent, ["exec", "start", "--db-path", str(db_path), "1"])
        log = runner.invoke(kanban_agent, ["exec", "log", "--db-path", str(db_path), "1"])

    assert started.exit_code != 0
    assert "Card 1 already has a running execution" in started.output
    assert not agent_env.exists()
    assert "No execution log for card 1." in log.output

    retried = runner.invoke(kanban_agent, ["exec", "start", "--db-path", str(db_path), "1"])
    assert retried.exit_code == 0, retried.output
    assert _json_lines(retried.output)[-1]["step"] == "question"
