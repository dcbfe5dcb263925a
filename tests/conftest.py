"""Shared test fixtures."""

from __future__ import annotations

import shutil
import subprocess
from collections.abc import Iterator
from pathlib import Path

import pytest
from agent_doubles import FakeWorktrees, ScriptedBackend, ScriptedProcess

from kanban_agent.config import AgentSettings
from kanban_agent.execution.attempts import ActiveAttempts
from kanban_agent.execution.models import CardCreate, CardView
from kanban_agent.execution.orchestrator import ExecutionOrchestrator
from kanban_agent.execution.repository import ExecutionRepository


@pytest.fixture()
def repository(tmp_path: Path) -> Iterator[ExecutionRepository]:
    repo = ExecutionRepository(tmp_path / "kanban.db")
    repo.init_schema()
    yield repo
    repo.close()


@pytest.fixture()
def card(repository: ExecutionRepository, tmp_path: Path) -> CardView:
    created = repository.create_card(
        CardCreate(
            title="Add health endpoint",
            body="1. Add /health route\n2. Add test",
            proposed_action="Expose a health check",
        ),
    )
    worktree = tmp_path / "worktrees" / f"card-{created.card_id}"
    worktree.mkdir(parents=True)
    repository.set_worktree(created.card_id, str(worktree), f"kanban/{created.card_id}-health")
    return repository.require_card(created.card_id)


@pytest.fixture()
def worktrees() -> FakeWorktrees:
    return FakeWorktrees()


@pytest.fixture()
def make_orchestrator(repository: ExecutionRepository, worktrees: FakeWorktrees):
    def _make(
        processes: list[ScriptedProcess | Exception],
        *,
        settings: AgentSettings | None = None,
        attempts: ActiveAttempts | None = None,
    ) -> tuple[ExecutionOrchestrator, ScriptedBackend]:
        backend = ScriptedBackend(processes, repository)
        orchestrator = ExecutionOrchestrator(
            repository=repository,
            backend=backend,
            worktrees=worktrees,  # type: ignore[arg-type]
            settings=settings or AgentSettings(),
            attempts=attempts,
        )
        return orchestrator, backend

    return _make


def _git(cwd: Path, *args: str) -> str:
    completed = subprocess.run(  # noqa: S603
        ["git", "-C", str(cwd), *args],  # noqa: S607
        capture_output=True,
        text=True,
        check=True,
    )
    return completed.stdout


@pytest.fixture()
def git_repo(tmp_path: Path) -> Path:
    """Real git repository with one commit on ``main``."""

    if shutil.which("git") is None:
        pytest.skip("git is not installed")
    repo = tmp_path / "repo"
    repo.mkdir()
    _git(repo, "init", "-q")
    _git(repo, "symbolic-ref", "HEAD", "refs/heads/main")
    _git(repo, "config", "user.email", "dev@example.com")
    _git(repo, "config", "user.name", "Dev")
    _git(repo, "config", "commit.gpgsign", "false")
    (repo / "README.md").write_text("hello\n", "utf-8")
    _git(repo, "add", "README.md")
    _git(repo, "commit", "-q", "-m", "initial")
    return repo


@pytest.fixture()
def git():
    return _git
