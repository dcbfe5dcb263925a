"""Runtime configuration for agent execution and worktree handling."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_COMMAND_TEMPLATE = (
    "claude -p {prompt} --output-format stream-json --verbose "
    "--include-partial-messages --allowedTools {allowed_tools}"
)
DEFAULT_RESUME_COMMAND_TEMPLATE = (
    "claude --resume {session_id} -p {prompt} --output-format stream-json --verbose "
    "--include-partial-messages"
)
_LOG_LEVELS = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}


@dataclass(slots=True)
class AgentSettings:
    """How the external agent subprocess is launched and its output bounded."""

    command_template: str = DEFAULT_COMMAND_TEMPLATE
    resume_command_template: str = DEFAULT_RESUME_COMMAND_TEMPLATE
    allowed_tools: str = "Bash,Read,Write,Edit,Glob,Grep"
    timeout_seconds: int = 300
    text_flush_chars: int = 200
    tool_result_max_chars: int = 2000


@dataclass(slots=True)
class GitSettings:
    """Worktree and publish settings."""

    worktrees_dir: Path | None = None
    base_ref: str = "origin/main"
    remote: str = "origin"
    timeout_seconds: int = 30


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".kanban_agent.db")
    sqlite_busy_timeout_ms: int = 5000
    log_level: str = "WARNING"
    agent: AgentSettings = field(default_factory=AgentSettings)
    git: GitSettings = field(default_factory=GitSettings)

    @property
    def lock_dir(self) -> Path:
        """Directory of per-card attempt locks, kept beside the database."""

        return self.db_path.with_name(f"{self.db_path.name}.locks")

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        worktrees_dir = os.getenv("KANBAN_AGENT_WORKTREES_DIR", "").strip()
        settings = cls(
            db_path=db_path or Path(os.getenv("KANBAN_AGENT_DB_PATH", ".kanban_agent.db")),
            sqlite_busy_timeout_ms=_env_int("KANBAN_AGENT_SQLITE_BUSY_TIMEOUT_MS", 5000),
            log_level=os.getenv("KANBAN_AGENT_LOG_LEVEL", "WARNING").strip().upper(),
            agent=AgentSettings(
                command_template=os.getenv(
                    "KANBAN_AGENT_COMMAND_TEMPLATE",
                    DEFAULT_COMMAND_TEMPLATE,
                ),
                resume_command_template=os.getenv(
                    "KANBAN_AGENT_RESUME_COMMAND_TEMPLATE",
                    DEFAULT_RESUME_COMMAND_TEMPLATE,
                ),
                allowed_tools=os.getenv(
                    "KANBAN_AGENT_ALLOWED_TOOLS",
                    "Bash,Read,Write,Edit,Glob,Grep",
                ),
                timeout_seconds=_env_int("KANBAN_AGENT_TIMEOUT_SECONDS", 300),
                text_flush_chars=_env_int("KANBAN_AGENT_TEXT_FLUSH_CHARS", 200),
                tool_result_max_chars=_env_int("KANBAN_AGENT_TOOL_RESULT_MAX_CHARS", 2000),
            ),
            git=GitSettings(
                worktrees_dir=Path(worktrees_dir).expanduser() if worktrees_dir else None,
                base_ref=os.getenv("KANBAN_AGENT_BASE_REF", "origin/main"),
                remote=os.getenv("KANBAN_AGENT_REMOTE", "origin"),
                timeout_seconds=_env_int("KANBAN_AGENT_GIT_TIMEOUT_SECONDS", 30),
            ),
        )
        settings.validate()
        return settings

    def validate(self) -> None:
        """Raise configuration error for values the runtime cannot work with."""

        if self.log_level not in _LOG_LEVELS:
            raise ValueError(
                "KANBAN_AGENT_LOG_LEVEL must be one of CRITICAL, ERROR, WARNING, INFO, DEBUG.",
            )
        if self.agent.timeout_seconds <= 0:
            raise ValueError("KANBAN_AGENT_TIMEOUT_SECONDS must be > 0.")
        if self.agent.text_flush_chars <= 0:
            raise ValueError("KANBAN_AGENT_TEXT_FLUSH_CHARS must be > 0.")
        if self.agent.tool_result_max_chars <= 0:
            raise ValueError("KANBAN_AGENT_TOOL_RESULT_MAX_CHARS must be > 0.")
        if self.git.timeout_seconds <= 0:
            raise ValueError("KANBAN_AGENT_GIT_TIMEOUT_SECONDS must be > 0.")
        if "{prompt}" not in self.agent.command_template:
            raise ValueError("KANBAN_AGENT_COMMAND_TEMPLATE must include {prompt}.")
        for placeholder in ("{prompt}", "{session_id}"):
            if placeholder not in self.agent.resume_command_template:
                raise ValueError(
                    f"KANBAN_AGENT_RESUME_COMMAND_TEMPLATE must include {placeholder}.",
                )


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value.strip())
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {value!r}") from error
