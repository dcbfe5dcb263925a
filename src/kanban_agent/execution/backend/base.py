"""Backend interface for launching one agent attempt."""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol


@dataclass(slots=True)
class AgentRunRequest:
    """Inputs required to launch one attempt."""

    card_id: int
    prompt: str
    cwd: Path
    session_id: str | None = None


class AgentProcess(Protocol):
    """Live agent subprocess owned by one attempt."""

    @property
    def timed_out(self) -> bool:
        """Whether the watchdog had to stop the process."""

    def read_chunks(self) -> Iterator[bytes]:
        """Yield raw stdout chunks until end of stream."""

    def terminate(self) -> None:
        """Stop the process; safe to call more than once and from any thread."""

    def wait(self) -> int:
        """Wait for exit, release resources and return the exit code."""


class AgentBackend(Protocol):
    """Protocol implemented by agent launchers."""

    def launch(self, request: AgentRunRequest) -> AgentProcess:
        """Spawn the agent for a request and return its live handle."""
