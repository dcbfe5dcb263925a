"""Typed domain events produced by the stream decoder."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, TypeAlias


@dataclass(frozen=True, slots=True)
class SessionStarted:
    """Agent announced the continuation token of its session."""

    session_id: str


@dataclass(frozen=True, slots=True)
class TextFragment:
    """Incremental narration text, exactly one streamed delta."""

    text: str


@dataclass(frozen=True, slots=True)
class ToolInvocationStarted:
    tool_name: str
    tool_id: str
    block_index: int


@dataclass(frozen=True, slots=True)
class ToolInvocationCompleted:
    """Tool call with its fully assembled input."""

    tool_name: str
    tool_id: str
    input: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class ToolResult:
    tool_use_id: str
    content: str


@dataclass(frozen=True, slots=True)
class SessionResult:
    """Final summary line emitted by the agent."""

    status: str
    session_id: str | None = None
    duration_ms: int | None = None


DomainEvent: TypeAlias = (
    SessionStarted
    | TextFragment
    | ToolInvocationStarted
    | ToolInvocationCompleted
    | ToolResult
    | SessionResult
)
