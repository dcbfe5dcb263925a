"""Agent subprocess backends."""

from kanban_agent.execution.backend.base import AgentBackend, AgentProcess, AgentRunRequest
from kanban_agent.execution.backend.cli_backend import AgentRunError, CliAgentBackend

__all__ = [
    "AgentBackend",
    "AgentProcess",
    "AgentRunError",
    "AgentRunRequest",
    "CliAgentBackend",
]
