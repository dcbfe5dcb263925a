"""Delegate kanban cards to a long-lived CLI coding agent."""

from kanban_agent.__about__ import __version__

__all__ = ["__version__"]
