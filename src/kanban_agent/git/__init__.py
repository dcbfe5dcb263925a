"""Git worktree management for card execution."""

from kanban_agent.git.worktree import WorktreeError, WorktreeManager, slugify

__all__ = ["WorktreeError", "WorktreeManager", "slugify"]
