"""Parallel task orchestration over isolated git worktrees."""

__version__ = "1.0.0"
