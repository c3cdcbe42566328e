"""Exception hierarchy and text classifiers for git / delegated-executor output."""

from __future__ import annotations


class ParallelError(Exception):
    """Base class for every error raised by parallel_agents."""


# ── Precondition errors: fatal before any workspace exists ───────────


class PreconditionError(ParallelError):
    """A run cannot start (or continue creating workspaces)."""


class DirtyWorkspaceError(PreconditionError):
    def __init__(self, reason: str = "Primary workspace has uncommitted changes") -> None:
        super().__init__(reason)
        self.reason = reason


class CapacityError(PreconditionError):
    def __init__(self, current: int, maximum: int) -> None:
        super().__init__(f"Maximum worktrees ({maximum}) reached ({current} active)")
        self.current = current
        self.maximum = maximum


class CyclicDependencyError(PreconditionError):
    def __init__(self, task_ids: list[str]) -> None:
        super().__init__(f"Cyclic dependency detected among tasks: {', '.join(task_ids)}")
        self.task_ids = task_ids


class TaskValidationError(PreconditionError):
    """Malformed task input: duplicate ids, unknown dependencies, bad task files."""


# ── Tooling errors ───────────────────────────────────────────────────


class WorkspaceError(ParallelError):
    """The git worktree subsystem failed."""


class WorkspaceNotFoundError(WorkspaceError):
    def __init__(self, task_id: str) -> None:
        super().__init__(f"Workspace not found for task: {task_id}")
        self.task_id = task_id


class WorkspaceExistsError(WorkspaceError):
    def __init__(self, task_id: str, held_by: str = "") -> None:
        if held_by and held_by != task_id:
            msg = f"Workspace for task {task_id} would reuse the worktree of task {held_by}"
        else:
            msg = f"Workspace already exists for task: {task_id}"
        super().__init__(msg)
        self.task_id = task_id
        self.held_by = held_by or task_id


class InvalidTransitionError(WorkspaceError):
    def __init__(self, task_id: str, current: str, target: str) -> None:
        super().__init__(f"Workspace {task_id}: cannot go from {current} to {target}")
        self.task_id = task_id


class ConfigError(ParallelError):
    """Invalid configuration values or unreadable configuration file."""

    def __init__(self, problems: list[str] | str) -> None:
        if isinstance(problems, str):
            problems = [problems]
        super().__init__("; ".join(problems))
        self.problems = problems


# ── Output classification ────────────────────────────────────────────

MERGE_CONFLICT_PATTERNS: tuple[str, ...] = (
    "automatic merge failed",
    "conflict (content)",
    "conflict (add/add)",
    "conflict (modify/delete)",
    "conflict in ",
    "merge conflict",
    "could not apply",
)


def _contains_any(text: str, patterns: tuple[str, ...]) -> bool:
    lower = text.lower()
    return any(pattern in lower for pattern in patterns)


def looks_like_merge_conflict(text: str) -> bool:
    """Return ``True`` for textual git merge conflict failures."""
    if not text:
        return False
    return _contains_any(text, MERGE_CONFLICT_PATTERNS)
