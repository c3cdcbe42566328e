"""Workspace management: one branch-scoped git worktree per task.

Lifecycle per task id: ``active -> {completed, failed} -> removed``
(``completed -> failed`` is allowed when integration later fails).
Creation and removal go through one lock so concurrent callers cannot both
pass a stale capacity check.
"""

from __future__ import annotations

import hashlib
import re
import shutil
import tempfile
import threading
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from itertools import count
from pathlib import Path
from typing import Any

from parallel_agents import git_ops, log
from parallel_agents.errors import (
    CapacityError,
    DirtyWorkspaceError,
    InvalidTransitionError,
    ParallelError,
    WorkspaceError,
    WorkspaceExistsError,
    WorkspaceNotFoundError,
)


class WorkspaceStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


_TRANSITIONS: dict[WorkspaceStatus, frozenset[WorkspaceStatus]] = {
    WorkspaceStatus.ACTIVE: frozenset({WorkspaceStatus.COMPLETED, WorkspaceStatus.FAILED}),
    WorkspaceStatus.COMPLETED: frozenset({WorkspaceStatus.FAILED}),
    WorkspaceStatus.FAILED: frozenset(),
}


def slugify(text: str, max_len: int = 50) -> str:
    """Convert text to a branch/directory-safe slug."""
    slug = re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")
    return slug[:max_len] or "task"


@dataclass
class Workspace:
    task_id: str
    path: Path
    branch: str
    base_branch: str
    base_commit: str
    seq: int
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    status: WorkspaceStatus = WorkspaceStatus.ACTIVE

    def to_dict(self) -> dict[str, Any]:
        return {
            "taskId": self.task_id,
            "path": str(self.path),
            "branch": self.branch,
            "baseBranch": self.base_branch,
            "baseCommit": self.base_commit,
            "createdAt": self.created_at.strftime("%Y-%m-%dT%H:%M:%SZ"),
            "status": self.status.value,
        }


class WorkspaceManager:
    """Owns every task worktree from creation to removal."""

    def __init__(
        self,
        base_dir: Path,
        *,
        worktree_dir: Path | None = None,
        max_worktrees: int = 4,
        branch_prefix: str = "parallel",
    ) -> None:
        self.base_dir = Path(base_dir)
        self.max_worktrees = max_worktrees
        self.branch_prefix = branch_prefix.strip("/")
        self._root = Path(worktree_dir) if worktree_dir else None
        self._owns_root = worktree_dir is None
        self._workspaces: dict[str, Workspace] = {}
        self._seq = count(1)
        self._lock = threading.RLock()

    @property
    def root(self) -> Path:
        """Directory holding the worktrees; a fresh temp dir outside the repo by default."""
        if self._root is None:
            self._root = Path(tempfile.mkdtemp(prefix="parallel-agents-"))
        self._root.mkdir(parents=True, exist_ok=True)
        return self._root

    @staticmethod
    def slot_name(task_id: str) -> str:
        """Directory and branch name for *task_id*, distinct for distinct ids.

        Ids that are already slugs keep their name; any other id gets a short
        hash suffix so ``"Fix login"`` and ``"fix-login"`` never share a worktree.
        """
        slug = slugify(task_id)
        if slug == task_id:
            return slug
        digest = hashlib.sha1(task_id.encode("utf-8")).hexdigest()[:8]
        return f"{slug[:41]}-{digest}"

    def branch_for(self, task_id: str) -> str:
        return f"{self.branch_prefix}/{self.slot_name(task_id)}"

    def path_for(self, task_id: str) -> Path:
        return self.root / self.slot_name(task_id)

    def _owner_of(self, path: Path, branch: str) -> Workspace | None:
        """The tracked workspace already using *path* or *branch*, if any."""
        for ws in self._workspaces.values():
            if ws.branch == branch or ws.path == path:
                return ws
        return None

    # ── preconditions ────────────────────────────────────────────────

    def is_clean_state(self) -> tuple[bool, str]:
        """Inspect the primary workspace right now; never cached."""
        try:
            entries = git_ops.tracked_changes(cwd=self.base_dir)
        except (RuntimeError, OSError) as e:
            return False, f"Failed to check git status: {e}"
        if entries:
            shown = ", ".join(entries[:3]) + (" ..." if len(entries) > 3 else "")
            return False, (
                f"Uncommitted changes detected ({shown}). "
                "Commit or stash them before creating worktrees."
            )
        return True, ""

    # ── creation / removal ───────────────────────────────────────────

    def create(self, task_id: str, base_branch: str | None = None) -> Workspace:
        """Create the worktree for *task_id*.

        Raises ``DirtyWorkspaceError`` if the primary workspace has tracked
        modifications, ``CapacityError`` when ``max_worktrees`` workspaces are
        active, ``WorkspaceExistsError`` on an id collision and
        ``WorkspaceError`` when git fails (no partial state is left behind).
        """
        with self._lock:
            clean, reason = self.is_clean_state()
            if not clean:
                raise DirtyWorkspaceError(reason)
            active = self.active_count()
            if active >= self.max_worktrees:
                raise CapacityError(active, self.max_worktrees)
            if task_id in self._workspaces:
                raise WorkspaceExistsError(task_id)

            base = base_branch or git_ops.current_branch(cwd=self.base_dir)
            base_commit = git_ops.head_commit(cwd=self.base_dir)
            branch = self.branch_for(task_id)
            path = self.path_for(task_id)
            owner = self._owner_of(path, branch)
            if owner is not None:
                raise WorkspaceExistsError(task_id, held_by=owner.task_id)

            self._clear_leftovers(path, branch)
            r = git_ops.worktree_add(path, branch, base, cwd=self.base_dir)
            if r.returncode != 0:
                self._force_cleanup(path, branch)
                raise WorkspaceError(f"Failed to create worktree for {task_id}: {git_ops.output_of(r)}")

            ws = Workspace(
                task_id=task_id,
                path=path,
                branch=branch,
                base_branch=base,
                base_commit=base_commit,
                seq=next(self._seq),
            )
            self._workspaces[task_id] = ws
            log.debug(f"Workspace {task_id}: created {branch} at {path}")
            return ws

    def _clear_leftovers(self, path: Path, branch: str) -> None:
        """Drop a stale directory or branch left by an earlier crashed run."""
        owner = self._owner_of(path, branch)
        if owner is not None:
            raise WorkspaceExistsError(owner.task_id)
        git_ops.worktree_prune(cwd=self.base_dir)
        if git_ops.branch_exists(branch, cwd=self.base_dir):
            log.debug(f"Removing stale branch {branch}")
            git_ops.delete_branch(branch, force=True, cwd=self.base_dir)
        if path.exists():
            shutil.rmtree(path, ignore_errors=True)

    def remove(self, task_id: str) -> None:
        """Remove the worktree and its branch.

        A second call for the same id raises ``WorkspaceNotFoundError`` so
        double cleanup is detectable.
        """
        with self._lock:
            ws = self._workspaces.get(task_id)
            if ws is None:
                raise WorkspaceNotFoundError(task_id)
            if git_ops.worktree_remove(ws.path, force=True, cwd=self.base_dir):
                git_ops.delete_branch(ws.branch, force=True, cwd=self.base_dir)
                if ws.path.exists():
                    shutil.rmtree(ws.path, ignore_errors=True)
            else:
                log.debug(f"Workspace {task_id}: git worktree remove failed, forcing")
                self._force_cleanup(ws.path, ws.branch)
            del self._workspaces[task_id]
            log.debug(f"Workspace {task_id}: removed")

    def force_remove(self, task_id: str) -> None:
        """Best-effort removal that tolerates missing paths and branches."""
        with self._lock:
            ws = self._workspaces.pop(task_id, None)
            if ws is not None:
                self._force_cleanup(ws.path, ws.branch)
                return
            path, branch = self.path_for(task_id), self.branch_for(task_id)
            if self._owner_of(path, branch) is None:
                self._force_cleanup(path, branch)

    def _force_cleanup(self, path: Path, branch: str) -> None:
        git_ops.worktree_remove(path, force=True, cwd=self.base_dir)
        if path.exists():
            shutil.rmtree(path, ignore_errors=True)
        git_ops.worktree_prune(cwd=self.base_dir)
        git_ops.delete_branch(branch, force=True, cwd=self.base_dir)

    def cleanup_all(self, keep: Iterable[WorkspaceStatus] = ()) -> list[str]:
        """Remove every tracked workspace except those whose status is in *keep*.

        Never raises: individual failures fall back to forced removal.
        Returns the removed task ids.
        """
        keep = set(keep)
        removed: list[str] = []
        with self._lock:
            for ws in self.list():
                if ws.status in keep:
                    continue
                try:
                    self.remove(ws.task_id)
                except (ParallelError, OSError) as e:
                    log.warn(f"Cleanup of {ws.task_id} failed ({e}); forcing removal")
                    try:
                        self.force_remove(ws.task_id)
                    except OSError as e2:
                        log.error(f"Could not remove workspace {ws.path}: {e2}")
                        continue
                removed.append(ws.task_id)
            if not self._workspaces and self._owns_root and self._root is not None:
                shutil.rmtree(self._root, ignore_errors=True)
                self._root = None
        return removed

    def __enter__(self) -> WorkspaceManager:
        return self

    def __exit__(self, *exc: object) -> None:
        self.cleanup_all()

    # ── status transitions ───────────────────────────────────────────

    def _transition(self, task_id: str, target: WorkspaceStatus) -> Workspace:
        with self._lock:
            ws = self._workspaces.get(task_id)
            if ws is None:
                raise WorkspaceNotFoundError(task_id)
            if ws.status is target:
                return ws
            if target not in _TRANSITIONS[ws.status]:
                raise InvalidTransitionError(task_id, ws.status.value, target.value)
            log.debug(f"Workspace {task_id}: {ws.status.value} -> {target.value}")
            ws.status = target
            return ws

    def mark_completed(self, task_id: str) -> Workspace:
        return self._transition(task_id, WorkspaceStatus.COMPLETED)

    def mark_failed(self, task_id: str) -> Workspace:
        return self._transition(task_id, WorkspaceStatus.FAILED)

    # ── queries ──────────────────────────────────────────────────────

    def list(self) -> list[Workspace]:
        """Tracked workspaces in creation order."""
        return sorted(self._workspaces.values(), key=lambda w: w.seq)

    def get(self, task_id: str) -> Workspace | None:
        return self._workspaces.get(task_id)

    def has(self, task_id: str) -> bool:
        return task_id in self._workspaces

    def count(self) -> int:
        return len(self._workspaces)

    def active_count(self) -> int:
        return sum(1 for w in self._workspaces.values() if w.status is WorkspaceStatus.ACTIVE)

    def can_create(self) -> bool:
        return self.active_count() < self.max_worktrees

    def remaining_capacity(self) -> int:
        return max(0, self.max_worktrees - self.active_count())

    def completed(self) -> list[Workspace]:
        return [w for w in self.list() if w.status is WorkspaceStatus.COMPLETED]

    def failed(self) -> list[Workspace]:
        return [w for w in self.list() if w.status is WorkspaceStatus.FAILED]

    # ── maintenance ──────────────────────────────────────────────────

    def sync(self) -> list[str]:
        """Adopt existing worktrees under our root whose branch carries our prefix."""
        adopted: list[str] = []
        root = self._root
        if root is None:
            return adopted
        with self._lock:
            for entry in git_ops.worktree_list(cwd=self.base_dir):
                path = Path(entry["path"])
                branch = entry.get("branch", "")
                if path.parent.resolve() != root.resolve() or not branch.startswith(f"{self.branch_prefix}/"):
                    continue
                task_id = path.name
                if task_id in self._workspaces:
                    continue
                self._workspaces[task_id] = Workspace(
                    task_id=task_id,
                    path=path,
                    branch=branch,
                    base_branch="",
                    base_commit=entry.get("head", ""),
                    seq=next(self._seq),
                )
                adopted.append(task_id)
        if adopted:
            log.debug(f"Adopted existing worktrees: {', '.join(adopted)}")
        return adopted

    def prune_stale(self) -> list[str]:
        """Delete ``<prefix>/*`` branches (and their worktrees) that no tracked workspace owns."""
        removed: list[str] = []
        with self._lock:
            git_ops.worktree_prune(cwd=self.base_dir)
            owned = {w.branch for w in self._workspaces.values()}
            worktrees = {e["branch"]: Path(e["path"]) for e in git_ops.worktree_list(cwd=self.base_dir)}
            for branch in git_ops.list_branches(f"{self.branch_prefix}/*", cwd=self.base_dir):
                if branch in owned:
                    continue
                wt_path = worktrees.get(branch)
                if wt_path is not None:
                    log.debug(f"Removing stale worktree for {branch} at {wt_path}")
                    git_ops.worktree_remove(wt_path, force=True, cwd=self.base_dir)
                    if wt_path.exists():
                        shutil.rmtree(wt_path, ignore_errors=True)
                log.debug(f"Cleaning up stale branch: {branch}")
                if git_ops.delete_branch(branch, force=True, cwd=self.base_dir):
                    removed.append(branch)
        return removed
