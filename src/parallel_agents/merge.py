"""Merge orchestration: integrate completed workspaces into the primary one at a time."""

from __future__ import annotations

import threading
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from parallel_agents import git_ops, log
from parallel_agents.config import MERGE_STRATEGIES
from parallel_agents.errors import ParallelError, WorkspaceError, looks_like_merge_conflict
from parallel_agents.workspace_manager import Workspace, WorkspaceManager, WorkspaceStatus

CONFLICT_REASON = "Merge would result in conflicts. File overlap detection may have missed some files."


@dataclass
class MergeResult:
    task_id: str
    branch: str
    success: bool
    commits: int = 0
    files_changed: list[str] = field(default_factory=list)
    error: str = ""
    conflict: bool = False

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "taskId": self.task_id,
            "branch": self.branch,
            "success": self.success,
            "commits": self.commits,
            "filesChanged": list(self.files_changed),
        }
        if self.error:
            data["error"] = self.error
            data["conflict"] = self.conflict
        return data


@dataclass
class MergeReport:
    merged: list[MergeResult] = field(default_factory=list)
    failed: list[MergeResult] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    pushed: bool = False

    @property
    def success(self) -> bool:
        return not self.failed

    @property
    def total_commits(self) -> int:
        return sum(r.commits for r in self.merged)

    @property
    def files_changed(self) -> list[str]:
        seen: dict[str, None] = {}
        for r in self.merged:
            for path in r.files_changed:
                seen.setdefault(path, None)
        return list(seen)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "merged": [r.to_dict() for r in self.merged],
            "failed": [r.to_dict() for r in self.failed],
            "skipped": list(self.skipped),
            "totalCommits": self.total_commits,
            "totalFilesChanged": self.files_changed,
            "pushed": self.pushed,
        }


class MergeOrchestrator:
    """Dry-run, then integrate each completed workspace with the configured strategy.

    Only this class mutates the primary workspace; every integration holds
    ``self._lock`` so merges never interleave.
    """

    def __init__(
        self,
        base_dir: Path,
        manager: WorkspaceManager,
        strategy: str = "sequential",
        target_branch: str | None = None,
        *,
        auto_push: bool = False,
    ) -> None:
        if strategy not in MERGE_STRATEGIES:
            raise ValueError(f"Unknown merge strategy: {strategy}")
        self.base_dir = Path(base_dir)
        self.manager = manager
        self.strategy = strategy
        self.target_branch = target_branch or git_ops.current_branch(cwd=self.base_dir)
        self.auto_push = auto_push
        self._lock = threading.Lock()

    def merge_all(self, workspaces: Iterable[Workspace] | None = None) -> MergeReport:
        """Integrate every ``completed`` workspace in creation order.

        Failed workspaces are skipped. A conflicting or failing integration marks
        its workspace ``failed`` and the batch carries on.
        """
        pending = sorted(self.manager.list() if workspaces is None else workspaces, key=lambda w: w.seq)
        report = MergeReport()

        on_branch = git_ops.current_branch(cwd=self.base_dir)
        if on_branch != self.target_branch:
            raise WorkspaceError(
                f"Primary workspace is on {on_branch}, expected {self.target_branch}; refusing to merge"
            )

        for ws in pending:
            if ws.status is not WorkspaceStatus.COMPLETED:
                report.skipped.append(ws.task_id)
                continue

            with self._lock:
                safe, reason = self.can_merge_safely(ws)
                result = self.merge_branch(ws) if safe else MergeResult(
                    ws.task_id, ws.branch, False, error=reason, conflict=reason.startswith(CONFLICT_REASON)
                )

            if result.success:
                report.merged.append(result)
                log.task(ws.task_id, f"merged ({result.commits} commit(s), {len(result.files_changed)} file(s))", "green")
            else:
                report.failed.append(result)
                self._mark_failed(ws)
                log.task(ws.task_id, f"not merged: {result.error}", "red")

        if self.auto_push and report.merged:
            report.pushed = git_ops.push(self.target_branch, cwd=self.base_dir)
            if not report.pushed:
                log.warn(f"Could not push {self.target_branch}")
        return report

    def _mark_failed(self, ws: Workspace) -> None:
        if self.manager.has(ws.task_id):
            self.manager.mark_failed(ws.task_id)
        else:
            ws.status = WorkspaceStatus.FAILED

    def can_merge_safely(self, ws: Workspace) -> tuple[bool, str]:
        """Trial-merge without committing; the primary workspace is restored either way."""
        clean, conflicts, output = git_ops.try_merge(ws.branch, cwd=self.base_dir)
        if clean:
            return True, ""
        if conflicts or looks_like_merge_conflict(output):
            shown = f" Conflicting files: {', '.join(conflicts)}" if conflicts else ""
            return False, CONFLICT_REASON + shown
        return False, f"Merge check failed: {output or 'unknown error'}"

    def merge_branch(self, ws: Workspace) -> MergeResult:
        """Integrate one branch. Any failure resets the primary to its pre-merge HEAD."""
        commits = git_ops.commit_count(self.target_branch, ws.branch, cwd=self.base_dir)
        files = git_ops.changed_files(self.target_branch, ws.branch, cwd=self.base_dir)
        if commits == 0:
            return MergeResult(ws.task_id, ws.branch, True)

        before = git_ops.head_commit(cwd=self.base_dir)
        message = f"Merge parallel task: {ws.task_id}"
        match self.strategy:
            case "squash":
                r = git_ops.merge_squash(ws.branch, message, cwd=self.base_dir)
            case "rebase":
                r = git_ops.rebase(self.target_branch, cwd=ws.path)
                if r.returncode == 0:
                    r = git_ops.merge_ff_only(ws.branch, cwd=self.base_dir)
            case _:
                r = git_ops.merge_commit(ws.branch, message, cwd=self.base_dir)

        if r.returncode != 0:
            output = git_ops.output_of(r)
            git_ops.ensure_clean_git_state(cwd=self.base_dir)
            if before:
                git_ops.reset_hard(before, cwd=self.base_dir)
            return MergeResult(
                ws.task_id,
                ws.branch,
                False,
                error=output or f"{self.strategy} merge failed",
                conflict=looks_like_merge_conflict(output),
            )
        return MergeResult(ws.task_id, ws.branch, True, commits=commits, files_changed=files)

    def rollback(self, commits: int = 1) -> None:
        with self._lock:
            if not git_ops.reset_hard(f"HEAD~{commits}", cwd=self.base_dir):
                raise WorkspaceError(f"Could not roll back {commits} commit(s)")
            log.warn(f"Rolled back {commits} commit(s) on {self.target_branch}")

    def cleanup(
        self,
        report: MergeReport,
        cleanup_on_complete: bool = True,
        cleanup_on_fail: bool = True,
    ) -> list[str]:
        """Remove consumed workspaces according to the cleanup policy; returns removed ids."""
        targets: list[str] = []
        if cleanup_on_complete:
            targets += [r.task_id for r in report.merged]
        if cleanup_on_fail:
            targets += [r.task_id for r in report.failed] + report.skipped

        removed: list[str] = []
        for task_id in targets:
            if not self.manager.has(task_id):
                continue
            try:
                self.manager.remove(task_id)
            except (ParallelError, OSError) as e:
                log.warn(f"Failed to clean up workspace for {task_id}: {e}")
                self.manager.force_remove(task_id)
            removed.append(task_id)
        return removed

    def generate_summary(self, report: MergeReport) -> str:
        lines = [
            "Merge summary",
            f"  Status: {'success' if report.success else 'failed'}",
            f"  Total commits merged: {report.total_commits}",
            f"  Files changed: {len(report.files_changed)}",
        ]
        if report.merged:
            lines.append("  Merged:")
            lines += [f"    - {r.task_id}: {r.commits} commit(s), {len(r.files_changed)} file(s)" for r in report.merged]
        if report.failed:
            lines.append("  Failed to merge:")
            lines += [f"    - {r.task_id}: {r.error}" for r in report.failed]
        if report.skipped:
            lines.append("  Skipped (failed tasks):")
            lines += [f"    - {task_id}" for task_id in report.skipped]
        files = report.files_changed
        if files:
            lines.append("  Files:")
            lines += [f"    - {f}" for f in files[:20]]
            if len(files) > 20:
                lines.append(f"    ... and {len(files) - 20} more")
        return "\n".join(lines)
