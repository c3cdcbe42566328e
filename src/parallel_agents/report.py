"""Run and analysis reports, JSON export and console progress."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

from rich.table import Table

from parallel_agents import log
from parallel_agents.errors import (
    CapacityError,
    CyclicDependencyError,
    DirtyWorkspaceError,
    ParallelError,
    TaskValidationError,
    WorkspaceError,
)
from parallel_agents.io_utils import write_json
from parallel_agents.merge import MergeReport
from parallel_agents.planner import ExecutionPlan, PlannedGroup, format_suggestion
from parallel_agents.resource_monitor import ResourceStatus


class TaskStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


_STYLES = {
    TaskStatus.COMPLETED: "green",
    TaskStatus.FAILED: "red",
    TaskStatus.SKIPPED: "yellow",
    TaskStatus.CANCELLED: "magenta",
}


def _iso(ts: datetime | None) -> str | None:
    return ts.strftime("%Y-%m-%dT%H:%M:%SZ") if ts else None


@dataclass
class TaskOutcome:
    task_id: str
    status: TaskStatus
    reason: str = ""
    duration_ms: int = 0
    branch: str = ""
    workspace: str = ""
    commits_merged: int = 0
    output: str = ""
    # Copied from EngineResult.timed_out.
    timed_out: bool = False

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "taskId": self.task_id,
            "status": self.status.value,
            "durationMs": self.duration_ms,
            "branch": self.branch,
            "workspace": self.workspace,
            "commitsMerged": self.commits_merged,
        }
        if self.reason:
            data["reason"] = self.reason
        if self.timed_out:
            data["timedOut"] = True
        return data


@dataclass
class GroupRun:
    """A group as actually executed: its tasks and the concurrency it got."""

    id: str
    task_ids: list[str]
    concurrency: int

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "taskIds": list(self.task_ids), "concurrency": self.concurrency}


@dataclass
class RunReport:
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: datetime | None = None
    success: bool = False
    fatal: bool = False
    error: str = ""
    outcomes: dict[str, TaskOutcome] = field(default_factory=dict)
    groups: list[GroupRun] = field(default_factory=list)
    merges: list[MergeReport] = field(default_factory=list)
    retained: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    next_steps: list[str] = field(default_factory=list)

    def record(self, outcome: TaskOutcome) -> TaskOutcome:
        self.outcomes[outcome.task_id] = outcome
        return outcome

    def with_status(self, status: TaskStatus) -> list[TaskOutcome]:
        return [o for o in self.outcomes.values() if o.status is status]

    @property
    def completed(self) -> list[TaskOutcome]:
        return self.with_status(TaskStatus.COMPLETED)

    @property
    def failed(self) -> list[TaskOutcome]:
        return self.with_status(TaskStatus.FAILED)

    @property
    def duration_ms(self) -> int:
        end = self.finished_at or datetime.now(timezone.utc)
        return int((end - self.started_at).total_seconds() * 1000)

    def fail(self, exc: BaseException) -> RunReport:
        """Record a fatal error (precondition or tooling) with its next steps."""
        self.fatal = True
        self.error = str(exc)
        self.next_steps.extend(next_steps_for_error(exc))
        return self

    def finish(self, timeout: int | None = None) -> RunReport:
        self.finished_at = datetime.now(timezone.utc)
        if not self.fatal:
            self.next_steps.extend(next_steps_for_run(self, timeout))
        self.success = (
            not self.fatal
            and bool(self.outcomes)
            and all(o.status is TaskStatus.COMPLETED for o in self.outcomes.values())
            and all(m.success for m in self.merges)
        )
        return self

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "fatal": self.fatal,
            "error": self.error or None,
            "startedAt": _iso(self.started_at),
            "finishedAt": _iso(self.finished_at),
            "durationMs": self.duration_ms,
            "tasks": [o.to_dict() for o in self.outcomes.values()],
            "groups": [g.to_dict() for g in self.groups],
            "merges": [m.to_dict() for m in self.merges],
            "retainedWorkspaces": list(self.retained),
            "warnings": list(self.warnings),
            "nextSteps": list(self.next_steps),
        }

    def write(self, path: Path) -> Path:
        write_json(path, self.to_dict())
        return path


@dataclass
class AnalysisReport:
    """Dry-run output: the plan and the resources it would run with. No side effects."""

    plan: ExecutionPlan
    resources: ResourceStatus | None = None
    resource_summary: str = ""
    warnings: list[str] = field(default_factory=list)

    @property
    def groups(self) -> list[PlannedGroup]:
        return self.plan.groups

    def to_dict(self) -> dict[str, Any]:
        data = self.plan.to_dict()
        data["dryRun"] = True
        data["warnings"] = [*self.plan.warnings, *self.warnings]
        data["resources"] = self.resources.to_dict() if self.resources else None
        data["resourceSummary"] = self.resource_summary
        return data

    def write(self, path: Path) -> Path:
        write_json(path, self.to_dict())
        return path


# ── next steps ───────────────────────────────────────────────────────


def next_steps_for_error(exc: BaseException) -> list[str]:
    match exc:
        case DirtyWorkspaceError():
            return ["Commit or stash your changes, then re-run."]
        case CapacityError():
            return ["Reduce maxParallel or remove leftover worktrees with `parallel-agents cleanup`."]
        case CyclicDependencyError():
            return [f"Remove the circular dependency between: {', '.join(exc.task_ids)}."]
        case TaskValidationError():
            return ["Fix the task definitions and re-run."]
        case WorkspaceError():
            return [
                "Check that git worktrees can be created here (git >= 2.5, writable worktree directory).",
                "Run `parallel-agents cleanup` to remove stale worktrees and branches.",
            ]
        case ParallelError():
            return ["Fix the reported problem and re-run."]
        case _:
            return ["Re-run with -v for details."]


def next_steps_for_run(report: RunReport, timeout: int | None = None) -> list[str]:
    steps: list[str] = []
    for outcome in report.failed:
        if outcome.timed_out:
            limit = f" (currently {timeout}s)" if timeout else ""
            steps.append(f"Increase timeout{limit} or split {outcome.task_id} into smaller tasks.")
        elif outcome.reason.startswith("Merge"):
            where = f" from branch {outcome.branch}" if outcome.workspace in report.retained else ""
            steps.append(f"Resolve the conflict for {outcome.task_id} manually{where}, or re-run it on its own.")
        else:
            steps.append(f"Inspect the failure of {outcome.task_id} and re-run it.")
    for outcome in report.with_status(TaskStatus.SKIPPED):
        steps.append(f"Re-run {outcome.task_id} once its dependencies succeed.")
    if report.with_status(TaskStatus.CANCELLED):
        steps.append("Re-run the cancelled tasks.")
    if any("concurrency" in w.lower() or "resource" in w.lower() for w in report.warnings):
        steps.append("Reduce maxParallel to match available resources.")
    if report.retained:
        steps.append("Remove retained workspaces with `parallel-agents cleanup` when done inspecting them.")
    return steps


# ── console output ───────────────────────────────────────────────────


class ProgressReporter:
    """Console progress for a run. Safe to call from worker threads."""

    def __init__(self, enabled: bool = True) -> None:
        self.enabled = enabled

    def plan(self, plan: ExecutionPlan) -> None:
        if not self.enabled:
            return
        log.heading("Parallel execution plan")
        log.console.print(format_suggestion(plan))

    def group_started(self, group: PlannedGroup, width: int) -> None:
        if self.enabled:
            log.heading(f"{group.id}: {len(group.task_ids)} task(s), up to {width} at a time")

    def task_started(self, task_id: str, description: str) -> None:
        if self.enabled:
            log.task(task_id, f"started: {description[:70]}")

    def task_finished(self, outcome: TaskOutcome) -> None:
        if not self.enabled:
            return
        text = f"{outcome.status.value} in {outcome.duration_ms / 1000:.1f}s"
        if outcome.reason:
            text += f": {outcome.reason}"
        log.task(outcome.task_id, text, _STYLES[outcome.status])

    def merge_started(self, count: int) -> None:
        if self.enabled and count:
            log.info(f"Merging {count} completed workspace(s)…")

    def cleanup(self, removed: list[str]) -> None:
        if self.enabled and removed:
            log.debug(f"Removed workspaces: {', '.join(removed)}")

    def finish(self, report: RunReport) -> None:
        if not self.enabled:
            return
        log.heading("Run summary")
        table = Table(show_header=True, header_style="bold")
        table.add_column("Task")
        table.add_column("Status")
        table.add_column("Time", justify="right")
        table.add_column("Commits", justify="right")
        table.add_column("Reason")
        for o in report.outcomes.values():
            style = _STYLES[o.status]
            table.add_row(
                o.task_id,
                f"[{style}]{o.status.value}[/{style}]",
                f"{o.duration_ms / 1000:.1f}s",
                str(o.commits_merged),
                o.reason,
            )
        if report.outcomes:
            log.console.print(table)

        if report.fatal:
            log.error(report.error)
        elif report.success:
            log.success(f"All {len(report.outcomes)} task(s) completed in {report.duration_ms / 1000:.1f}s")
        else:
            log.warn(
                f"{len(report.completed)} of {len(report.outcomes)} task(s) completed "
                f"in {report.duration_ms / 1000:.1f}s"
            )
        for warning in report.warnings:
            log.warn(warning)
        if report.next_steps:
            log.console.print("[bold]Next steps:[/bold]")
            for step in report.next_steps:
                log.console.print(f"  - {step}")
