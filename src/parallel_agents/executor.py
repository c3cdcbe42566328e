"""Parallel execution: run planned groups in isolated workspaces, then merge them.

One run walks the plan group by group. Inside a group, up to ``width`` tasks
execute concurrently on a thread pool, each in its own worktree; the group's
completed workspaces are merged before the next group starts. Workspace
cleanup happens on every exit path.
"""

from __future__ import annotations

import threading
import time
from collections import deque
from collections.abc import Iterable
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from pathlib import Path

from parallel_agents import git_ops, log
from parallel_agents.config import ParallelConfig
from parallel_agents.engines.base import EngineBase
from parallel_agents.errors import DirtyWorkspaceError, ParallelError
from parallel_agents.merge import MergeOrchestrator
from parallel_agents.planner import ExecutionPlan, Planner
from parallel_agents.report import AnalysisReport, GroupRun, ProgressReporter, RunReport, TaskOutcome, TaskStatus
from parallel_agents.resource_monitor import ResourceMonitor, ResourceThresholds
from parallel_agents.tasks.model import Task
from parallel_agents.workspace_manager import Workspace, WorkspaceManager, WorkspaceStatus

TASK_ID_ENV = "PARALLEL_TASK_ID"
WORKTREE_ENV = "PARALLEL_WORKTREE"


class ParallelExecutor:
    """End-to-end run: plan, execute group by group, merge, clean up."""

    def __init__(
        self,
        config: ParallelConfig,
        base_dir: Path,
        engine: EngineBase,
        *,
        monitor: ResourceMonitor | None = None,
        manager: WorkspaceManager | None = None,
        merger: MergeOrchestrator | None = None,
        planner: Planner | None = None,
        reporter: ProgressReporter | None = None,
        watch_interval: float = 30.0,
    ) -> None:
        self.config = config
        self.base_dir = Path(base_dir)
        self.engine = engine
        self.monitor = monitor or ResourceMonitor(self.base_dir, ResourceThresholds.from_config(config))
        self.manager = manager or WorkspaceManager(
            self.base_dir,
            worktree_dir=Path(config.worktree_dir) if config.worktree_dir else None,
            max_worktrees=config.max_parallel,
            branch_prefix=config.branch_prefix,
        )
        self.merger = merger
        self.planner = planner or Planner(self.base_dir, config)
        self.reporter = reporter or ProgressReporter(config.show_progress)
        self.watch_interval = watch_interval
        self._cancel = threading.Event()
        self._lock = threading.Lock()

    # ── public API ───────────────────────────────────────────────────

    def analyze(self, items: Iterable[str | Task]) -> AnalysisReport:
        """Plan only. Touches neither the filesystem nor git state."""
        clean, reason = self.manager.is_clean_state()
        warnings = [] if clean else [f"{reason} A real run would stop here."]
        plan = self.planner.plan(items)
        status = self.monitor.get_status()
        return AnalysisReport(
            plan=plan,
            resources=status,
            resource_summary=self.monitor.summary(status),
            warnings=warnings,
        )

    def run(self, items: Iterable[str | Task], dry_run: bool = False) -> RunReport | AnalysisReport:
        if dry_run:
            return self.analyze(items)

        self._cancel.clear()
        report = RunReport()
        plan: ExecutionPlan | None = None
        watch = None
        try:
            clean, reason = self.manager.is_clean_state()
            if not clean:
                raise DirtyWorkspaceError(reason)

            plan = self.planner.plan(items)
            self.reporter.plan(plan)
            report.warnings.extend(plan.warnings)

            status = self.monitor.get_status()
            if not status.overall.can_parallelize:
                report.warnings.append(f"Limited concurrency: {status.overall.reason}")
            if self.merger is None:
                self.merger = MergeOrchestrator(
                    self.base_dir,
                    self.manager,
                    self.config.merge_strategy,
                    auto_push=self.config.auto_push,
                )

            watch = self.monitor.watch(lambda msg: self._resource_warning(report, msg), self.watch_interval)
            self._execute(plan, report)
        except ParallelError as e:
            log.error(str(e))
            report.fail(e)
            if plan is not None:
                self._mark_unfinished(plan, report, TaskStatus.SKIPPED, f"Run aborted: {e}")
        except KeyboardInterrupt:
            self.cancel()
            report.warnings.append("Run interrupted")
            if plan is not None:
                self._mark_unfinished(plan, report, TaskStatus.CANCELLED, "Run interrupted")
        finally:
            if watch is not None:
                watch.stop()
            self._cleanup(report)

        report.finish(self.config.timeout)
        self.reporter.finish(report)
        return report

    def cancel(self) -> None:
        """Stop launching tasks and terminate running ones; workspaces are torn down by ``run``."""
        if not self._cancel.is_set():
            log.warn("Cancelling run…")
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    # ── groups ───────────────────────────────────────────────────────

    def _execute(self, plan: ExecutionPlan, report: RunReport) -> None:
        unsuccessful: set[str] = set()
        width_cap = self.config.max_parallel

        for group in plan.groups:
            if self._cancel.is_set():
                break

            runnable: list[str] = []
            for task_id in group.task_ids:
                blocked = plan.analysis.graph.nodes[task_id].dependencies & unsuccessful
                if blocked:
                    outcome = self._record(
                        report,
                        TaskOutcome(task_id, TaskStatus.SKIPPED, f"Dependency failed: {', '.join(sorted(blocked))}"),
                    )
                    self.reporter.task_finished(outcome)
                    unsuccessful.add(task_id)
                else:
                    runnable.append(task_id)
            if not runnable:
                continue

            width = self._width(len(runnable), width_cap, report)
            report.groups.append(GroupRun(group.id, runnable, width))
            self.reporter.group_started(group, width)

            finished_width = self._run_group(plan, runnable, width, report)
            if finished_width < width:
                width_cap = max(1, finished_width)

            if not self._cancel.is_set():
                self._merge_group(runnable, report)

            unsuccessful.update(
                tid for tid in runnable
                if tid not in report.outcomes or report.outcomes[tid].status is not TaskStatus.COMPLETED
            )

        self._mark_unfinished(plan, report, TaskStatus.CANCELLED, "Run cancelled before the task started")

    def _width(self, size: int, cap: int, report: RunReport) -> int:
        if not self.config.enabled:
            return 1
        status = self.monitor.get_status()
        width = min(
            cap,
            self.config.max_parallel,
            status.overall.recommended_concurrency,
            self.manager.remaining_capacity(),
            size,
        )
        if size > 1 and width < min(size, self.config.max_parallel):
            reason = status.overall.reason or "workspace capacity"
            report.warnings.append(f"Concurrency reduced to {max(width, 1)} ({reason})")
        return max(1, width)

    def _run_group(self, plan: ExecutionPlan, task_ids: list[str], width: int, report: RunReport) -> int:
        """Run one group; returns the width it finished with (lower after a resource dip)."""
        queue = deque(task_ids)
        running: dict[Future[TaskOutcome], str] = {}

        with ThreadPoolExecutor(max_workers=width, thread_name_prefix="parallel-task") as pool:
            try:
                while queue or running:
                    if self._cancel.is_set():
                        while queue:
                            self._record(
                                report,
                                TaskOutcome(queue.popleft(), TaskStatus.CANCELLED, "Run cancelled before the task started"),
                            )

                    while queue and len(running) < width:
                        decision = self.monitor.can_add_worktree(len(running))
                        if not decision:
                            if running:
                                width = len(running)
                                self._resource_warning(report, f"Reducing concurrency to {width}: {decision.reason}")
                                break
                            self._resource_warning(report, f"Running {queue[0]} alone: {decision.reason}")
                        task_id = queue.popleft()
                        ws = self.manager.create(task_id)
                        future = pool.submit(self._run_task, plan, plan.task(task_id), ws, report)
                        running[future] = task_id

                    if running:
                        done, _ = wait(running, timeout=0.5, return_when=FIRST_COMPLETED)
                        for future in done:
                            del running[future]
                            future.result()
            except (ParallelError, KeyboardInterrupt):
                self._cancel.set()
                raise
        return width

    def _run_task(self, plan: ExecutionPlan, task: Task, ws: Workspace, report: RunReport) -> TaskOutcome:
        """Worker body. Every failure stays inside this task's outcome."""
        self.reporter.task_started(task.id, task.description)
        start = time.monotonic()
        timed_out = False
        try:
            result = self.engine.run_sync(
                self._prompt(plan, task, ws),
                cwd=ws.path,
                timeout=self.config.timeout,
                cancel_event=self._cancel,
                env={TASK_ID_ENV: task.id, WORKTREE_ENV: str(ws.path)},
            )
            if result.cancelled:
                status, reason = TaskStatus.CANCELLED, "Cancelled while running"
            elif not result.success:
                status, reason = TaskStatus.FAILED, result.error
                timed_out = result.timed_out
            elif git_ops.has_dirty_worktree(cwd=ws.path) and not git_ops.add_and_commit(
                f"Parallel task {task.id}: {task.description[:60]}", cwd=ws.path
            ):
                status, reason = TaskStatus.FAILED, "Could not commit the task's changes"
            else:
                status, reason = TaskStatus.COMPLETED, ""
            output = result.text
        except Exception as e:
            log.error(f"{task.id}: delegated executor crashed: {e}")
            status, reason, output = TaskStatus.FAILED, f"Executor error: {e}", ""

        if status is TaskStatus.COMPLETED:
            self.manager.mark_completed(task.id)
        else:
            self.manager.mark_failed(task.id)

        outcome = self._record(
            report,
            TaskOutcome(
                task.id,
                status,
                reason,
                duration_ms=int((time.monotonic() - start) * 1000),
                branch=ws.branch,
                workspace=str(ws.path),
                output=output,
                timed_out=timed_out,
            ),
        )
        self.reporter.task_finished(outcome)
        return outcome

    def _prompt(self, plan: ExecutionPlan, task: Task, ws: Workspace) -> str:
        lines = [
            task.description,
            "",
            f"You are working in an isolated git worktree on branch {ws.branch}.",
            "Other tasks run at the same time in other worktrees; change only what this task needs.",
        ]
        prediction = plan.prediction(task.id)
        if prediction and prediction.files:
            lines.append(f"Files most likely involved: {', '.join(prediction.files[:10])}")
        return "\n".join(lines)

    # ── merge / cleanup ──────────────────────────────────────────────

    def _merge_group(self, task_ids: list[str], report: RunReport) -> None:
        assert self.merger is not None
        workspaces = [self.manager.get(tid) for tid in task_ids if self.manager.has(tid)]
        self.reporter.merge_started(sum(1 for w in workspaces if w.status is WorkspaceStatus.COMPLETED))
        merge = self.merger.merge_all(workspaces)
        report.merges.append(merge)

        for r in merge.merged:
            report.outcomes[r.task_id].commits_merged = r.commits
        for r in merge.failed:
            outcome = report.outcomes[r.task_id]
            outcome.status = TaskStatus.FAILED
            outcome.reason = r.error if r.error.startswith("Merge") else f"Merge failed: {r.error}"

        removed = self.merger.cleanup(merge, self.config.cleanup_on_complete, self.config.cleanup_on_fail)
        self.reporter.cleanup(removed)

    def _cleanup(self, report: RunReport) -> None:
        keep = []
        if not self.config.cleanup_on_complete:
            keep.append(WorkspaceStatus.COMPLETED)
        if not self.config.cleanup_on_fail:
            keep.append(WorkspaceStatus.FAILED)
        removed = self.manager.cleanup_all(keep=keep)
        self.reporter.cleanup(removed)
        report.retained = [str(w.path) for w in self.manager.list()]

    # ── helpers ──────────────────────────────────────────────────────

    def _record(self, report: RunReport, outcome: TaskOutcome) -> TaskOutcome:
        with self._lock:
            return report.record(outcome)

    def _resource_warning(self, report: RunReport, message: str) -> None:
        log.warn(message)
        with self._lock:
            report.warnings.append(message)

    def _mark_unfinished(self, plan: ExecutionPlan, report: RunReport, status: TaskStatus, reason: str) -> None:
        for task in plan.tasks:
            if task.id not in report.outcomes:
                self._record(report, TaskOutcome(task.id, status, reason))
