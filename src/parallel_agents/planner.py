"""Execution planning: combine analysis, prediction and overlap detection into safe groups.

Groups are formed per dependency level, so every group only contains tasks
whose dependencies sit in earlier groups. Within a level the Overlap Detector
splits tasks that would touch the same source or configuration files.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from parallel_agents import log
from parallel_agents.config import ParallelConfig
from parallel_agents.file_predictor import FilePrediction, FilePredictor
from parallel_agents.overlap_detector import OverlapDetector, OverlapResult
from parallel_agents.task_analyzer import AnalysisResult, TaskAnalyzer
from parallel_agents.tasks.model import Task

MIN_TASKS = 2
MIN_SPEEDUP = 1.3
MIN_CONFIDENCE = 0.6

LOW_CONFIDENCE_WARNING = "Low confidence in file predictions - manual verification recommended"


@dataclass
class PlannedGroup:
    id: str
    level: int
    task_ids: list[str] = field(default_factory=list)
    files: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "level": self.level, "taskIds": list(self.task_ids), "files": list(self.files)}


@dataclass
class ExecutionPlan:
    tasks: list[Task]
    analysis: AnalysisResult
    predictions: list[FilePrediction]
    overlap: OverlapResult
    groups: list[PlannedGroup]
    confidence: float
    estimated_speedup: float
    should_parallelize: bool
    reasoning: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def sequential_tasks(self) -> list[str]:
        return [g.task_ids[0] for g in self.groups if len(g.task_ids) == 1]

    def task(self, task_id: str) -> Task:
        return next(t for t in self.tasks if t.id == task_id)

    def prediction(self, task_id: str) -> FilePrediction | None:
        return next((p for p in self.predictions if p.task_id == task_id), None)

    def to_dict(self) -> dict[str, Any]:
        return {
            "shouldParallelize": self.should_parallelize,
            "confidence": round(self.confidence, 2),
            "estimatedSpeedup": self.estimated_speedup,
            "groups": [g.to_dict() for g in self.groups],
            "sequentialTasks": self.sequential_tasks,
            "analysis": self.analysis.to_dict(),
            "predictions": [p.to_dict() for p in self.predictions],
            "overlap": self.overlap.to_dict(),
            "reasoning": list(self.reasoning),
            "warnings": list(self.warnings),
        }


class Planner:
    """Build an :class:`ExecutionPlan` and decide whether running it in parallel pays off."""

    def __init__(
        self,
        base_dir: Path,
        config: ParallelConfig | None = None,
        *,
        analyzer: TaskAnalyzer | None = None,
        predictor: FilePredictor | None = None,
        detector: OverlapDetector | None = None,
        min_tasks: int = MIN_TASKS,
        min_speedup: float = MIN_SPEEDUP,
        min_confidence: float = MIN_CONFIDENCE,
    ) -> None:
        self.config = config or ParallelConfig()
        self.analyzer = analyzer or TaskAnalyzer()
        self.predictor = predictor or FilePredictor(
            base_dir,
            use_git_history=self.config.use_git_history,
            include_tests=self.config.include_tests,
            deep_analysis=self.config.deep_analysis,
        )
        self.detector = detector or OverlapDetector()
        self.min_tasks = min_tasks
        self.min_speedup = min_speedup
        self.min_confidence = min_confidence

    def plan(self, items: Iterable[str | Task]) -> ExecutionPlan:
        """Analyze a batch. Raises ``CyclicDependencyError``/``TaskValidationError`` on bad input."""
        tasks = self.analyzer.coerce_tasks(items)
        analysis = self.analyzer.analyze(tasks)
        predictions = self.predictor.predict_all(tasks)
        overlap = self.detector.detect(predictions)
        groups = self._groups(analysis, predictions)

        confidence = sum(p.confidence for p in predictions) / len(predictions) if predictions else 0.0
        speedup = max(1.0, round(len(tasks) / len(groups), 2)) if groups else 1.0

        plan = ExecutionPlan(
            tasks=tasks,
            analysis=analysis,
            predictions=predictions,
            overlap=overlap,
            groups=groups,
            confidence=confidence,
            estimated_speedup=speedup,
            should_parallelize=False,
        )
        self._judge(plan)
        log.debug(f"Planned {len(tasks)} task(s) into {len(groups)} group(s)")
        return plan

    def _groups(self, analysis: AnalysisResult, predictions: list[FilePrediction]) -> list[PlannedGroup]:
        by_id = {p.task_id: p for p in predictions}
        groups: list[PlannedGroup] = []
        for level_index, level in enumerate(analysis.graph.levels):
            level_preds = [by_id[tid] for tid in level]
            for safe in self.detector.detect(level_preds).safe_groups:
                groups.append(
                    PlannedGroup(
                        id=f"group-{len(groups) + 1}",
                        level=level_index,
                        task_ids=list(safe.task_ids),
                        files=list(safe.files),
                    )
                )
        return groups

    def _judge(self, plan: ExecutionPlan) -> None:
        reasoning, warnings = plan.reasoning, plan.warnings

        for prediction in plan.predictions:
            warnings.extend(prediction.warnings)

        if not self.config.enabled:
            reasoning.append("Parallelization is disabled in config")
            return
        if len(plan.tasks) < self.min_tasks:
            reasoning.append(
                f"Only {len(plan.tasks)} task(s) - minimum {self.min_tasks} required for parallelization"
            )
            return

        if plan.estimated_speedup < self.min_speedup:
            reasoning.append(
                f"Estimated speedup ({plan.estimated_speedup:.2f}x) is below threshold ({self.min_speedup}x)"
            )
        if plan.confidence < self.min_confidence:
            reasoning.append(
                f"File prediction confidence ({plan.confidence * 100:.0f}%) "
                f"is below threshold ({self.min_confidence * 100:.0f}%)"
            )
            warnings.append(LOW_CONFIDENCE_WARNING)

        critical = plan.overlap.critical_pairs()
        if critical:
            reasoning.append(f"{len(critical)} task pair(s) have file overlaps that prevent parallelization")
            for pair in critical[:3]:
                warnings.append(
                    f"Tasks {pair.task1} and {pair.task2} modify common files: {', '.join(pair.files[:3])}"
                )

        parallel = [g for g in plan.groups if len(g.task_ids) > 1]
        if plan.groups:
            reasoning.append(f"Found {len(plan.groups)} execution group(s), {len(parallel)} with parallel work")
            reasoning.append(f"Maximum parallelism: {max(len(g.task_ids) for g in plan.groups)} concurrent tasks")
        in_parallel = sum(len(g.task_ids) for g in parallel)
        if in_parallel:
            reasoning.append(f"{in_parallel} of {len(plan.tasks)} tasks can be parallelized")

        plan.should_parallelize = (
            bool(parallel)
            and plan.estimated_speedup >= self.min_speedup
            and plan.confidence >= self.min_confidence
        )

    def quick_check(self, task_count: int) -> bool:
        """Cheap pre-filter: is a batch this size worth analyzing at all?"""
        return self.config.enabled and self.config.auto_suggest and task_count >= self.min_tasks


def format_suggestion(plan: ExecutionPlan) -> str:
    lines: list[str] = []
    if plan.should_parallelize:
        lines.append("Parallelization recommended")
        lines.append(f"  Estimated speedup: {plan.estimated_speedup:.2f}x")
        lines.append(f"  Confidence: {plan.confidence * 100:.0f}%")
    else:
        lines.append("Sequential execution recommended")
    lines.append("  Groups:")
    for group in plan.groups:
        lines.append(f"    {group.id} (level {group.level + 1}): {', '.join(group.task_ids)}")
    if plan.reasoning:
        lines.append("  Reasoning:")
        lines += [f"    - {r}" for r in plan.reasoning]
    if plan.warnings:
        lines.append("  Warnings:")
        lines += [f"    - {w}" for w in plan.warnings]
    return "\n".join(lines)
