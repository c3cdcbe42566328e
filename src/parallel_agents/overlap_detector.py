"""Overlap detection: find files claimed by several tasks and form conflict-free groups."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum
from itertools import combinations
from pathlib import PurePosixPath
from typing import Any

from parallel_agents.file_predictor import FilePrediction


class Severity(str, Enum):
    CRITICAL = "critical"
    WARNING = "warning"
    INFO = "info"

    @property
    def rank(self) -> int:
        return _RANK[self]

    @property
    def blocking(self) -> bool:
        return self is not Severity.INFO


_RANK = {Severity.INFO: 0, Severity.WARNING: 1, Severity.CRITICAL: 2}

SOURCE_EXTENSIONS = frozenset({
    ".py", ".pyi", ".pyx", ".ts", ".tsx", ".js", ".jsx", ".mjs", ".cjs", ".vue", ".svelte",
    ".go", ".rs", ".rb", ".java", ".kt", ".scala", ".swift", ".c", ".h", ".cc", ".cpp", ".hpp",
    ".cs", ".php", ".sh", ".bash", ".sql", ".css", ".scss", ".sass", ".less", ".html",
})
CONFIG_EXTENSIONS = frozenset({
    ".json", ".yaml", ".yml", ".toml", ".xml", ".ini", ".cfg", ".conf", ".env", ".lock", ".properties",
})
DOC_EXTENSIONS = frozenset({".md", ".markdown", ".rst", ".txt", ".adoc"})


def classify_path(path: str) -> Severity:
    """Severity of co-modifying *path*. Unknown kinds are treated as configuration."""
    suffix = PurePosixPath(path).suffix.lower()
    if suffix in SOURCE_EXTENSIONS:
        return Severity.CRITICAL
    if suffix in DOC_EXTENSIONS:
        return Severity.INFO
    return Severity.WARNING


@dataclass
class OverlapPair:
    task1: str
    task2: str
    files: list[str] = field(default_factory=list)
    severity: Severity = Severity.INFO

    @property
    def blocking(self) -> bool:
        return self.severity.blocking

    def involves(self, task_id: str) -> bool:
        return task_id in (self.task1, self.task2)

    def to_dict(self) -> dict[str, Any]:
        return {
            "task1": self.task1,
            "task2": self.task2,
            "overlappingFiles": list(self.files),
            "severity": self.severity.value,
        }


@dataclass
class SafeGroup:
    id: str
    task_ids: list[str] = field(default_factory=list)
    files: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "taskIds": list(self.task_ids), "files": list(self.files)}


@dataclass
class OverlapResult:
    overlapping_files: dict[str, list[str]]
    pairs: list[OverlapPair]
    safe_groups: list[SafeGroup]

    @property
    def has_overlap(self) -> bool:
        return bool(self.overlapping_files)

    def critical_pairs(self) -> list[OverlapPair]:
        return [p for p in self.pairs if p.severity is Severity.CRITICAL]

    def to_dict(self) -> dict[str, Any]:
        return {
            "hasOverlap": self.has_overlap,
            "overlappingFiles": {f: list(t) for f, t in self.overlapping_files.items()},
            "taskPairs": [p.to_dict() for p in self.pairs],
            "safeGroups": [g.to_dict() for g in self.safe_groups],
        }


@dataclass
class OverlapAnalysis:
    total_tasks: int
    parallelizable: int
    blocked: list[str]
    matrix: dict[str, list[str]]
    recommendations: list[str]


class OverlapDetector:
    """Cross-reference predictions; greedily partition tasks into safe groups."""

    def detect(self, predictions: Sequence[FilePrediction]) -> OverlapResult:
        claimants: dict[str, list[str]] = {}
        for prediction in predictions:
            for path in dict.fromkeys(prediction.files):
                claimants.setdefault(path, []).append(prediction.task_id)

        overlapping = {path: ids for path, ids in claimants.items() if len(ids) > 1}

        pairs: dict[tuple[str, str], OverlapPair] = {}
        order = {p.task_id: i for i, p in enumerate(predictions)}
        for path, ids in overlapping.items():
            severity = classify_path(path)
            for a, b in combinations(sorted(ids, key=order.__getitem__), 2):
                pair = pairs.setdefault((a, b), OverlapPair(a, b))
                pair.files.append(path)
                if severity.rank > pair.severity.rank:
                    pair.severity = severity

        pair_list = list(pairs.values())
        return OverlapResult(
            overlapping_files=overlapping,
            pairs=pair_list,
            safe_groups=self._safe_groups(predictions, pair_list),
        )

    @staticmethod
    def _safe_groups(predictions: Sequence[FilePrediction], pairs: list[OverlapPair]) -> list[SafeGroup]:
        """First-fit: each task joins the first group it has no blocking edge into."""
        conflicts: dict[str, set[str]] = {p.task_id: set() for p in predictions}
        for pair in pairs:
            if pair.blocking:
                conflicts[pair.task1].add(pair.task2)
                conflicts[pair.task2].add(pair.task1)

        groups: list[SafeGroup] = []
        for prediction in predictions:
            tid = prediction.task_id
            target = next(
                (g for g in groups if not conflicts[tid].intersection(g.task_ids)),
                None,
            )
            if target is None:
                target = SafeGroup(id=f"safe-group-{len(groups) + 1}")
                groups.append(target)
            target.task_ids.append(tid)
            target.files.extend(f for f in prediction.files if f not in target.files)
        return groups

    def can_run_in_parallel(self, a: FilePrediction, b: FilePrediction) -> bool:
        """True iff *a* and *b* share no critical or warning path."""
        shared = set(a.files) & set(b.files)
        return not any(classify_path(path).blocking for path in shared)

    def is_conflict_free(
        self,
        predictions: Sequence[FilePrediction],
        groups: Sequence[SafeGroup] | None = None,
    ) -> bool:
        """Check a batch, or a concrete grouping of it.

        Without *groups*: false if any critical overlap exists anywhere in the
        batch. With *groups*: true iff no two members of one group share a
        critical or warning path.
        """
        if groups is None:
            return not self.detect(predictions).critical_pairs()

        by_id = {p.task_id: p for p in predictions}
        for group in groups:
            members = [by_id[tid] for tid in group.task_ids if tid in by_id]
            for a, b in combinations(members, 2):
                if not self.can_run_in_parallel(a, b):
                    return False
        return True

    def max_parallelization(self, predictions: Sequence[FilePrediction]) -> int:
        groups = self.detect(predictions).safe_groups
        return max((len(g.task_ids) for g in groups), default=0)

    def analyze(self, predictions: Sequence[FilePrediction]) -> OverlapAnalysis:
        result = self.detect(predictions)

        matrix: dict[str, list[str]] = {p.task_id: [] for p in predictions}
        blocked: dict[str, None] = {}
        for pair in result.pairs:
            matrix[pair.task1].append(pair.task2)
            matrix[pair.task2].append(pair.task1)
            if pair.blocking:
                blocked.setdefault(pair.task1)
                blocked.setdefault(pair.task2)

        recommendations: list[str] = []
        if result.has_overlap:
            recommendations.append("Consider splitting tasks to avoid file overlaps for better parallelization.")
            counts: dict[str, int] = {}
            for pair in result.pairs:
                for path in pair.files:
                    counts[path] = counts.get(path, 0) + 1
            top = sorted(counts.items(), key=lambda kv: (-kv[1], kv[0]))[:3]
            recommendations.append(f"Most conflicting files: {', '.join(f for f, _ in top)}")
        else:
            recommendations.append("All tasks can be safely parallelized.")
        if result.safe_groups:
            largest = max(len(g.task_ids) for g in result.safe_groups)
            recommendations.append(f"Maximum parallel group size: {largest} tasks")

        return OverlapAnalysis(
            total_tasks=len(predictions),
            parallelizable=len(predictions) - len(blocked),
            blocked=list(blocked),
            matrix=matrix,
            recommendations=recommendations,
        )

    def generate_report(self, predictions: Sequence[FilePrediction]) -> str:
        result = self.detect(predictions)
        analysis = self.analyze(predictions)
        lines = [
            "File overlap analysis",
            f"  Tasks: {analysis.total_tasks}, parallelizable: {analysis.parallelizable}, "
            f"blocked: {len(analysis.blocked)}",
        ]
        if result.pairs:
            lines.append("  Overlaps:")
            for pair in result.pairs:
                shown = ", ".join(pair.files[:3]) + (" ..." if len(pair.files) > 3 else "")
                lines.append(f"    [{pair.severity.value}] {pair.task1} <-> {pair.task2}: {shown}")
        lines.append("  Safe groups:")
        for group in result.safe_groups:
            lines.append(f"    {group.id}: {', '.join(group.task_ids)}")
        lines.append("  Recommendations:")
        lines.extend(f"    - {r}" for r in analysis.recommendations)
        return "\n".join(lines)
