"""Task analysis: parse descriptions, build the dependency graph, level it.

Tasks in the same topological level have no dependency relation (direct or
transitive) and are candidates for concurrent execution; levels themselves run
in order.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any

from parallel_agents import log
from parallel_agents.errors import CyclicDependencyError, TaskValidationError
from parallel_agents.tasks.model import Task, TaskType

FILE_EXTENSIONS = (
    "py", "pyi", "ts", "tsx", "js", "jsx", "mjs", "cjs", "vue", "svelte",
    "go", "rs", "rb", "java", "kt", "swift", "c", "h", "cpp", "hpp", "cs", "php",
    "sh", "sql", "css", "scss", "html",
    "json", "yaml", "yml", "toml", "ini", "cfg", "xml", "lock",
    "md", "rst", "txt",
)

FILE_MENTION_RE = re.compile(
    r"(?<![\w/.-])((?:\.{0,2}/)?(?:[\w.-]+/)*[\w-][\w.-]*\.(?:" + "|".join(FILE_EXTENSIONS) + r"))(?![\w/-])",
    re.IGNORECASE,
)

_MODULE_NOUNS = re.compile(r"\b(module|component|service|class|package)s?\b", re.IGNORECASE)
_FEATURE_VERBS = re.compile(r"\b(feature|implement|add|create|build)s?\b", re.IGNORECASE)

# "after task 2", "depends on tasks 1, 3 and 4", "requires task #1 & task #2"
_DEPENDENCY_HINT = re.compile(
    r"\b(?:after|depends\s+on|requires)\s+tasks?\s*#?"
    r"(\d+(?:\s*(?:,\s*and|,|and|&)\s*(?:tasks?\s*)?#?\d+)*)",
    re.IGNORECASE,
)
_THEN_PREFIX = re.compile(r"^\s*(and\s+)?then\b", re.IGNORECASE)


def extract_file_mentions(text: str) -> list[str]:
    """Return explicitly mentioned file paths, deduplicated, in order of appearance."""
    seen: dict[str, None] = {}
    for match in FILE_MENTION_RE.finditer(text):
        path = match.group(1).removeprefix("./")
        seen.setdefault(path, None)
    return list(seen)


def infer_task_type(description: str) -> TaskType:
    if _MODULE_NOUNS.search(description):
        return TaskType.MODULE
    if _FEATURE_VERBS.search(description):
        return TaskType.FEATURE
    return TaskType.FILE


@dataclass
class TaskNode:
    task: Task
    dependencies: set[str] = field(default_factory=set)
    dependents: set[str] = field(default_factory=set)


@dataclass
class TaskGraph:
    """Dependency graph plus its topological levels (input order kept inside a level)."""

    nodes: dict[str, TaskNode]
    levels: list[list[str]]

    def level_of(self, task_id: str) -> int:
        for i, level in enumerate(self.levels):
            if task_id in level:
                return i
        raise KeyError(task_id)

    def transitive_dependencies(self, task_id: str) -> set[str]:
        found: set[str] = set()
        stack = list(self.nodes[task_id].dependencies)
        while stack:
            dep = stack.pop()
            if dep in found:
                continue
            found.add(dep)
            stack.extend(self.nodes[dep].dependencies)
        return found

    @property
    def width(self) -> int:
        return max((len(level) for level in self.levels), default=0)


@dataclass
class AnalysisResult:
    tasks: list[Task]
    graph: TaskGraph
    parallel_groups: list[list[str]]
    sequential: list[str]
    total_tasks: int
    parallelizable_tasks: int
    max_parallelism: int
    estimated_speedup: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "levels": self.graph.levels,
            "parallelGroups": self.parallel_groups,
            "sequentialTasks": self.sequential,
            "totalTasks": self.total_tasks,
            "parallelizableTasks": self.parallelizable_tasks,
            "maxParallelism": self.max_parallelism,
            "estimatedSpeedup": self.estimated_speedup,
        }


class TaskAnalyzer:
    """Turn task descriptions into a leveled dependency graph."""

    def parse_task_descriptions(self, descriptions: Sequence[str]) -> list[Task]:
        """Build ``task-1..N`` from free text, inferring type, files and dependencies."""
        return [self._parse_one(desc, index) for index, desc in enumerate(descriptions)]

    def coerce_tasks(self, items: Iterable[str | Task]) -> list[Task]:
        """Accept description strings, ``Task`` objects, or a mix (strings get positional ids)."""
        return [
            item if isinstance(item, Task) else self._parse_one(item, index)
            for index, item in enumerate(items)
        ]

    def _parse_one(self, description: str, index: int) -> Task:
        return Task(
            id=f"task-{index + 1}",
            description=description,
            type=infer_task_type(description),
            dependencies=tuple(self._dependency_hints(description, index)),
            estimated_files=tuple(extract_file_mentions(description)),
        )

    @staticmethod
    def _dependency_hints(description: str, index: int) -> list[str]:
        """Back-references to earlier tasks only; forward references are ignored."""
        hints: list[str] = []
        for match in _DEPENDENCY_HINT.finditer(description):
            for number in re.findall(r"\d+", match.group(1)):
                n = int(number)
                if 1 <= n <= index and f"task-{n}" not in hints:
                    hints.append(f"task-{n}")
        if index > 0 and _THEN_PREFIX.match(description) and f"task-{index}" not in hints:
            hints.append(f"task-{index}")
        return hints

    def build_graph(self, tasks: Sequence[Task]) -> TaskGraph:
        """Build nodes, add implicit file-superset dependencies, and level with Kahn's algorithm.

        Raises ``TaskValidationError`` for duplicate ids or unknown dependency ids
        and ``CyclicDependencyError`` when no topological order exists.
        """
        nodes: dict[str, TaskNode] = {}
        for task in tasks:
            if task.id in nodes:
                raise TaskValidationError(f"Duplicate task id: {task.id}")
            nodes[task.id] = TaskNode(task=task)

        for task in tasks:
            for dep in task.dependencies:
                if dep not in nodes:
                    raise TaskValidationError(f"Task {task.id} depends on unknown task {dep}")
                nodes[task.id].dependencies.add(dep)

        for earlier, later in self._implicit_dependencies(tasks):
            if earlier not in nodes[later].dependencies:
                log.debug(f"Implicit dependency: {later} after {earlier} (file superset)")
                nodes[later].dependencies.add(earlier)

        for task_id, node in nodes.items():
            for dep in node.dependencies:
                nodes[dep].dependents.add(task_id)

        return TaskGraph(nodes=nodes, levels=self._levels(nodes))

    @staticmethod
    def _implicit_dependencies(tasks: Sequence[Task]) -> list[tuple[str, str]]:
        """``(earlier, later)`` pairs where the earlier task's files strictly contain the later one's."""
        pairs: list[tuple[str, str]] = []
        for j, later in enumerate(tasks):
            wanted = set(later.estimated_files)
            if not wanted:
                continue
            for earlier in tasks[:j]:
                if set(earlier.estimated_files) > wanted:
                    pairs.append((earlier.id, later.id))
        return pairs

    @staticmethod
    def _levels(nodes: dict[str, TaskNode]) -> list[list[str]]:
        in_degree = {tid: len(node.dependencies) for tid, node in nodes.items()}
        remaining = dict.fromkeys(nodes)
        levels: list[list[str]] = []

        while remaining:
            level = [tid for tid in remaining if in_degree[tid] == 0]
            if not level:
                raise CyclicDependencyError(_find_cycle(nodes, set(remaining)))
            for tid in level:
                del remaining[tid]
                for dependent in nodes[tid].dependents:
                    in_degree[dependent] -= 1
            levels.append(level)

        return levels

    def analyze(self, items: Iterable[str | Task]) -> AnalysisResult:
        tasks = self.coerce_tasks(items)
        graph = self.build_graph(tasks)

        parallel_groups = [level for level in graph.levels if len(level) > 1]
        sequential = [level[0] for level in graph.levels if len(level) == 1]
        total = len(tasks)
        speedup = round(total / len(graph.levels), 2) if graph.levels else 1.0

        return AnalysisResult(
            tasks=tasks,
            graph=graph,
            parallel_groups=parallel_groups,
            sequential=sequential,
            total_tasks=total,
            parallelizable_tasks=sum(len(g) for g in parallel_groups),
            max_parallelism=max(1, graph.width),
            estimated_speedup=max(1.0, speedup),
        )

    def generate_summary(self, result: AnalysisResult) -> str:
        total = result.total_tasks
        pct = round(result.parallelizable_tasks / total * 100) if total else 0
        lines = [
            "Task analysis",
            f"  Total tasks: {total}",
            f"  Parallelizable: {result.parallelizable_tasks} ({pct}%)",
            f"  Sequential: {len(result.sequential)}",
            f"  Maximum parallelism: {result.max_parallelism}",
            f"  Estimated speedup: {result.estimated_speedup}x",
        ]
        if result.parallel_groups:
            lines.append("  Parallel levels:")
            for i, group in enumerate(result.parallel_groups, 1):
                lines.append(f"    {i}. {', '.join(group)}")
        if result.sequential:
            lines.append("  Sequential tasks:")
            by_id = {t.id: t for t in result.tasks}
            for tid in result.sequential:
                lines.append(f"    - {tid}: {by_id[tid].description[:60]}")
        return "\n".join(lines)


def _find_cycle(nodes: dict[str, TaskNode], remaining: set[str]) -> list[str]:
    """Follow unresolved dependencies until a task repeats; return that loop."""
    start = next(tid for tid in nodes if tid in remaining)
    path: list[str] = []
    seen: dict[str, int] = {}
    current = start
    while current not in seen:
        seen[current] = len(path)
        path.append(current)
        current = min(
            (d for d in nodes[current].dependencies if d in remaining),
            key=list(nodes).index,
        )
    return path[seen[current]:]
