"""File prediction: guess which files a task will modify, with a confidence per guess.

Every candidate path carries the method that produced it. Methods have a fixed
confidence table; when several methods produce the same path the strongest one
wins. Predictions are an optimization for scheduling, never a correctness
guarantee: the merge dry-run catches whatever they miss.
"""

from __future__ import annotations

import os
import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from fnmatch import fnmatchcase
from pathlib import Path, PurePosixPath
from typing import Any

from parallel_agents import git_ops, log
from parallel_agents.task_analyzer import FILE_MENTION_RE, extract_file_mentions
from parallel_agents.tasks.model import Task


class PredictionMethod(str, Enum):
    EXPLICIT = "explicit"
    PATTERN = "pattern"
    MODULE = "module"
    HISTORY = "history"
    HEURISTIC = "heuristic"

    @property
    def confidence(self) -> float:
        return CONFIDENCE[self]


CONFIDENCE: dict[PredictionMethod, float] = {
    PredictionMethod.EXPLICIT: 0.95,
    PredictionMethod.PATTERN: 0.80,
    PredictionMethod.MODULE: 0.70,
    PredictionMethod.HISTORY: 0.60,
    PredictionMethod.HEURISTIC: 0.50,
}

LOW_CONFIDENCE = 0.6

_SKIP_DIRS = frozenset({
    ".git", "node_modules", "__pycache__", ".venv", "venv", ".tox",
    ".mypy_cache", ".pytest_cache", ".ruff_cache", "dist", "build", ".next",
})

_STOP_WORDS = frozenset({
    "the", "and", "but", "for", "with", "from", "was", "are", "been", "have", "has",
    "had", "does", "did", "will", "would", "could", "should", "may", "might", "must",
    "shall", "can", "need", "into", "onto", "this", "that", "these", "those", "all",
    "fix", "add", "update", "remove", "change", "make", "use", "new", "initial",
    "commit", "merge", "branch", "task", "after", "then", "also", "when", "where",
})

TEST_GLOBS = (
    "test_*.py", "*/test_*.py", "*_test.py", "*_test.go",
    "*.test.*", "*.spec.*", "tests/*", "*/tests/*", "*/__tests__/*",
)
COMPONENT_GLOBS = ("components/*", "*/components/*")

# keyword regex -> path globs (matched against the full, lowercased relative path)
HEURISTICS: tuple[tuple[str, tuple[str, ...]], ...] = (
    (r"auth\w*|log ?in|logout|sessions?", ("*auth*", "*login*", "*session*")),
    (r"sign ?ups?|regist\w*", ("*signup*", "*sign_up*", "*sign-up*", "*register*")),
    (r"passwords?", ("*password*",)),
    (r"api|endpoints?|routes?|routing", ("*/routes/*", "routes/*", "*/api/*", "api/*", "*.route.*")),
    (r"database|db|schemas?|models?|migrations?", ("*/models/*", "models/*", "*/schemas/*", "*.model.*", "*migrations/*")),
    (r"styles?|styling|css|ui|theme", ("*.css", "*.scss", "*/styles/*", "styles/*")),
    (r"config\w*|settings?", ("*.config.*", "*/config/*", "config/*", "*settings*")),
    (r"docs?|documentation|readme", ("docs/*", "*/docs/*", "readme*")),
)
_HEURISTIC_RES = tuple((re.compile(rf"\b(?:{kw})\b", re.IGNORECASE), globs) for kw, globs in HEURISTICS)

_ALL_TESTS_RE = re.compile(r"\b(?:all|every)\s+(?:the\s+)?(?:unit\s+)?tests?\b", re.IGNORECASE)
_ALL_COMPONENTS_RE = re.compile(r"\b(?:all|every)\s+(?:the\s+)?components?\b", re.IGNORECASE)
_DIR_RE = re.compile(r"\b(?:in|under|within|inside)\s+(?:the\s+)?([\w.-]+(?:/[\w.-]+)*)/?(?:\s+(?:directory|folder|dir))?", re.IGNORECASE)
_GLOB_TOKEN_RE = re.compile(r"(?<!\S)([\w./{}-]*\*[\w./*{}-]*)")
_PASCAL_RE = re.compile(r"\b([A-Z][a-z0-9]+(?:[A-Z][a-z0-9]+)+)\b")
_NAMED_MODULE_RE = re.compile(r"\b([a-z][\w-]*)\s+(?:module|component|service|package|directory|folder)s?\b")
_NAMED_MODULE_SKIP = frozenset({"the", "a", "an", "new", "this", "that", "each", "every", "all", "our", "its"})


@dataclass(frozen=True)
class PredictedFile:
    path: str
    method: PredictionMethod

    @property
    def confidence(self) -> float:
        return self.method.confidence


@dataclass
class FilePrediction:
    task_id: str
    candidates: list[PredictedFile] = field(default_factory=list)
    confidence: float = 0.0
    method: PredictionMethod | None = None
    reasoning: str = ""
    warnings: list[str] = field(default_factory=list)

    @property
    def files(self) -> list[str]:
        return [c.path for c in self.candidates]

    def method_of(self, path: str) -> PredictionMethod | None:
        for c in self.candidates:
            if c.path == path:
                return c.method
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "taskId": self.task_id,
            "predictedFiles": self.files,
            "confidence": self.confidence,
            "method": self.method.value if self.method else None,
            "candidates": [
                {"path": c.path, "method": c.method.value, "confidence": c.confidence}
                for c in self.candidates
            ],
            "reasoning": self.reasoning,
            "warnings": list(self.warnings),
        }


class FilePredictor:
    """Predict touched files from task text, the repository tree and git history."""

    def __init__(
        self,
        base_dir: Path,
        *,
        use_git_history: bool = True,
        history_depth: int = 50,
        include_tests: bool = True,
        include_related: bool = True,
        deep_analysis: bool = False,
    ) -> None:
        self.base_dir = Path(base_dir)
        self.use_git_history = use_git_history
        self.history_depth = history_depth * 4 if deep_analysis else history_depth
        self.include_tests = include_tests
        self.include_related = include_related
        self.max_matches = 100 if deep_analysis else 20
        self._index: list[str] | None = None
        self._dirs: set[str] | None = None
        self._history: dict[str, list[str]] | None = None

    # ── repository knowledge (built lazily, once) ────────────────────

    @property
    def file_index(self) -> list[str]:
        if self._index is None:
            tracked = None
            try:
                tracked = git_ops.ls_files(cwd=self.base_dir)
            except OSError as e:
                log.debug(f"git ls-files unavailable: {e}")
            self._index = sorted(tracked) if tracked is not None else self._walk()
            log.debug(f"File index: {len(self._index)} files under {self.base_dir}")
        return self._index

    def _walk(self) -> list[str]:
        found: list[str] = []
        for root, dirs, files in os.walk(self.base_dir):
            dirs[:] = sorted(d for d in dirs if d not in _SKIP_DIRS)
            rel_root = Path(root).relative_to(self.base_dir)
            for name in files:
                found.append((rel_root / name).as_posix())
        return sorted(found)

    @property
    def directories(self) -> set[str]:
        if self._dirs is None:
            dirs: set[str] = set()
            for path in self.file_index:
                for parent in PurePosixPath(path).parents:
                    if str(parent) != ".":
                        dirs.add(str(parent))
            self._dirs = dirs
        return self._dirs

    @property
    def history(self) -> dict[str, list[str]]:
        """Keyword -> files touched by recent commits whose subject contains it."""
        if self._history is None:
            self._history = self._load_history() if self.use_git_history else {}
        return self._history

    def _load_history(self) -> dict[str, list[str]]:
        try:
            raw = git_ops.log_name_only(self.history_depth, cwd=self.base_dir)
        except OSError as e:
            log.debug(f"git history unavailable: {e}")
            return {}

        existing = set(self.file_index)
        table: dict[str, dict[str, None]] = {}
        keywords: list[str] = []
        for line in raw.splitlines():
            if line.startswith("COMMIT:"):
                keywords = extract_keywords(line[len("COMMIT:"):])
                continue
            path = line.strip()
            if not path or path not in existing:
                continue
            for kw in keywords:
                table.setdefault(kw, {})[path] = None
        return {kw: list(paths) for kw, paths in table.items()}

    def glob(self, pattern: str) -> list[str]:
        """Index paths matching *pattern* (``*`` spans directories), capped per pattern."""
        pattern = pattern.lower().removeprefix("./")
        matches: list[str] = []
        for path in self.file_index:
            if fnmatchcase(path.lower(), pattern):
                matches.append(path)
                if len(matches) >= self.max_matches:
                    break
        return matches

    def _under(self, directory: str) -> list[str]:
        prefix = directory.rstrip("/") + "/"
        return [p for p in self.file_index if p.startswith(prefix)][: self.max_matches]

    # ── prediction methods ───────────────────────────────────────────

    def _explicit(self, description: str, hints: Sequence[str]) -> list[str]:
        paths = dict.fromkeys([*extract_file_mentions(description), *hints])
        return [p for p in paths if p]

    def _related(self, paths: Iterable[str]) -> list[str]:
        """Sibling tests and type stubs of explicit paths that actually exist."""
        index = set(self.file_index)
        related: list[str] = []
        for path in paths:
            p = PurePosixPath(path)
            stem, ext, parent = p.stem, p.suffix, p.parent
            wanted: list[PurePosixPath] = []
            if self.include_tests:
                wanted += [
                    parent / f"{stem}.test{ext}",
                    parent / f"{stem}.spec{ext}",
                    parent / "__tests__" / p.name,
                    parent / f"test_{p.name}",
                    PurePosixPath("tests") / f"test_{p.name}",
                ]
            if ext in (".ts", ".tsx"):
                wanted.append(parent / f"{stem}.d.ts")
            if ext == ".py":
                wanted.append(parent / f"{stem}.pyi")
            related.extend(str(w) for w in wanted if str(w) in index and str(w) != path)
        return related

    def _patterns(self, prose: str) -> list[str]:
        files: list[str] = []
        if _ALL_TESTS_RE.search(prose):
            for g in TEST_GLOBS:
                files += self.glob(g)
        if _ALL_COMPONENTS_RE.search(prose):
            for g in COMPONENT_GLOBS:
                files += self.glob(g)
        for match in _DIR_RE.finditer(prose):
            directory = match.group(1).strip("./")
            if directory in self.directories:
                files += self._under(directory)
        for match in _GLOB_TOKEN_RE.finditer(prose):
            files += self.glob(match.group(1))
        return files

    def _modules(self, prose: str) -> list[str]:
        files: list[str] = []
        for match in _PASCAL_RE.finditer(prose):
            variants = name_variants(match.group(1))
            for path in self.file_index:
                p = PurePosixPath(path)
                stem = p.name.split(".", 1)[0].lower()
                if stem in variants or any(part.lower() in variants for part in p.parts[:-1]):
                    files.append(path)
        for match in _NAMED_MODULE_RE.finditer(prose):
            name = match.group(1).lower()
            if name in _NAMED_MODULE_SKIP:
                continue
            for directory in sorted(self.directories):
                if PurePosixPath(directory).name.lower() == name:
                    files += self._under(directory)
        return files

    def _from_history(self, prose: str) -> list[str]:
        files: list[str] = []
        for kw in extract_keywords(prose):
            files += self.history.get(kw, [])
        return files

    def _heuristics(self, prose: str) -> list[str]:
        files: list[str] = []
        for keyword_re, globs in _HEURISTIC_RES:
            if keyword_re.search(prose):
                for g in globs:
                    files += self.glob(g)
        return files

    # ── public API ───────────────────────────────────────────────────

    def predict(self, task_id: str, description: str, hints: Sequence[str] = ()) -> FilePrediction:
        """Predict files for one task. Never raises on opaque input."""
        # Mentioned paths must not feed keyword heuristics ("src/auth/x.ts" is not an auth task).
        prose = FILE_MENTION_RE.sub(" ", description)

        found: dict[PredictionMethod, list[str]] = {}
        explicit = self._explicit(description, hints)
        found[PredictionMethod.EXPLICIT] = explicit
        found[PredictionMethod.PATTERN] = self._patterns(prose)
        module_files = self._modules(prose)
        if self.include_related:
            module_files += self._related(explicit)
        found[PredictionMethod.MODULE] = module_files
        found[PredictionMethod.HISTORY] = self._from_history(prose) if self.use_git_history else []
        found[PredictionMethod.HEURISTIC] = self._heuristics(prose)

        best: dict[str, PredictionMethod] = {}
        for method in PredictionMethod:
            for path in found[method]:
                best.setdefault(path, method)

        candidates = sorted(
            (PredictedFile(path, method) for path, method in best.items()),
            key=lambda c: (-c.confidence, c.path),
        )
        prediction = FilePrediction(task_id=task_id, candidates=candidates)
        prediction.reasoning = _reasoning(found)
        if candidates:
            prediction.method = candidates[0].method
            prediction.confidence = candidates[0].confidence
            if prediction.confidence < LOW_CONFIDENCE:
                prediction.warnings.append(
                    f"Low-confidence prediction for {task_id} ({prediction.method.value} only)"
                )
        else:
            prediction.warnings.append(
                f"No files predicted for {task_id}; overlap with other tasks cannot be ruled out"
            )
        log.debug(f"Predicted {len(candidates)} file(s) for {task_id}: {prediction.reasoning}")
        return prediction

    def predict_task(self, task: Task) -> FilePrediction:
        return self.predict(task.id, task.description, task.estimated_files)

    def predict_all(self, tasks: Iterable[Task]) -> list[FilePrediction]:
        return [self.predict_task(t) for t in tasks]


def extract_keywords(text: str) -> list[str]:
    words = re.sub(r"[^a-z0-9\s]", " ", text.lower()).split()
    return list(dict.fromkeys(w for w in words if len(w) > 2 and w not in _STOP_WORDS))


def name_variants(name: str) -> set[str]:
    """Lowercased Pascal/camel, kebab and snake spellings of a PascalCase name."""
    kebab = re.sub(r"([a-z0-9])([A-Z])", r"\1-\2", name).lower()
    return {name.lower(), kebab, kebab.replace("-", "_")}


def _reasoning(found: dict[PredictionMethod, list[str]]) -> str:
    parts = [
        f"{method.value}: {len(set(paths))} file(s) ({round(method.confidence * 100)}%)"
        for method, paths in found.items()
        if paths
    ]
    if not parts:
        return "No files could be predicted for this task."
    return "Predictions based on " + ", ".join(parts)
