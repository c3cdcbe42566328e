"""Shared fixtures for parallel_agents tests.

File handling in tests:
- Use tmp_path for any directory or file creation so tests are isolated and cleaned up.
- Use parallel_agents.io_utils read_text/write_text for consistent UTF-8 I/O.
- Workspace tests pass ``worktree_dir`` explicitly so worktrees stay under tmp_path.
"""

from __future__ import annotations

import subprocess
import threading
from collections.abc import Callable, Mapping
from dataclasses import replace
from pathlib import Path

import pytest

from parallel_agents import log
from parallel_agents.engines.base import EngineBase, EngineResult
from parallel_agents.executor import TASK_ID_ENV
from parallel_agents.io_utils import write_text
from parallel_agents.resource_monitor import GB, ResourceMonitor, ResourceSample, ResourceThresholds
from parallel_agents.tasks.model import Task, TaskType


@pytest.fixture(autouse=True)
def _quiet_log():
    log.set_verbose(False)
    yield
    log.set_verbose(False)


@pytest.fixture
def git_repo(tmp_path: Path) -> Path:
    """Create a minimal git repo for testing."""
    repo = tmp_path / "repo"
    repo.mkdir()
    subprocess.run(["git", "init"], cwd=repo, capture_output=True, check=True)
    subprocess.run(["git", "config", "user.name", "Test"], cwd=repo, capture_output=True)
    subprocess.run(["git", "config", "user.email", "test@test"], cwd=repo, capture_output=True)
    subprocess.run(["git", "config", "commit.gpgsign", "false"], cwd=repo, capture_output=True)
    write_text(repo / "README.md", "# Test")
    subprocess.run(["git", "add", "README.md"], cwd=repo, capture_output=True)
    subprocess.run(["git", "commit", "-m", "Initial"], cwd=repo, capture_output=True)
    return repo


def _commit_files(repo: Path, files: Mapping[str, str], msg: str = "Add files") -> None:
    for name, content in files.items():
        write_text(repo / name, content)
    subprocess.run(["git", "add", "-A"], cwd=repo, capture_output=True, check=True)
    subprocess.run(["git", "commit", "-m", msg], cwd=repo, capture_output=True, check=True)


@pytest.fixture
def commit_files():
    """Write files into a repo and commit them."""
    return _commit_files


@pytest.fixture
def worktree_dir(tmp_path: Path) -> Path:
    return tmp_path / "worktrees"


def _make_task(
    id: str,
    description: str = "",
    type: TaskType = TaskType.FEATURE,
    dependencies: list[str] | None = None,
    files: list[str] | None = None,
) -> Task:
    return Task(
        id=id,
        description=description or f"Task {id}",
        type=type,
        dependencies=tuple(dependencies or ()),
        estimated_files=tuple(files or ()),
    )


@pytest.fixture
def make_task():
    """Factory fixture that creates Task instances."""
    return _make_task


PLENTY = ResourceSample(
    disk_total=500 * GB,
    disk_free=400 * GB,
    memory_total=32 * GB,
    memory_available=24 * GB,
    load_average=(0.5, 0.5, 0.5),
    cpu_count=8,
)


@pytest.fixture
def make_sample():
    """Factory for resource samples that start from a comfortable machine."""

    def _make(**overrides) -> ResourceSample:
        return replace(PLENTY, **overrides)

    return _make


@pytest.fixture
def make_monitor(tmp_path: Path):
    """Factory for a ResourceMonitor fed by a fixed (or scripted) sample."""

    def _make(
        sample: ResourceSample | Callable[[], ResourceSample] = PLENTY,
        hard_ceiling: int = 4,
    ) -> ResourceMonitor:
        sampler = sample if callable(sample) else (lambda: sample)
        return ResourceMonitor(tmp_path, ResourceThresholds(hard_ceiling=hard_ceiling), sampler=sampler)

    return _make


class FakeEngine(EngineBase):
    """In-process delegated executor that edits the workspace it is handed.

    ``changes`` maps task id to ``{path: content}``; ``failures`` maps task id
    to an error string. An optional barrier proves tasks overlap in time.
    """

    name = "fake"

    def __init__(
        self,
        changes: Mapping[str, Mapping[str, str]] | None = None,
        failures: Mapping[str, str] | None = None,
        barrier: threading.Barrier | None = None,
        delay: float = 0.0,
    ) -> None:
        self.changes = dict(changes or {})
        self.failures = dict(failures or {})
        self.barrier = barrier
        self.delay = delay
        self.calls: list[tuple[str, Path]] = []
        self.prompts: dict[str, str] = {}
        self._lock = threading.Lock()

    def build_cmd(self, prompt: str) -> list[str]:
        return ["fake", prompt]

    def parse_output(self, raw: str) -> EngineResult:
        return EngineResult(text=raw)

    def run_sync(self, prompt, *, cwd=None, log_file=None, timeout=None, cancel_event=None, env=None):
        task_id = (env or {})[TASK_ID_ENV]
        with self._lock:
            self.calls.append((task_id, Path(cwd)))
            self.prompts[task_id] = prompt
        if self.barrier is not None:
            self.barrier.wait(timeout=10)
        if self.delay and cancel_event is not None and cancel_event.wait(self.delay):
            return EngineResult(error="cancelled", return_code=-1, cancelled=True)
        if task_id in self.failures:
            return EngineResult(error=self.failures[task_id], return_code=1)
        for name, content in self.changes.get(task_id, {}).items():
            write_text(Path(cwd) / name, content)
        return EngineResult(text=f"{task_id} done")


@pytest.fixture
def fake_engine_cls():
    return FakeEngine
