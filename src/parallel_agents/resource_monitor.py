"""Resource monitoring: sample disk/memory/CPU and derive a safe concurrency ceiling.

Snapshots are recomputed on every call; resource pressure changes between
decisions, so nothing here is cached.
"""

from __future__ import annotations

import math
import threading
from collections.abc import Callable
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

import psutil

from parallel_agents import log
from parallel_agents.config import ParallelConfig

GB = 1024 ** 3
MB = 1024 ** 2


@dataclass(frozen=True)
class ResourceThresholds:
    min_disk_gb: float = 2.0
    max_disk_usage_percent: float = 90.0
    min_memory_gb: float = 1.0
    max_memory_usage_percent: float = 85.0
    max_cpu_load_percent: float = 80.0
    worktree_size_mb: int = 500
    memory_per_task_mb: int = 200
    hard_ceiling: int = 4

    @classmethod
    def from_config(cls, cfg: ParallelConfig) -> ResourceThresholds:
        return cls(
            max_disk_usage_percent=cfg.max_disk_usage_percent,
            max_memory_usage_percent=cfg.max_memory_usage_percent,
            max_cpu_load_percent=cfg.max_cpu_load_percent,
            hard_ceiling=cfg.max_parallel,
        )


@dataclass(frozen=True)
class ResourceSample:
    """Raw figures from one sampling pass (bytes, 1/5/15-minute load)."""

    disk_total: int
    disk_free: int
    memory_total: int
    memory_available: int
    load_average: tuple[float, float, float]
    cpu_count: int


def sample_system(path: Path) -> ResourceSample:
    disk = psutil.disk_usage(str(path))
    memory = psutil.virtual_memory()
    return ResourceSample(
        disk_total=disk.total,
        disk_free=disk.free,
        memory_total=memory.total,
        memory_available=memory.available,
        load_average=tuple(psutil.getloadavg()),  # type: ignore[arg-type]
        cpu_count=psutil.cpu_count() or 1,
    )


@dataclass
class DiskStatus:
    available: int
    total: int
    used_percent: float
    sufficient: bool


@dataclass
class MemoryStatus:
    available: int
    total: int
    used_percent: float
    sufficient: bool


@dataclass
class CpuStatus:
    load_average: tuple[float, float, float]
    cores: int
    load_percent: float
    sufficient: bool


@dataclass
class OverallStatus:
    can_parallelize: bool
    recommended_concurrency: int
    reason: str = ""


@dataclass
class ResourceStatus:
    disk: DiskStatus
    memory: MemoryStatus
    cpu: CpuStatus
    overall: OverallStatus

    @property
    def all_sufficient(self) -> bool:
        return self.disk.sufficient and self.memory.sufficient and self.cpu.sufficient

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["disk"]["usedPercent"] = data["disk"].pop("used_percent")
        data["memory"]["usedPercent"] = data["memory"].pop("used_percent")
        data["cpu"]["loadAverage"] = list(data["cpu"].pop("load_average"))
        data["cpu"]["loadPercent"] = data["cpu"].pop("load_percent")
        overall = data.pop("overall")
        data["overall"] = {
            "canParallelize": overall["can_parallelize"],
            "recommendedConcurrency": overall["recommended_concurrency"],
            "reason": overall["reason"],
        }
        return data


@dataclass
class WorktreeDecision:
    allowed: bool
    reason: str = ""

    def __bool__(self) -> bool:
        return self.allowed


class ResourceMonitor:
    """Evaluate resource snapshots against thresholds."""

    def __init__(
        self,
        base_dir: Path,
        thresholds: ResourceThresholds | None = None,
        sampler: Callable[[], ResourceSample] | None = None,
    ) -> None:
        self.base_dir = Path(base_dir)
        self.thresholds = thresholds or ResourceThresholds()
        self._sampler = sampler or (lambda: sample_system(self.base_dir))

    def get_status(self) -> ResourceStatus:
        """Take a fresh sample. A sampling failure yields a serial-only status."""
        try:
            sample = self.sample()
        except (OSError, psutil.Error, RuntimeError) as e:
            log.warn(f"Resource sampling failed: {e}")
            return self._unknown(f"Resource sampling failed: {e}")
        return self.evaluate(sample)

    def sample(self) -> ResourceSample:
        return self._sampler()

    def evaluate(self, sample: ResourceSample) -> ResourceStatus:
        t = self.thresholds

        disk_used = _percent(sample.disk_total - sample.disk_free, sample.disk_total)
        disk = DiskStatus(
            available=sample.disk_free,
            total=sample.disk_total,
            used_percent=disk_used,
            sufficient=sample.disk_free >= t.min_disk_gb * GB and disk_used <= t.max_disk_usage_percent,
        )

        mem_used = _percent(sample.memory_total - sample.memory_available, sample.memory_total)
        memory = MemoryStatus(
            available=sample.memory_available,
            total=sample.memory_total,
            used_percent=mem_used,
            sufficient=sample.memory_available >= t.min_memory_gb * GB
            and mem_used <= t.max_memory_usage_percent,
        )

        cores = max(1, sample.cpu_count)
        load_percent = sample.load_average[0] / cores * 100
        cpu = CpuStatus(
            load_average=sample.load_average,
            cores=cores,
            load_percent=round(load_percent, 1),
            sufficient=load_percent <= t.max_cpu_load_percent,
        )

        return ResourceStatus(disk=disk, memory=memory, cpu=cpu, overall=self._overall(disk, memory, cpu))

    def _overall(self, disk: DiskStatus, memory: MemoryStatus, cpu: CpuStatus) -> OverallStatus:
        t = self.thresholds
        shortages = []
        if not disk.sufficient:
            shortages.append("insufficient disk space")
        if not memory.sufficient:
            shortages.append("insufficient memory")
        if not cpu.sufficient:
            shortages.append("high CPU load")
        if shortages:
            return OverallStatus(False, 1, f"Resource constraints: {', '.join(shortages)}")

        ceilings = {
            "configured limit": max(1, t.hard_ceiling),
            "disk space": disk.available // (t.worktree_size_mb * MB),
            "memory": memory.available // (t.memory_per_task_mb * MB),
            "CPU capacity": max(1, math.floor((t.max_cpu_load_percent - cpu.load_percent) / 100 * cpu.cores)),
        }
        recommended = max(1, min(ceilings.values()))
        if recommended <= 1:
            bottleneck = min(ceilings, key=ceilings.__getitem__)
            return OverallStatus(False, 1, f"Concurrency limited to 1 by {bottleneck}")
        return OverallStatus(True, recommended)

    def _unknown(self, reason: str) -> ResourceStatus:
        return ResourceStatus(
            disk=DiskStatus(0, 0, 0.0, False),
            memory=MemoryStatus(0, 0, 0.0, False),
            cpu=CpuStatus((0.0, 0.0, 0.0), 1, 0.0, False),
            overall=OverallStatus(False, 1, reason),
        )

    def recommended_concurrency(self) -> int:
        return self.get_status().overall.recommended_concurrency

    def can_add_worktree(self, current_count: int) -> WorktreeDecision:
        """Allow one more workspace only if every resource is fine and we are under the ceiling."""
        status = self.get_status()
        if not status.all_sufficient:
            return WorktreeDecision(False, status.overall.reason or "Resources insufficient for parallelization")
        if current_count >= status.overall.recommended_concurrency:
            return WorktreeDecision(
                False,
                f"Maximum recommended concurrency ({status.overall.recommended_concurrency}) reached",
            )
        return WorktreeDecision(True)

    def summary(self, status: ResourceStatus | None = None) -> str:
        s = status or self.get_status()

        def mark(ok: bool) -> str:
            return "ok" if ok else "LOW"

        lines = [
            "Resource status:",
            f"  Disk:   {s.disk.available / GB:.1f}GB free ({s.disk.used_percent:.1f}% used) [{mark(s.disk.sufficient)}]",
            f"  Memory: {s.memory.available / GB:.1f}GB available ({s.memory.used_percent:.1f}% used) "
            f"[{mark(s.memory.sufficient)}]",
            f"  CPU:    {s.cpu.load_percent:.1f}% load ({s.cpu.cores} cores) [{mark(s.cpu.sufficient)}]",
            f"  Recommended concurrency: {s.overall.recommended_concurrency}",
        ]
        if s.overall.reason:
            lines.append(f"  Note: {s.overall.reason}")
        return "\n".join(lines)

    def watch(self, on_warning: Callable[[str], None], interval: float = 30.0) -> ResourceWatch:
        """Start a background sampler; stop it with ``stop()`` or a ``with`` block."""
        return ResourceWatch(self, on_warning, interval).start()


_WATCH_MESSAGES = {
    "disk": "Disk space running low - consider reducing parallelism",
    "memory": "Memory running low - consider reducing parallelism",
    "cpu": "CPU load high - consider reducing parallelism",
}


class ResourceWatch:
    """Background sampling loop that reports threshold crossings."""

    def __init__(self, monitor: ResourceMonitor, on_warning: Callable[[str], None], interval: float) -> None:
        self._monitor = monitor
        self._on_warning = on_warning
        self._interval = interval
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._loop, name="resource-watch", daemon=True)

    def start(self) -> ResourceWatch:
        self._thread.start()
        return self

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread.is_alive() and threading.current_thread() is not self._thread:
            self._thread.join(timeout)

    @property
    def running(self) -> bool:
        return self._thread.is_alive()

    def __enter__(self) -> ResourceWatch:
        return self

    def __exit__(self, *exc: object) -> None:
        self.stop()

    def _loop(self) -> None:
        previous = {"disk": True, "memory": True, "cpu": True}
        while not self._stop.is_set():
            try:
                status = self._monitor.evaluate(self._monitor.sample())
                current = {
                    "disk": status.disk.sufficient,
                    "memory": status.memory.sufficient,
                    "cpu": status.cpu.sufficient,
                }
                for name, ok in current.items():
                    if previous[name] and not ok:
                        self._on_warning(_WATCH_MESSAGES[name])
                previous = current
            except Exception as e:
                log.warn(f"Resource watch: sampling failed: {e}")
            self._stop.wait(self._interval)


def _percent(part: float, whole: float) -> float:
    if whole <= 0:
        return 0.0
    return round(part / whole * 100, 1)
