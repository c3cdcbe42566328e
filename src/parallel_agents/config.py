"""Run configuration: defaults, ``.parallel.yaml`` loading, overrides and validation."""

from __future__ import annotations

import os
import re
import subprocess
from dataclasses import asdict, dataclass, fields, replace
from pathlib import Path
from typing import Any

import yaml

from parallel_agents import log
from parallel_agents.errors import ConfigError
from parallel_agents.io_utils import read_yaml, write_yaml

CONFIG_FILENAME = ".parallel.yaml"
CONFIG_ENV_VAR = "PARALLEL_AGENTS_CONFIG"

MERGE_STRATEGIES = ("sequential", "squash", "rebase")

MAX_PARALLEL_RANGE = (1, 10)
PERCENT_RANGE = (50, 95)
TIMEOUT_RANGE = (10, 3600)


@dataclass(frozen=True)
class ParallelConfig:
    """Immutable run configuration, built once and handed to every component."""

    # Behavior
    enabled: bool = True
    auto_suggest: bool = True
    auto_parallel: bool = False

    # Resource limits
    max_parallel: int = 4
    max_disk_usage_percent: int = 90
    max_memory_usage_percent: int = 85
    max_cpu_load_percent: int = 80

    # Execution
    timeout: int = 300
    cleanup_on_complete: bool = True
    cleanup_on_fail: bool = True

    # Merge
    merge_strategy: str = "sequential"
    auto_push: bool = False

    # Analysis
    use_git_history: bool = True
    deep_analysis: bool = False
    include_tests: bool = True

    # Output
    verbose: bool = False
    show_progress: bool = True

    # Workspaces
    branch_prefix: str = "parallel"
    worktree_dir: str = ""

    def with_overrides(self, **overrides: Any) -> ParallelConfig:
        """Return a copy with every non-``None`` override applied."""
        changes = {k: v for k, v in overrides.items() if v is not None}
        if not changes:
            return self
        return replace(self, **changes)

    def validate(self) -> list[str]:
        """Return a list of human-readable problems (empty when valid)."""
        problems: list[str] = []
        lo, hi = MAX_PARALLEL_RANGE
        if not lo <= self.max_parallel <= hi:
            problems.append(f"maxParallel must be between {lo} and {hi} (got {self.max_parallel})")

        lo, hi = PERCENT_RANGE
        for name in ("max_disk_usage_percent", "max_memory_usage_percent", "max_cpu_load_percent"):
            value = getattr(self, name)
            if not lo <= value <= hi:
                problems.append(f"{_camel(name)} must be between {lo} and {hi} (got {value})")

        lo, hi = TIMEOUT_RANGE
        if not lo <= self.timeout <= hi:
            problems.append(f"timeout must be between {lo}s and {hi}s (got {self.timeout})")

        if self.merge_strategy not in MERGE_STRATEGIES:
            allowed = ", ".join(MERGE_STRATEGIES)
            problems.append(f"mergeStrategy must be one of {allowed} (got {self.merge_strategy!r})")

        if not self.branch_prefix or re.search(r"[\s~^:?*\[\\]", self.branch_prefix):
            problems.append(f"branchPrefix is not a valid branch name component: {self.branch_prefix!r}")

        return problems

    def ensure_valid(self) -> ParallelConfig:
        problems = self.validate()
        if problems:
            raise ConfigError(problems)
        return self

    def to_dict(self) -> dict[str, Any]:
        """camelCase mapping, the shape stored in ``.parallel.yaml``."""
        return {_camel(k): v for k, v in asdict(self).items()}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ParallelConfig:
        """Build from a camelCase (or snake_case) mapping, rejecting bad values."""
        cfg, problems = _apply_mapping(cls(), data)
        if problems:
            raise ConfigError(problems)
        return cfg.ensure_valid()


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)


def _snake(name: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", name).lower()


_FIELD_TYPES: dict[str, type] = {f.name: type(f.default) for f in fields(ParallelConfig)}


def _coerce(name: str, value: Any) -> Any:
    """Coerce a raw YAML value to the field's type, or raise ``ValueError``."""
    expected = _FIELD_TYPES[name]
    if expected is bool:
        if isinstance(value, bool):
            return value
        raise ValueError(f"{_camel(name)} must be true or false (got {value!r})")
    if expected is int:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValueError(f"{_camel(name)} must be a number (got {value!r})")
        return int(value)
    if value is None:
        return ""
    return str(value)


def _apply_mapping(base: ParallelConfig, data: dict[str, Any]) -> tuple[ParallelConfig, list[str]]:
    """Merge *data* into *base* one key at a time; collect per-key problems."""
    cfg = base
    problems: list[str] = []
    for key, raw in data.items():
        name = _snake(str(key))
        if name not in _FIELD_TYPES:
            problems.append(f"Unknown config key: {key}")
            continue
        try:
            value = _coerce(name, raw)
        except ValueError as e:
            problems.append(str(e))
            continue
        candidate = replace(cfg, **{name: value})
        issues = candidate.validate()
        if issues:
            problems.extend(issues)
            continue
        cfg = candidate
    return cfg, problems


def config_path(base_dir: Path | None = None) -> Path:
    """Resolve the config file: ``$PARALLEL_AGENTS_CONFIG`` or ``<base_dir>/.parallel.yaml``."""
    override = os.environ.get(CONFIG_ENV_VAR, "").strip()
    if override:
        return Path(override)
    return (base_dir or Path.cwd()) / CONFIG_FILENAME


def load_config(base_dir: Path | None = None, path: Path | None = None) -> ParallelConfig:
    """Load configuration, falling back to defaults for anything missing or invalid.

    A missing file yields the defaults. Unreadable files, unknown keys and
    out-of-range values are reported with ``log.warn`` and ignored, so a broken
    config never prevents a run from starting with safe values.
    """
    cfg_file = path or config_path(base_dir)
    defaults = ParallelConfig()
    if not cfg_file.is_file():
        log.debug(f"No config file at {cfg_file}, using defaults")
        return defaults

    try:
        data = read_yaml(cfg_file)
    except (OSError, yaml.YAMLError) as e:
        log.warn(f"Could not read {cfg_file}: {e}. Using defaults.")
        return defaults

    if data is None:
        return defaults
    if not isinstance(data, dict):
        log.warn(f"{cfg_file} must contain a mapping. Using defaults.")
        return defaults

    cfg, problems = _apply_mapping(defaults, data)
    for problem in problems:
        log.warn(f"{cfg_file.name}: {problem}")
    log.debug(f"Loaded config from {cfg_file}")
    return cfg


def save_config(cfg: ParallelConfig, base_dir: Path | None = None, path: Path | None = None) -> Path:
    cfg_file = path or config_path(base_dir)
    write_yaml(cfg_file, cfg.to_dict())
    return cfg_file


def resolve_repo_root(start: Path | None = None) -> Path:
    """Return the git repository root, falling back to cwd."""
    try:
        result = subprocess.run(
            ["git", "rev-parse", "--show-toplevel"],
            capture_output=True,
            text=True,
            check=True,
            cwd=start,
        )
        return Path(result.stdout.strip())
    except (subprocess.CalledProcessError, FileNotFoundError):
        return start or Path.cwd()
