"""Load task batches from YAML files."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml

from parallel_agents.errors import TaskValidationError
from parallel_agents.io_utils import read_yaml
from parallel_agents.tasks.model import Task


def load_tasks_file(path: Path) -> list[str] | list[Task]:
    """Read a task file.

    Accepts either a bare list or a mapping with a ``tasks`` key. Entries are
    all description strings or all task mappings; mixing the two is rejected
    since string entries get positional ids.
    """
    try:
        data = read_yaml(path)
    except FileNotFoundError:
        raise TaskValidationError(f"Task file not found: {path}") from None
    except yaml.YAMLError as e:
        raise TaskValidationError(f"Invalid YAML in {path}: {e}") from e

    if isinstance(data, dict):
        data = data.get("tasks")
    if not isinstance(data, list) or not data:
        raise TaskValidationError(f"{path}: expected a non-empty list of tasks")

    return parse_task_entries(data, source=str(path))


def parse_task_entries(entries: list[Any], source: str = "tasks") -> list[str] | list[Task]:
    if all(isinstance(e, str) for e in entries):
        return [e.strip() for e in entries if e.strip()]
    if all(isinstance(e, dict) for e in entries):
        return [Task.from_dict(e) for e in entries]
    raise TaskValidationError(f"{source}: entries must be all strings or all mappings")
