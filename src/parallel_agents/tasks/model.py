"""Task model shared by analysis, execution and reporting."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from parallel_agents.errors import TaskValidationError


class TaskType(str, Enum):
    FILE = "file"
    MODULE = "module"
    FEATURE = "feature"


@dataclass(frozen=True)
class Task:
    """One unit of delegated work. Never mutated once built."""

    id: str
    description: str
    type: TaskType = TaskType.FEATURE
    dependencies: tuple[str, ...] = ()
    estimated_files: tuple[str, ...] = ()
    metadata: dict[str, Any] = field(default_factory=dict, hash=False, compare=False)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Task:
        """Build a task from a camelCase or snake_case mapping."""
        task_id = str(data.get("id", "")).strip()
        if not task_id:
            raise TaskValidationError(f"Task is missing an id: {data!r}")
        description = str(data.get("description") or data.get("title") or "").strip()
        if not description:
            raise TaskValidationError(f"Task {task_id} has no description")

        raw_type = str(data.get("type", TaskType.FEATURE.value)).lower()
        try:
            task_type = TaskType(raw_type)
        except ValueError:
            raise TaskValidationError(f"Task {task_id}: unknown type {raw_type!r}") from None

        deps = _str_list(task_id, "dependencies", data.get("dependsOn", data.get("dependencies")))
        files = _str_list(
            task_id,
            "files",
            data.get("estimatedFiles", data.get("estimated_files", data.get("files"))),
        )
        metadata = data.get("metadata") or {}
        if not isinstance(metadata, dict):
            raise TaskValidationError(f"Task {task_id}: metadata must be a mapping")

        return cls(
            id=task_id,
            description=description,
            type=task_type,
            dependencies=tuple(deps),
            estimated_files=tuple(files),
            metadata=dict(metadata),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "description": self.description,
            "type": self.type.value,
            "dependencies": list(self.dependencies),
            "estimatedFiles": list(self.estimated_files),
            "metadata": dict(self.metadata),
        }


def _str_list(task_id: str, name: str, value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value] if value.strip() else []
    if not isinstance(value, (list, tuple)):
        raise TaskValidationError(f"Task {task_id}: {name} must be a list")
    return [str(v).strip() for v in value if str(v).strip()]
