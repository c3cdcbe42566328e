"""Engine registry: get the right adapter by name."""

from __future__ import annotations

from parallel_agents.engines.base import EngineBase
from parallel_agents.engines.claude import ClaudeEngine
from parallel_agents.engines.command import CommandEngine


def get_engine(name: str, *, command: str = "", model: str = "", max_turns: int | None = None) -> EngineBase:
    """Return an engine adapter for *name*.

    *model* and *max_turns* only apply to ``claude``; *command* is required for ``command``.
    """
    match name:
        case "claude":
            return ClaudeEngine(model=model, max_turns=max_turns)
        case "command":
            if not command:
                raise ValueError("The command engine needs --command")
            return CommandEngine(command)
        case _:
            raise ValueError(f"Unknown engine: {name}")


ENGINE_NAMES = ("claude", "command")
