"""Generic command adapter: run any executable with the task prompt."""

from __future__ import annotations

import shlex
import shutil

from parallel_agents.engines.base import EngineBase, EngineResult

PROMPT_PLACEHOLDER = "{prompt}"


class CommandEngine(EngineBase):
    """Run ``command`` inside the workspace.

    The prompt replaces a ``{prompt}`` argument when one is present, and is
    appended as the last argument otherwise. Exit code 0 means success.
    """

    name = "command"

    def __init__(self, command: str | list[str]) -> None:
        argv = shlex.split(command) if isinstance(command, str) else list(command)
        if not argv:
            raise ValueError("CommandEngine needs a non-empty command")
        self.argv = argv

    def build_cmd(self, prompt: str) -> list[str]:
        if PROMPT_PLACEHOLDER in self.argv:
            return [prompt if arg == PROMPT_PLACEHOLDER else arg for arg in self.argv]
        return [*self.argv, prompt]

    def parse_output(self, raw: str) -> EngineResult:
        text = raw.strip()
        return EngineResult(text=text.splitlines()[-1] if text else "Task completed")

    def check_available(self) -> str | None:
        if not shutil.which(self.argv[0]):
            return f"{self.argv[0]} not found in PATH"
        return None
