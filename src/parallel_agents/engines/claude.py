"""Claude Code CLI adapter.

The CLI runs headless (``-p``) inside the task's worktree and reports progress
as stream-json: one JSON record per line, ending with a ``result`` record.
"""

from __future__ import annotations

import json
import shutil
from collections.abc import Iterator, Sequence

from parallel_agents.engines.base import EngineBase, EngineResult

INSTALL_HINT = "Claude Code CLI not found. Install from https://github.com/anthropics/claude-code"

_RESULT_ERRORS = {
    "error_max_turns": "Stopped at the turn limit before finishing",
    "error_during_execution": "Claude Code failed while executing the task",
}


class ClaudeEngine(EngineBase):
    name = "claude"

    def __init__(
        self,
        *,
        model: str = "",
        max_turns: int | None = None,
        allowed_tools: Sequence[str] = (),
    ) -> None:
        self.model = model
        self.max_turns = max_turns
        self.allowed_tools = tuple(allowed_tools)

    def build_cmd(self, prompt: str) -> list[str]:
        cmd = [
            shutil.which("claude") or "claude",
            "--dangerously-skip-permissions",
            "--verbose",
            "-p",
            prompt,
            "--output-format",
            "stream-json",
        ]
        if self.model:
            cmd += ["--model", self.model]
        if self.max_turns:
            cmd += ["--max-turns", str(self.max_turns)]
        if self.allowed_tools:
            cmd += ["--allowedTools", ",".join(self.allowed_tools)]
        return cmd

    def parse_output(self, raw: str) -> EngineResult:
        """Fold the stream into one result.

        The ``result`` record wins; without one, the last assistant text is
        kept so a killed run still shows how far it got.
        """
        result = EngineResult()
        last_text = ""
        for record in _records(raw):
            match record.get("type"):
                case "assistant":
                    last_text = _assistant_text(record) or last_text
                case "result":
                    _apply_result(result, record)
        if not result.text:
            result.text = last_text or "Task completed"
        return result

    def check_available(self) -> str | None:
        if not shutil.which("claude"):
            return INSTALL_HINT
        return None


def _records(raw: str) -> Iterator[dict]:
    for line in raw.splitlines():
        line = line.strip()
        if not line.startswith("{"):
            continue
        try:
            record = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(record, dict):
            yield record


def _assistant_text(record: dict) -> str:
    content = (record.get("message") or {}).get("content") or []
    parts = [c.get("text", "") for c in content if isinstance(c, dict) and c.get("type") == "text"]
    return "\n".join(p for p in parts if p).strip()


def _apply_result(result: EngineResult, record: dict) -> None:
    result.text = str(record.get("result") or "")
    usage = record.get("usage") or {}
    result.input_tokens = _count(usage.get("input_tokens"))
    result.output_tokens = _count(usage.get("output_tokens"))
    result.duration_ms = _count(record.get("duration_ms"))
    subtype = str(record.get("subtype", ""))
    if record.get("is_error") or subtype.startswith("error"):
        result.error = _RESULT_ERRORS.get(subtype) or result.text or f"Claude Code reported {subtype or 'an error'}"


def _count(value: object) -> int:
    return int(value) if isinstance(value, (int, float)) and not isinstance(value, bool) else 0
