"""Base class for delegated executor adapters."""

from __future__ import annotations

import json
import os
import shutil
import subprocess
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from parallel_agents.io_utils import open_text


class Cancelled(Exception):
    """Raised internally when a run's cancel event fires mid-task."""


@dataclass
class EngineResult:
    """Uniform result from any delegated executor invocation."""

    text: str = ""
    input_tokens: int = 0
    output_tokens: int = 0
    duration_ms: int = 0
    error: str = ""
    return_code: int = 0
    timed_out: bool = False
    cancelled: bool = False

    @property
    def success(self) -> bool:
        return self.return_code == 0 and not self.error


class EngineBase(ABC):
    """Abstract engine adapter.  Subclasses implement ``build_cmd`` and ``parse_output``."""

    name: str = "base"

    @abstractmethod
    def build_cmd(self, prompt: str) -> list[str]:
        """Return the command list for the given prompt."""
        ...

    @abstractmethod
    def parse_output(self, raw: str) -> EngineResult:
        """Parse raw stdout into an :class:`EngineResult`."""
        ...

    def check_available(self) -> str | None:
        """Return an error message if the executable is not available, else None."""
        cmd_name = self.build_cmd("test")[0]
        if not shutil.which(cmd_name):
            return f"{cmd_name} not found in PATH"
        return None

    def run_sync(
        self,
        prompt: str,
        *,
        cwd: Path | None = None,
        log_file: Path | None = None,
        timeout: int | None = None,
        cancel_event: threading.Event | None = None,
        env: Mapping[str, str] | None = None,
    ) -> EngineResult:
        """Execute synchronously and return the parsed result.

        *env* entries are added on top of the current environment. A timeout or
        a set *cancel_event* terminates the child process.
        """
        cmd = self.build_cmd(prompt)
        start = time.monotonic()

        try:
            proc = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                cwd=cwd,
                env={**os.environ, **env} if env else None,
            )
        except FileNotFoundError:
            return EngineResult(error=f"{cmd[0]} not found", return_code=-1)

        try:
            proc_stdout, proc_stderr = self._communicate_with_interrupts(
                proc, timeout=timeout, cancel_event=cancel_event
            )
        except subprocess.TimeoutExpired:
            self._terminate_process(proc)
            return EngineResult(
                error=f"Task timed out after {timeout}s",
                return_code=-1,
                timed_out=True,
                duration_ms=int((time.monotonic() - start) * 1000),
            )
        except Cancelled:
            self._terminate_process(proc)
            return EngineResult(error="cancelled", return_code=-1, cancelled=True)
        except KeyboardInterrupt:
            self._terminate_process(proc)
            raise

        elapsed_ms = int((time.monotonic() - start) * 1000)

        if log_file:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            with open_text(log_file, "a") as f:
                if proc_stderr:
                    f.write(proc_stderr)

        result = self.parse_output(proc_stdout or "")
        result.return_code = proc.returncode
        if not result.duration_ms:
            result.duration_ms = elapsed_ms

        error = self._check_errors(proc_stdout or "")
        if error and not result.error:
            result.error = error

        # Some CLIs report argument/permission issues only on stderr; surface them.
        if proc.returncode != 0 and not result.error:
            stderr = (proc_stderr or "").strip()
            if stderr:
                result.error = stderr.splitlines()[0]
            else:
                result.error = f"exit code {proc.returncode}"

        return result

    @staticmethod
    def _communicate_with_interrupts(
        proc: subprocess.Popen[str],
        *,
        timeout: int | None,
        cancel_event: threading.Event | None = None,
    ) -> tuple[str, str]:
        """Read process output while staying responsive to timeouts, cancellation and Ctrl+C."""
        if timeout is None and cancel_event is None:
            return proc.communicate()

        deadline = time.monotonic() + timeout if timeout is not None else None
        while True:
            if cancel_event is not None and cancel_event.is_set():
                raise Cancelled()
            wait_timeout = 0.2
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise subprocess.TimeoutExpired(proc.args, timeout or 0)
                wait_timeout = min(wait_timeout, remaining)
            try:
                return proc.communicate(timeout=wait_timeout)
            except subprocess.TimeoutExpired:
                continue

    @staticmethod
    def _terminate_process(proc: subprocess.Popen[str]) -> None:
        """Terminate a subprocess promptly (best effort)."""
        try:
            if proc.poll() is None:
                proc.terminate()
            proc.wait(timeout=2)
            return
        except (OSError, subprocess.TimeoutExpired):
            pass

        try:
            if proc.poll() is None:
                proc.kill()
            proc.wait(timeout=2)
        except (OSError, subprocess.TimeoutExpired):
            pass

    @staticmethod
    def _check_errors(raw: str) -> str:
        """Detect structured error records in JSON-lines output."""
        if not raw:
            return ""

        # Structured parsing avoids false positives from plain text content.
        for line in raw.splitlines():
            stripped = line.strip()
            if not stripped.startswith("{"):
                continue
            try:
                obj = json.loads(stripped)
            except json.JSONDecodeError:
                continue
            if not isinstance(obj, dict):
                continue

            err = obj.get("error")
            if isinstance(err, dict):
                msg = str(err.get("message", "")).strip()
                if msg:
                    return msg
            if isinstance(err, str) and err.strip():
                return err.strip()

            if str(obj.get("type", "")).lower() == "error":
                for key in ("message", "text"):
                    if isinstance(obj.get(key), str) and obj[key].strip():
                        return obj[key].strip()
                return "Unknown error"

        return ""
