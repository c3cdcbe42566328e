"""CLI tests: every command runs in-process against a throwaway repo."""

from __future__ import annotations

import json
import subprocess
import sys
from pathlib import Path

import pytest

from parallel_agents import __version__
from parallel_agents.cli import main
from parallel_agents.config import CONFIG_ENV_VAR, CONFIG_FILENAME
from parallel_agents.io_utils import read_text, write_text

# Writes a file named after the task so each worktree gets its own change.
WRITER = (
    "import os, pathlib\n"
    "pathlib.Path('out-' + os.environ['PARALLEL_TASK_ID'] + '.txt').write_text('done')\n"
)


@pytest.fixture
def cli_runner(monkeypatch):
    """Click CliRunner for invoking the CLI in-process."""
    from click.testing import CliRunner

    monkeypatch.delenv(CONFIG_ENV_VAR, raising=False)
    return CliRunner()


def _json_from(output: str) -> dict:
    """Decode the JSON document in *output*, ignoring any log lines around it."""
    data, _ = json.JSONDecoder().raw_decode(output, output.index("{"))
    return data


# ── Main entry and help ────────────────────────────────────────────────


class TestCliHelpAndVersion:
    """Basic entry: --help, -h, --version."""

    def test_help_long(self, cli_runner):
        r = cli_runner.invoke(main, ["--help"])
        assert r.exit_code == 0
        assert "isolated git worktrees" in r.output
        for command in ("run", "analyze", "resources", "cleanup", "config"):
            assert command in r.output

    def test_help_short(self, cli_runner):
        r = cli_runner.invoke(main, ["-h"])
        assert r.exit_code == 0

    def test_version(self, cli_runner):
        r = cli_runner.invoke(main, ["--version"])
        assert r.exit_code == 0
        assert __version__ in r.output

    def test_run_help(self, cli_runner):
        r = cli_runner.invoke(main, ["run", "--help"])
        assert r.exit_code == 0
        assert "--max-parallel" in r.output
        assert "--strategy" in r.output


# ── run ────────────────────────────────────────────────────────────────


class TestRun:
    """The run command: argument validation, dry runs and a real run."""

    def test_no_tasks_is_usage_error(self, cli_runner, git_repo):
        r = cli_runner.invoke(main, ["--repo", str(git_repo), "run"])
        assert r.exit_code == 2
        assert "No tasks given" in r.output

    def test_tasks_and_file_together(self, cli_runner, git_repo, tmp_path):
        task_file = tmp_path / "tasks.yaml"
        write_text(task_file, "tasks:\n  - id: a\n    description: Add a\n")
        r = cli_runner.invoke(main, ["--repo", str(git_repo), "run", "-f", str(task_file), "Add b"])
        assert r.exit_code == 2

    def test_invalid_task_file(self, cli_runner, git_repo, tmp_path):
        task_file = tmp_path / "tasks.yaml"
        write_text(task_file, "tasks:\n  - id: a\n")
        r = cli_runner.invoke(main, ["--repo", str(git_repo), "run", "-f", str(task_file)])
        assert r.exit_code == 2
        assert "no description" in r.output

    def test_missing_task_file(self, cli_runner, git_repo, tmp_path):
        r = cli_runner.invoke(main, ["--repo", str(git_repo), "run", "-f", str(tmp_path / "nope.yaml")])
        assert r.exit_code == 2

    def test_duplicate_task_ids(self, cli_runner, git_repo, tmp_path):
        task_file = tmp_path / "tasks.yaml"
        write_text(task_file, "tasks:\n  - id: a\n    description: A\n  - id: a\n    description: B\n")
        r = cli_runner.invoke(main, ["--repo", str(git_repo), "run", "--dry-run", "-f", str(task_file)])
        assert r.exit_code == 1
        assert "Duplicate task id: a" in r.output

    def test_command_engine_needs_command(self, cli_runner, git_repo):
        r = cli_runner.invoke(main, ["--repo", str(git_repo), "run", "--engine", "command", "Add a"])
        assert r.exit_code == 2
        assert "--command" in r.output

    def test_out_of_range_max_parallel(self, cli_runner, git_repo):
        r = cli_runner.invoke(main, ["--repo", str(git_repo), "run", "--max-parallel", "50", "Add a"])
        assert r.exit_code == 1
        assert "maxParallel" in r.output

    def test_unknown_strategy_rejected_by_click(self, cli_runner, git_repo):
        r = cli_runner.invoke(main, ["--repo", str(git_repo), "run", "--strategy", "octopus", "Add a"])
        assert r.exit_code == 2

    def test_not_a_git_repo(self, cli_runner, tmp_path):
        plain = tmp_path / "plain"
        plain.mkdir()
        r = cli_runner.invoke(main, ["--repo", str(plain), "run", "Add a"])
        assert r.exit_code == 1
        assert "Not a git repository" in r.output

    def test_dry_run_changes_nothing(self, cli_runner, git_repo, tmp_path):
        report = tmp_path / "analysis.json"
        r = cli_runner.invoke(
            main,
            ["--repo", str(git_repo), "run", "--dry-run", "--report", str(report),
             "Update src/a.py", "Update src/b.py"],
        )
        assert r.exit_code == 0, r.output
        assert "Dry run" in r.output
        data = json.loads(read_text(report))
        assert data["dryRun"] is True
        assert data["analysis"]["totalTasks"] == 2
        assert [g["taskIds"] for g in data["groups"]] == [["task-1", "task-2"]]
        branches = subprocess.run(
            ["git", "branch", "--list", "parallel/*"], cwd=git_repo, capture_output=True, text=True, check=True
        ).stdout
        assert branches.strip() == ""

    def test_full_run_with_command_engine(self, cli_runner, git_repo, tmp_path):
        report = tmp_path / "report.json"
        command = f'"{sys.executable}" -c "{WRITER}"'
        r = cli_runner.invoke(
            main,
            ["--repo", str(git_repo), "run", "--engine", "command", "--command", command,
             "--force", "--timeout", "60", "--report", str(report),
             "Write the first output", "Write the second output"],
        )
        assert r.exit_code == 0, r.output
        assert read_text(git_repo / "out-task-1.txt") == "done"
        assert read_text(git_repo / "out-task-2.txt") == "done"
        data = json.loads(read_text(report))
        assert data["success"] is True
        assert {t["status"] for t in data["tasks"]} == {"completed"}

    def test_failing_command_exits_nonzero(self, cli_runner, git_repo):
        command = f'"{sys.executable}" -c "import sys; sys.exit(4)"'
        r = cli_runner.invoke(
            main,
            ["--repo", str(git_repo), "run", "--engine", "command", "--command", command,
             "--force", "--timeout", "60", "Do one thing", "Do another thing"],
        )
        assert r.exit_code == 1


# ── analyze ────────────────────────────────────────────────────────────


class TestAnalyze:
    def test_json_groups(self, cli_runner, git_repo):
        r = cli_runner.invoke(
            main,
            ["--repo", str(git_repo), "analyze", "--json",
             "Update src/shared.py for login", "Update src/shared.py for signup", "Update src/other.py"],
        )
        assert r.exit_code == 0, r.output
        data = _json_from(r.output)
        assert data["dryRun"] is True
        assert [g["taskIds"] for g in data["groups"]] == [["task-1", "task-3"], ["task-2"]]
        assert data["analysis"]["totalTasks"] == 3

    def test_text_output(self, cli_runner, git_repo):
        r = cli_runner.invoke(main, ["--repo", str(git_repo), "analyze", "Update src/a.py", "Update src/b.py"])
        assert r.exit_code == 0, r.output
        assert "Task analysis" in r.output
        assert "Overlaps" in r.output

    def test_cycle_in_task_file(self, cli_runner, git_repo, tmp_path):
        task_file = tmp_path / "tasks.yaml"
        write_text(
            task_file,
            "tasks:\n"
            "  - id: a\n    description: A\n    dependencies: [b]\n"
            "  - id: b\n    description: B\n    dependencies: [a]\n",
        )
        r = cli_runner.invoke(main, ["--repo", str(git_repo), "analyze", "-f", str(task_file)])
        assert r.exit_code == 1


# ── resources / cleanup ────────────────────────────────────────────────


class TestResourcesAndCleanup:
    def test_resources_json(self, cli_runner, git_repo):
        r = cli_runner.invoke(main, ["--repo", str(git_repo), "resources", "--json"])
        assert r.exit_code == 0, r.output
        data = _json_from(r.output)
        assert {"disk", "memory", "cpu", "overall"} <= set(data)

    def test_resources_text(self, cli_runner, git_repo):
        r = cli_runner.invoke(main, ["--repo", str(git_repo), "resources"])
        assert r.exit_code == 0, r.output

    def test_cleanup_nothing(self, cli_runner, git_repo):
        r = cli_runner.invoke(main, ["--repo", str(git_repo), "cleanup"])
        assert r.exit_code == 0, r.output
        assert "Nothing to clean up" in r.output

    def test_cleanup_removes_stale_branch(self, cli_runner, git_repo):
        subprocess.run(["git", "branch", "parallel/old-task"], cwd=git_repo, capture_output=True, check=True)
        r = cli_runner.invoke(main, ["--repo", str(git_repo), "cleanup"])
        assert r.exit_code == 0, r.output
        assert "Cleaned up 1 stale branch(es)" in r.output
        branches = subprocess.run(
            ["git", "branch", "--list", "parallel/*"], cwd=git_repo, capture_output=True, text=True, check=True
        ).stdout
        assert branches.strip() == ""

    def test_cleanup_outside_git(self, cli_runner, tmp_path):
        r = cli_runner.invoke(main, ["--repo", str(tmp_path), "cleanup"])
        assert r.exit_code == 1


# ── config ─────────────────────────────────────────────────────────────


class TestConfigCommands:
    def test_init_show_validate(self, cli_runner, git_repo):
        r = cli_runner.invoke(main, ["--repo", str(git_repo), "config", "init"])
        assert r.exit_code == 0, r.output
        assert (git_repo / CONFIG_FILENAME).is_file()

        r = cli_runner.invoke(main, ["--repo", str(git_repo), "config", "show"])
        assert r.exit_code == 0
        assert "maxParallel: 4" in r.output
        assert "mergeStrategy: sequential" in r.output

        r = cli_runner.invoke(main, ["--repo", str(git_repo), "config", "validate"])
        assert r.exit_code == 0
        assert "is valid" in r.output

    def test_init_refuses_to_overwrite(self, cli_runner, git_repo):
        write_text(git_repo / CONFIG_FILENAME, "maxParallel: 2\n")
        r = cli_runner.invoke(main, ["--repo", str(git_repo), "config", "init"])
        assert r.exit_code == 1
        assert read_text(git_repo / CONFIG_FILENAME) == "maxParallel: 2\n"

        r = cli_runner.invoke(main, ["--repo", str(git_repo), "config", "init", "--force"])
        assert r.exit_code == 0
        assert "maxParallel: 4" in read_text(git_repo / CONFIG_FILENAME)

    def test_show_reflects_file(self, cli_runner, git_repo):
        write_text(git_repo / CONFIG_FILENAME, "maxParallel: 2\nmergeStrategy: squash\n")
        r = cli_runner.invoke(main, ["--repo", str(git_repo), "config", "show"])
        assert r.exit_code == 0
        assert "maxParallel: 2" in r.output
        assert "mergeStrategy: squash" in r.output

    def test_validate_without_file(self, cli_runner, git_repo):
        r = cli_runner.invoke(main, ["--repo", str(git_repo), "config", "validate"])
        assert r.exit_code == 0
        assert "defaults apply" in r.output

    def test_validate_reports_problems(self, cli_runner, git_repo):
        write_text(git_repo / CONFIG_FILENAME, "maxParallel: 50\nmergeStrategy: octopus\n")
        r = cli_runner.invoke(main, ["--repo", str(git_repo), "config", "validate"])
        assert r.exit_code == 1
        assert "maxParallel" in r.output
        assert "mergeStrategy" in r.output

    def test_validate_bad_yaml(self, cli_runner, git_repo):
        write_text(git_repo / CONFIG_FILENAME, "maxParallel: [1,\n")
        r = cli_runner.invoke(main, ["--repo", str(git_repo), "config", "validate"])
        assert r.exit_code == 1
        assert "Invalid YAML" in r.output

    def test_env_var_overrides_location(self, cli_runner, git_repo, tmp_path, monkeypatch):
        other = tmp_path / "elsewhere.yaml"
        write_text(other, "timeout: 120\n")
        monkeypatch.setenv(CONFIG_ENV_VAR, str(other))
        r = cli_runner.invoke(main, ["--repo", str(git_repo), "config", "show"])
        assert r.exit_code == 0
        assert "timeout: 120" in r.output
