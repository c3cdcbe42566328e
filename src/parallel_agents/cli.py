"""parallel-agents CLI.

Installed as the ``parallel-agents`` console_script.
"""

from __future__ import annotations

import json
import sys
from pathlib import Path

import click
import yaml

from parallel_agents import __version__
from parallel_agents.config import (
    CONFIG_FILENAME,
    MERGE_STRATEGIES,
    ParallelConfig,
    config_path,
    load_config,
    resolve_repo_root,
    save_config,
)
from parallel_agents.engines.base import EngineBase
from parallel_agents.engines.claude import ClaudeEngine
from parallel_agents.engines.registry import ENGINE_NAMES

CONTEXT_SETTINGS = dict(help_option_names=["-h", "--help"])


def _base_dir(ctx: click.Context) -> Path:
    return ctx.obj["base_dir"]


def _collect_tasks(tasks: tuple[str, ...], task_file: str) -> list:
    from parallel_agents.errors import TaskValidationError
    from parallel_agents.tasks.io import load_tasks_file

    if task_file:
        if tasks:
            raise click.UsageError("Pass task descriptions or --file, not both.")
        try:
            return load_tasks_file(Path(task_file))
        except TaskValidationError as e:
            raise click.UsageError(str(e)) from None
    items = [t for t in tasks if t.strip()]
    if not items:
        raise click.UsageError("No tasks given. Pass descriptions as arguments or use --file.")
    return items


def _exit_on_invalid(cfg: ParallelConfig) -> None:
    from parallel_agents import log as plog

    problems = cfg.validate()
    if problems:
        for problem in problems:
            plog.error(problem)
        sys.exit(1)


@click.group(context_settings=CONTEXT_SETTINGS)
@click.option(
    "--repo",
    "repo",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Repository to work in (default: the git root of the current directory)",
)
@click.option("-v", "--verbose", is_flag=True, help="Show debug output")
@click.version_option(__version__, prog_name="parallel-agents")
@click.pass_context
def main(ctx: click.Context, repo: Path | None, verbose: bool) -> None:
    """Run independent tasks concurrently in isolated git worktrees.

    \b
    EXAMPLES:
      parallel-agents analyze "Add login form" "Add signup form"
      parallel-agents run -f tasks.yaml --max-parallel 3
      parallel-agents run --engine command --command "make task" "Fix the parser"
      parallel-agents resources
      parallel-agents cleanup
    """
    from parallel_agents import log as plog

    base_dir = resolve_repo_root(repo.resolve() if repo else None)
    cfg = load_config(base_dir)
    plog.set_verbose(verbose or cfg.verbose)
    ctx.ensure_object(dict)
    ctx.obj["base_dir"] = base_dir
    ctx.obj["config"] = cfg.with_overrides(verbose=True if verbose else None)


# ── run ──────────────────────────────────────────────────────────────


@main.command()
@click.argument("tasks", nargs=-1)
@click.option("-f", "--file", "task_file", default="", help="YAML task file")
@click.option("--dry-run", is_flag=True, help="Analyze and show the plan without executing")
@click.option("--max-parallel", type=int, default=None, help="Maximum concurrent tasks (1-10)")
@click.option("--timeout", type=int, default=None, help="Per-task timeout in seconds")
@click.option("--strategy", type=click.Choice(MERGE_STRATEGIES), default=None, help="Merge strategy")
@click.option("--no-cleanup", is_flag=True, help="Keep worktrees after the run")
@click.option("--deep", is_flag=True, help="Deeper file prediction (more git history)")
@click.option("--engine", "engine_name", type=click.Choice(ENGINE_NAMES), default="claude", help="Delegated executor")
@click.option("--command", default="", help="Command for --engine command; {prompt} is replaced by the task")
@click.option("--model", default="", help="Model for --engine claude")
@click.option("--max-turns", type=int, default=None, help="Turn limit per task for --engine claude")
@click.option("--force", is_flag=True, help="Run in parallel even when sequential execution is recommended")
@click.option("--report", "report_path", type=click.Path(dir_okay=False, path_type=Path), default=None,
              help="Write the JSON report here")
@click.pass_context
def run(
    ctx: click.Context,
    tasks: tuple[str, ...],
    task_file: str,
    dry_run: bool,
    max_parallel: int | None,
    timeout: int | None,
    strategy: str | None,
    no_cleanup: bool,
    deep: bool,
    engine_name: str,
    command: str,
    model: str,
    max_turns: int | None,
    force: bool,
    report_path: Path | None,
) -> None:
    """Run TASKS in parallel worktrees and merge the results.

    \b
    EXAMPLES:
      parallel-agents run "Add login form" "Add signup form"
      parallel-agents run -f tasks.yaml --strategy squash
      parallel-agents run --dry-run -f tasks.yaml
    """
    from parallel_agents import git_ops, log as plog
    from parallel_agents.engines.registry import get_engine
    from parallel_agents.errors import PreconditionError
    from parallel_agents.executor import ParallelExecutor
    from parallel_agents.planner import Planner

    base_dir = _base_dir(ctx)
    cfg: ParallelConfig = ctx.obj["config"].with_overrides(
        max_parallel=max_parallel,
        timeout=timeout,
        merge_strategy=strategy,
        deep_analysis=True if deep else None,
        cleanup_on_complete=False if no_cleanup else None,
        cleanup_on_fail=False if no_cleanup else None,
    )
    _exit_on_invalid(cfg)
    items = _collect_tasks(tasks, task_file)

    if not git_ops.is_git_repo(base_dir):
        plog.error(f"Not a git repository: {base_dir}")
        sys.exit(1)

    try:
        engine = get_engine(engine_name, command=command, model=model, max_turns=max_turns)
    except ValueError as e:
        raise click.UsageError(str(e)) from None

    if dry_run:
        _show_analysis(cfg, base_dir, engine, items, report_path)
        return

    problem = engine.check_available()
    if problem:
        plog.error(problem)
        sys.exit(1)

    planner = Planner(base_dir, cfg)
    try:
        plan = planner.plan(items)
    except PreconditionError as e:
        plog.error(str(e))
        sys.exit(1)

    if cfg.auto_suggest and not (force or cfg.auto_parallel) and not plan.should_parallelize:
        plog.warn("Sequential execution recommended; running one task at a time. Use --force to override.")
        for reason in plan.reasoning:
            plog.debug(reason)
        cfg = cfg.with_overrides(enabled=False)

    executor = ParallelExecutor(
        cfg,
        base_dir,
        engine,
        planner=Planner(base_dir, cfg, predictor=planner.predictor),
    )
    report = executor.run(plan.tasks)

    if report_path:
        report.write(report_path)
        plog.info(f"Report written to {report_path}")
    sys.exit(0 if report.success else 1)


def _show_analysis(cfg: ParallelConfig, base_dir: Path, engine: EngineBase, items: list,
                   report_path: Path | None, as_json: bool = False) -> None:
    from parallel_agents import log as plog
    from parallel_agents.errors import PreconditionError
    from parallel_agents.executor import ParallelExecutor
    from parallel_agents.overlap_detector import OverlapDetector
    from parallel_agents.planner import format_suggestion
    from parallel_agents.task_analyzer import TaskAnalyzer

    executor = ParallelExecutor(cfg, base_dir, engine)
    try:
        analysis = executor.analyze(items)
    except PreconditionError as e:
        plog.error(str(e))
        sys.exit(1)

    if report_path:
        analysis.write(report_path)

    if as_json:
        click.echo(json.dumps(analysis.to_dict(), indent=2))
        return

    plan = analysis.plan
    plog.heading("Task analysis")
    plog.console.print(TaskAnalyzer().generate_summary(plan.analysis))
    plog.heading("File predictions")
    for prediction in plan.predictions:
        files = ", ".join(prediction.files[:5]) or "(none)"
        more = f" (+{len(prediction.files) - 5} more)" if len(prediction.files) > 5 else ""
        plog.task(prediction.task_id, f"{prediction.confidence * 100:.0f}% {files}{more}")
    plog.heading("Overlaps")
    plog.console.print(OverlapDetector().generate_report(plan.predictions))
    plog.heading("Plan")
    plog.console.print(format_suggestion(plan))
    plog.heading("Resources")
    plog.console.print(analysis.resource_summary)
    for warning in analysis.warnings:
        plog.warn(warning)
    if report_path:
        plog.info(f"Report written to {report_path}")
    plog.info("Dry run - no execution performed")


# ── analyze ──────────────────────────────────────────────────────────


@main.command()
@click.argument("tasks", nargs=-1)
@click.option("-f", "--file", "task_file", default="", help="YAML task file")
@click.option("--deep", is_flag=True, help="Deeper file prediction (more git history)")
@click.option("--json", "as_json", is_flag=True, help="Print the analysis as JSON")
@click.option("--report", "report_path", type=click.Path(dir_okay=False, path_type=Path), default=None,
              help="Write the JSON analysis here")
@click.pass_context
def analyze(ctx: click.Context, tasks: tuple[str, ...], task_file: str, deep: bool, as_json: bool,
            report_path: Path | None) -> None:
    """Show how TASKS would be grouped, without running anything."""
    cfg: ParallelConfig = ctx.obj["config"].with_overrides(deep_analysis=True if deep else None)
    items = _collect_tasks(tasks, task_file)
    # Analysis never launches the delegated executor.
    _show_analysis(cfg, _base_dir(ctx), ClaudeEngine(), items, report_path, as_json=as_json)


# ── resources / cleanup ──────────────────────────────────────────────


@main.command()
@click.option("--json", "as_json", is_flag=True, help="Print the status as JSON")
@click.pass_context
def resources(ctx: click.Context, as_json: bool) -> None:
    """Show disk, memory and CPU headroom and the recommended concurrency."""
    from parallel_agents import log as plog
    from parallel_agents.resource_monitor import ResourceMonitor, ResourceThresholds

    cfg: ParallelConfig = ctx.obj["config"]
    monitor = ResourceMonitor(_base_dir(ctx), ResourceThresholds.from_config(cfg))
    status = monitor.get_status()
    if as_json:
        click.echo(json.dumps(status.to_dict(), indent=2))
    else:
        plog.console.print(monitor.summary(status))


@main.command()
@click.pass_context
def cleanup(ctx: click.Context) -> None:
    """Remove leftover worktrees and branches from interrupted runs."""
    from parallel_agents import git_ops, log as plog
    from parallel_agents.workspace_manager import WorkspaceManager

    base_dir = _base_dir(ctx)
    cfg: ParallelConfig = ctx.obj["config"]
    if not git_ops.is_git_repo(base_dir):
        plog.error(f"Not a git repository: {base_dir}")
        sys.exit(1)

    git_ops.ensure_clean_git_state(cwd=base_dir)
    manager = WorkspaceManager(base_dir, branch_prefix=cfg.branch_prefix)
    removed = manager.prune_stale()
    if removed:
        for branch in removed:
            plog.info(f"Removed {branch}")
        plog.success(f"Cleaned up {len(removed)} stale branch(es)")
    else:
        plog.success("Nothing to clean up")


# ── config ───────────────────────────────────────────────────────────


@main.group("config")
def config_group() -> None:
    """Inspect and manage .parallel.yaml."""


@config_group.command("show")
@click.pass_context
def config_show(ctx: click.Context) -> None:
    """Print the effective configuration."""
    cfg: ParallelConfig = ctx.obj["config"]
    click.echo(yaml.safe_dump(cfg.to_dict(), sort_keys=False, default_flow_style=False), nl=False)


@config_group.command("init")
@click.option("--force", is_flag=True, help=f"Overwrite an existing {CONFIG_FILENAME}")
@click.pass_context
def config_init(ctx: click.Context, force: bool) -> None:
    """Write a default configuration file."""
    from parallel_agents import log as plog

    path = config_path(_base_dir(ctx))
    if path.exists() and not force:
        plog.error(f"{path} already exists (use --force to overwrite)")
        sys.exit(1)
    save_config(ParallelConfig(), path=path)
    plog.success(f"Wrote {path}")


@config_group.command("validate")
@click.pass_context
def config_validate(ctx: click.Context) -> None:
    """Check the configuration file and report every problem."""
    from parallel_agents import log as plog
    from parallel_agents.errors import ConfigError
    from parallel_agents.io_utils import read_yaml

    path = config_path(_base_dir(ctx))
    if not path.is_file():
        plog.info(f"No {path.name} found; defaults apply")
        return
    try:
        data = read_yaml(path)
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ConfigError(f"{path.name} must contain a mapping")
        ParallelConfig.from_dict(data)
    except yaml.YAMLError as e:
        plog.error(f"Invalid YAML in {path}: {e}")
        sys.exit(1)
    except ConfigError as e:
        for problem in e.problems:
            plog.error(problem)
        sys.exit(1)
    plog.success(f"{path} is valid")


if __name__ == "__main__":
    main()
