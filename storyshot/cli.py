"""CLI entry point for storyshot."""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Optional

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape

from storyshot.bridge import WorkerBridge
from storyshot.errors import StoryshotError
from storyshot.index.results import ResultsIndexManager
from storyshot.index.snapshots import SnapshotIndexManager
from storyshot.models.config import LOG_LEVELS, RunConfig
from storyshot.models.rpc import EVENT_STORY_COMPLETE
from storyshot.models.task import RunReport
from storyshot.orchestrator import Orchestrator
from storyshot.reporter.console import (
    STATUS_MARKS,
    STATUS_STYLES,
    ConsoleReporter,
    print_results,
    print_snapshots,
    print_summary,
)
from storyshot.reporter.json_report import latest_report, load_json_report

DEFAULT_CONFIG = "storyshot.json"
EXIT_ERROR = 2

console = Console()
logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False, stderr: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    # stdout carries the protocol in worker mode
    handler_console = Console(stderr=True) if stderr else console
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=handler_console, rich_tracebacks=True)],
        force=True,
    )


def _fail(error: Exception) -> None:
    console.print(f"[red]Error:[/red] {escape(str(error))}")
    sys.exit(EXIT_ERROR)


def _load_config(path: str, overrides: dict[str, Any] | None = None) -> RunConfig:
    if Path(path).exists():
        cfg = RunConfig.load(path)
    else:
        logger.debug("No config at %s, using defaults", path)
        cfg = RunConfig()
    clean = {k: v for k, v in (overrides or {}).items() if v is not None and v is not False}
    cfg = cfg.merged(clean).resolved()
    _apply_log_level(cfg)
    return cfg


def _apply_log_level(cfg: RunConfig) -> None:
    ctx = click.get_current_context(silent=True)
    if ctx is not None and ctx.find_root().params.get("verbose"):
        return
    logging.getLogger().setLevel(cfg.logging_level)


def run_options(func):
    """Options shared by ``test`` and ``update``."""
    options = [
        click.option("--config", "-c", default=DEFAULT_CONFIG, help="Config file path"),
        click.option("--url", "-u", help="Storybook URL"),
        click.option("--output", "-o", "output_dir", help="Directory for baselines, results and reports"),
        click.option("--workers", "-w", type=int, help="Parallel workers"),
        click.option("--max-failures", type=int, help="Stop after N failures (0 disables)"),
        click.option("--retries", type=int, help="Retries for navigation errors"),
        click.option("--mismatch-retries", type=int, help="Retries for screenshot mismatches"),
        click.option("--threshold", type=float, help="Allowed diff in percent"),
        click.option("--max-diff-pixels", type=int, help="Allowed number of differing pixels"),
        click.option("--full-page", is_flag=True, help="Capture the full scrollable page"),
        click.option("--snapshot-delay", "snapshot_delay_ms", type=int, help="Wait before capturing (ms)"),
        click.option("--grep", "-g", help="Regex on story ids"),
        click.option("--include", "-i", multiple=True, help="Include stories matching pattern"),
        click.option("--exclude", "-e", multiple=True, help="Exclude stories matching pattern"),
        click.option("--browser", "-b", "browsers", multiple=True, help="Browser engine(s)"),
        click.option("--failed-only", is_flag=True, help="Only rerun tests that failed last time"),
        click.option("--missing-only", is_flag=True, help="Only run tests without a baseline"),
        click.option("--isolated", is_flag=True, help="Run captures in a supervised worker process"),
        click.option("--log-level", type=click.Choice(list(LOG_LEVELS)), help="Log level"),
        click.option("--quiet", "-q", is_flag=True, help="Only print stories that did not pass"),
    ]
    for option in reversed(options):
        func = option(func)
    return func


def _overrides(**kwargs: Any) -> dict[str, Any]:
    overrides = dict(kwargs)
    for key in ("include", "exclude", "browsers"):
        if key in overrides:
            overrides[key] = list(overrides[key]) or None
    return overrides


def _print_remote_story(params: Any, quiet: bool = False) -> None:
    if not isinstance(params, dict):
        return
    status = params.get("status", "")
    if quiet and status == "passed":
        return
    style = STATUS_STYLES.get(status, "white")
    mark = STATUS_MARKS.get(status, "·")
    console.print(
        f"[{style}]{mark} {status:<7}[/{style}] {escape(str(params.get('story_id')))} "
        f"\\[{params.get('browser')}, {params.get('viewport_name')}] "
        f"[dim]({params.get('duration_ms', 0)}ms)[/dim]"
    )


async def _run_isolated(cfg: RunConfig, quiet: bool = False) -> RunReport:
    cfg = cfg.resolved()
    manifest = await Orchestrator(cfg).plan()
    bridge = WorkerBridge.from_config(cfg)
    bridge.subscribe(EVENT_STORY_COMPLETE, lambda params: _print_remote_story(params, quiet))
    async with bridge:
        result = await bridge.run_remote(cfg.manifest_path)
    logger.debug("Worker finished run %s", manifest.run_id)
    return RunReport.model_validate(result)


def _execute_run(cfg: RunConfig, isolated: bool, quiet: bool = False) -> None:
    try:
        if isolated:
            report = asyncio.run(_run_isolated(cfg, quiet))
        else:
            orchestrator = Orchestrator(cfg, listener=ConsoleReporter(console, show_passed=not quiet))
            report = orchestrator.run()
    except StoryshotError as e:
        _fail(e)
        return
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted[/yellow]")
        sys.exit(130)

    console.print()
    print_summary(console, report)
    sys.exit(report.exit_code)


@click.group(invoke_without_command=True)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.option("--json-rpc", "json_rpc", is_flag=True, help="Serve runs over JSON-RPC on stdin/stdout")
@click.option("--manifest", type=click.Path(dir_okay=False), help="Run manifest for worker mode")
@click.option("--config", "-c", "config_path", default=DEFAULT_CONFIG, help="Config file for worker mode")
@click.pass_context
def cli(ctx: click.Context, verbose: bool, json_rpc: bool, manifest: Optional[str], config_path: str) -> None:
    """Visual regression testing for Storybook stories"""
    setup_logging(verbose, stderr=json_rpc)
    if json_rpc:
        from storyshot.worker import run_json_rpc_mode

        try:
            cfg = _load_config(config_path)
            run_json_rpc_mode(cfg, Path(manifest) if manifest else None)
        except StoryshotError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(EXIT_ERROR)
        ctx.exit(0)
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


@cli.command()
@run_options
@click.option("--strict-missing", is_flag=True, help="Fail when a baseline is missing")
def test(config: str, isolated: bool, quiet: bool, **kwargs: Any) -> None:
    """Compare every story against its baseline."""
    try:
        cfg = _load_config(config, _overrides(**kwargs))
    except StoryshotError as e:
        _fail(e)
        return
    _execute_run(cfg, isolated, quiet)


@cli.command()
@run_options
def update(config: str, isolated: bool, quiet: bool, **kwargs: Any) -> None:
    """Capture new baselines for the selected stories."""
    try:
        cfg = _load_config(config, {**_overrides(**kwargs), "update": True})
    except StoryshotError as e:
        _fail(e)
        return
    _execute_run(cfg, isolated, quiet)


@cli.command()
@click.option("--config", "-c", default=DEFAULT_CONFIG, help="Config file path")
@click.option("--json", "as_json", is_flag=True, help="Print JSON instead of a table")
@click.option("--report", "show_report", is_flag=True, help="Summarize the latest JSON run report")
def results(config: str, as_json: bool, show_report: bool) -> None:
    """Show failed results from the last runs."""
    try:
        cfg = _load_config(config)
        if show_report:
            _show_latest_report(cfg, as_json)
            return
    except StoryshotError as e:
        _fail(e)
        return
    entries = ResultsIndexManager(cfg.results_dir).story_results()
    if as_json:
        click.echo(json.dumps([e.model_dump(exclude_none=True) for e in entries], indent=2))
        return
    print_results(console, entries)


def _show_latest_report(cfg: RunConfig, as_json: bool) -> None:
    path = latest_report(cfg.reports_dir)
    if path is None:
        console.print(f"[yellow]No run reports in {escape(str(cfg.reports_dir))}[/yellow]")
        return
    report = load_json_report(path)
    if as_json:
        click.echo(report.model_dump_json(indent=2, exclude={"records"}))
        return
    console.print(f"[dim]{escape(str(path))}[/dim]")
    print_summary(console, report)


@cli.command()
@click.option("--config", "-c", default=DEFAULT_CONFIG, help="Config file path")
@click.option("--prune", is_flag=True, help="Delete baselines for stories that no longer exist")
def snapshots(config: str, prune: bool) -> None:
    """List recorded baselines."""
    try:
        cfg = _load_config(config)
        manager = SnapshotIndexManager(cfg.snapshot_dir)
        if prune:
            tasks = asyncio.run(Orchestrator(cfg).discover())
            removed = manager.prune_stale(t.key for t in tasks)
            console.print(f"[green]Pruned {removed} stale baseline(s)[/green]")
            return
    except StoryshotError as e:
        _fail(e)
        return
    print_snapshots(console, manager.entries())


@cli.command()
@click.option("--config", "-c", default=DEFAULT_CONFIG, help="Config file path")
def compact(config: str) -> None:
    """Rewrite both index logs with one record per test."""
    try:
        cfg = _load_config(config)
        removed_results = ResultsIndexManager(cfg.results_dir).index.compact()
        removed_snapshots = SnapshotIndexManager(cfg.snapshot_dir).index.compact()
    except StoryshotError as e:
        _fail(e)
        return
    console.print(
        f"[green]Compacted:[/green] {removed_results} result and "
        f"{removed_snapshots} snapshot record(s) removed"
    )


@cli.command()
@click.option("--url", "-u", prompt="Storybook URL", default="http://localhost:6006", help="Storybook URL")
@click.option("--config", "-c", default=DEFAULT_CONFIG, help="Config file path")
def init(url: str, config: str) -> None:
    """Create a default configuration file."""
    config_path = Path(config)
    if config_path.exists():
        if not click.confirm(f"{config_path} already exists. Overwrite?"):
            return

    cfg = RunConfig(url=url)
    cfg.save(config_path)
    console.print(f"[green]Created {config_path}[/green]")
    console.print("\nYou can now customize this file and run:")
    console.print("  [blue]storyshot update[/blue]   to capture baselines")
    console.print("  [blue]storyshot test[/blue]     to compare against them")


if __name__ == "__main__":
    cli()
