"""Terminal output for runs, results and snapshots."""

from __future__ import annotations

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from storyshot.executor.pool import RunListener
from storyshot.models.index import SnapshotEntry
from storyshot.models.task import RunReport, StoryResult, TestOutcome, TestTask

STATUS_STYLES = {
    "passed": "green",
    "failed": "red",
    "new": "cyan",
    "missing": "yellow",
}

STATUS_MARKS = {
    "passed": "✓",
    "failed": "✗",
    "new": "+",
    "missing": "?",
}


class ConsoleReporter(RunListener):
    """Prints one line per finished task."""

    def __init__(self, console: Console, show_passed: bool = True):
        self.console = console
        self.show_passed = show_passed

    def on_story_complete(self, task: TestTask, outcome: TestOutcome) -> None:
        if outcome.status == "passed" and not self.show_passed:
            return
        style = STATUS_STYLES.get(outcome.status, "white")
        mark = STATUS_MARKS.get(outcome.status, "·")
        line = f"[{style}]{mark} {outcome.status:<7}[/{style}] {escape(task.display_name)} [dim]({outcome.duration_ms}ms)[/dim]"
        if outcome.attempts > 1:
            line += f" [dim]after {outcome.attempts} attempts[/dim]"
        self.console.print(line)
        if outcome.error and outcome.status != "passed":
            self.console.print(f"    [dim]{escape(outcome.error)}[/dim]")

    def on_log(self, level: str, message: str) -> None:
        if level in ("warn", "error"):
            self.console.print(f"[yellow]{escape(message)}[/yellow]")


def print_summary(console: Console, report: RunReport) -> None:
    table = Table(title="Results Summary")
    table.add_column("Metric", style="bold")
    table.add_column("Value")
    table.add_row("Run ID", report.run_id)
    table.add_row("Duration", f"{report.duration_ms / 1000:.1f}s")
    table.add_row("Total Tests", str(report.total))
    table.add_row("Passed", f"[green]{report.passed}[/green]")
    table.add_row("Failed", f"[red]{report.failed}[/red]")
    table.add_row("New", f"[cyan]{report.new}[/cyan]")
    table.add_row("Missing", f"[yellow]{report.missing}[/yellow]")
    if report.not_run:
        table.add_row("Not Run", f"[yellow]{len(report.not_run)}[/yellow]")
    console.print(table)

    if report.max_failures_reached:
        console.print("[red]Stopped early: maximum failures reached[/red]")
    elif report.cancelled:
        console.print("[yellow]Run cancelled[/yellow]")


def print_results(console: Console, results: list[StoryResult]) -> None:
    if not results:
        console.print("[green]No failed results[/green]")
        return
    table = Table(title=f"Failed Results ({len(results)})")
    table.add_column("Story", style="bold")
    table.add_column("Browser")
    table.add_column("Viewport")
    table.add_column("Type")
    table.add_column("Error")
    table.add_column("Diff")
    for r in results:
        table.add_row(
            r.story_id,
            r.browser,
            r.viewport_name,
            r.error_type or "",
            escape(r.error or ""),
            r.diff_path or "",
        )
    console.print(table)


def print_snapshots(console: Console, entries: list[SnapshotEntry]) -> None:
    if not entries:
        console.print("[yellow]No snapshots recorded[/yellow]")
        return
    table = Table(title=f"Snapshots ({len(entries)})")
    table.add_column("Story", style="bold")
    table.add_column("Browser")
    table.add_column("Viewport")
    table.add_column("Size")
    table.add_column("Updated")
    for e in entries:
        size = f"{e.viewport_width}x{e.viewport_height}" if e.viewport_width else ""
        table.add_row(e.story_id, e.browser, e.viewport_name, size, e.updated_at)
    console.print(table)
