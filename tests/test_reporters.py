"""Tests for JSON and console reporting."""

import json
import os
from io import StringIO

import pytest
from rich.console import Console

from conftest import make_task
from storyshot.errors import ConfigError
from storyshot.executor.pool import to_record
from storyshot.models.index import SnapshotEntry
from storyshot.models.task import RunReport, StoryResult, TestOutcome
from storyshot.reporter.console import ConsoleReporter, print_results, print_snapshots, print_summary
from storyshot.reporter.json_report import latest_report, load_json_report, write_json_report


def _make_console() -> tuple[Console, StringIO]:
    buffer = StringIO()
    return Console(file=buffer, width=200, color_system=None), buffer


@pytest.fixture
def report():
    passed = to_record(make_task("a--one"), TestOutcome(status="passed", duration_ms=20))
    failed = to_record(
        make_task("b--two"),
        TestOutcome(
            status="failed",
            diff_pixels=40,
            diff_percent=3.2,
            error="Screenshot mismatch",
            error_type="screenshot_mismatch",
            artifact_paths={"diff": "/tmp/b.diff.png"},
        ),
    )
    return RunReport(
        run_id="run42",
        started_at="2024-05-01T10:00:00Z",
        total=3,
        passed=1,
        failed=1,
        not_run=["c--three::browser:chromium::viewport:desktop"],
        max_failures_reached=True,
        duration_ms=1500,
        exit_code=1,
        records=[passed, failed],
    )


class TestJsonReport:
    """Tests for the JSON report writer."""

    def test_written_with_failures(self, tmp_path, report):
        path = write_json_report(report, tmp_path / "reports")
        assert path.name == "report_run42.json"

        data = json.loads(path.read_text())
        assert data["exit_code"] == 1
        assert data["not_run"] == ["c--three::browser:chromium::viewport:desktop"]
        assert data["failures"] == [
            {
                "story_id": "b--two",
                "browser": "chromium",
                "viewport_name": "desktop",
                "error": "Screenshot mismatch",
                "error_type": "screenshot_mismatch",
                "diff": "/tmp/b.diff.png",
            }
        ]

    def test_load(self, tmp_path, report):
        path = write_json_report(report, tmp_path)
        loaded = load_json_report(path)
        assert loaded == report

    def test_load_invalid(self, tmp_path):
        path = tmp_path / "report_bad.json"
        path.write_text("[1, 2]")
        with pytest.raises(ConfigError, match="Invalid run report"):
            load_json_report(path)
        path.write_text("{oops")
        with pytest.raises(ConfigError, match="Invalid run report"):
            load_json_report(path)

    def test_latest_report(self, tmp_path):
        older = write_json_report(RunReport(run_id="old", started_at="t"), tmp_path)
        newer = write_json_report(RunReport(run_id="new", started_at="t"), tmp_path)
        os.utime(older, (2_000_000_000, 2_000_000_000))
        os.utime(newer, (1_000_000_000, 1_000_000_000))
        (tmp_path / "notes.json").write_text("{}")
        assert latest_report(tmp_path) == older

    def test_latest_report_missing_dir(self, tmp_path):
        assert latest_report(tmp_path / "nowhere") is None


class TestConsoleReporter:
    """Tests for the per-task console listener."""

    def test_passed_line(self):
        console, buffer = _make_console()
        task = make_task()
        ConsoleReporter(console).on_story_complete(task, TestOutcome(status="passed", duration_ms=42))
        output = buffer.getvalue()
        assert "passed" in output
        assert "[chromium, desktop]" in output
        assert "(42ms)" in output

    def test_passed_hidden(self):
        console, buffer = _make_console()
        ConsoleReporter(console, show_passed=False).on_story_complete(make_task(), TestOutcome(status="passed"))
        assert buffer.getvalue() == ""

    def test_failure_shows_error_and_attempts(self):
        console, buffer = _make_console()
        outcome = TestOutcome(status="failed", error="HTTP 500 loading [iframe]", attempts=3)
        ConsoleReporter(console).on_story_complete(make_task(), outcome)
        output = buffer.getvalue()
        assert "after 3 attempts" in output
        assert "HTTP 500 loading [iframe]" in output

    def test_only_warnings_logged(self):
        console, buffer = _make_console()
        reporter = ConsoleReporter(console)
        reporter.on_log("debug", "noise")
        reporter.on_log("warn", "Reached max failures (2), stopping")
        assert "noise" not in buffer.getvalue()
        assert "Reached max failures" in buffer.getvalue()


class TestTables:
    """Tests for summary, results and snapshot tables."""

    def test_summary(self, report):
        console, buffer = _make_console()
        print_summary(console, report)
        output = buffer.getvalue()
        assert "run42" in output
        assert "Not Run" in output
        assert "maximum failures reached" in output

    def test_summary_cancelled(self):
        console, buffer = _make_console()
        print_summary(console, RunReport(run_id="r", started_at="t", cancelled=True))
        assert "Run cancelled" in buffer.getvalue()

    def test_results(self):
        console, buffer = _make_console()
        result = StoryResult(
            story_id="b--two",
            story_name="b--two",
            browser="firefox",
            viewport_name="mobile",
            status="failed",
            error_type="network_error",
            error="net::ERR_CONNECTION_REFUSED",
        )
        print_results(console, [result])
        output = buffer.getvalue()
        assert "Failed Results (1)" in output
        assert "network_error" in output

    def test_results_empty(self):
        console, buffer = _make_console()
        print_results(console, [])
        assert "No failed results" in buffer.getvalue()

    def test_snapshots(self):
        console, buffer = _make_console()
        entry = SnapshotEntry(
            story_id="a--one",
            browser="webkit",
            viewport_name="tablet",
            snapshot_id="id",
            created_at="2024-05-01T10:00:00Z",
            updated_at="2024-05-02T10:00:00Z",
            viewport_width=768,
            viewport_height=1024,
        )
        print_snapshots(console, [entry])
        output = buffer.getvalue()
        assert "768x1024" in output
        assert "webkit" in output
