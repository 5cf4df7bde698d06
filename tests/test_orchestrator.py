"""Tests for the run orchestrator."""

import asyncio
import json

import pytest

from conftest import FakeCapture, FakeDiscovery, make_task, write_png
from storyshot.errors import DiscoveryError
from storyshot.executor.pool import RunListener
from storyshot.index.store import JsonlIndex
from storyshot.manifest import read_manifest
from storyshot.models.index import ResultEntry
from storyshot.models.task import RunReport, TestOutcome
from storyshot.orchestrator import EXIT_CANCELLED, EXIT_FAILED, EXIT_OK, Orchestrator, exit_code_for


def _make_orchestrator(config, tasks=None, statuses=None, delay=0.0, listener=None, discovery_error=None):
    orchestrator = Orchestrator(
        config,
        discovery=FakeDiscovery(tasks, error=discovery_error),
        capture=FakeCapture(statuses=statuses, delay=delay, update=config.update),
        listener=listener,
    )
    orchestrator.capture.snapshots = orchestrator.snapshots
    return orchestrator


class TestExitCode:
    """Tests for exit_code_for."""

    def test_clean_run(self):
        assert exit_code_for(RunReport(run_id="r", started_at="t", passed=3, new=1)) == EXIT_OK

    def test_failure(self):
        assert exit_code_for(RunReport(run_id="r", started_at="t", failed=1)) == EXIT_FAILED

    def test_threshold(self):
        assert exit_code_for(RunReport(run_id="r", started_at="t", max_failures_reached=True)) == EXIT_FAILED

    def test_missing_only_fails_when_strict(self):
        report = RunReport(run_id="r", started_at="t", missing=2)
        assert exit_code_for(report) == EXIT_OK
        assert exit_code_for(report, strict_missing=True) == EXIT_FAILED

    def test_cancelled(self):
        assert exit_code_for(RunReport(run_id="r", started_at="t", cancelled=True)) == EXIT_CANCELLED

    def test_failure_beats_cancel(self):
        report = RunReport(run_id="r", started_at="t", cancelled=True, failed=1)
        assert exit_code_for(report) == EXIT_FAILED


class TestSelection:
    """Tests for task selection filters."""

    @pytest.fixture
    def catalog(self):
        return [
            make_task("button--primary"),
            make_task("button--secondary"),
            make_task("forms-input--empty"),
            make_task("forms-input--disabled"),
            make_task("wip-card--draft"),
        ]

    def _select(self, run_config, catalog, **overrides):
        orchestrator = _make_orchestrator(run_config.merged(overrides), catalog)
        return [t.story_id for t in orchestrator.select_tasks(catalog)]

    def test_no_filters(self, run_config, catalog):
        assert len(self._select(run_config, catalog)) == 5

    def test_grep_is_case_insensitive_regex(self, run_config, catalog):
        assert self._select(run_config, catalog, grep="^BUTTON--") == ["button--primary", "button--secondary"]

    def test_include_substring(self, run_config, catalog):
        assert self._select(run_config, catalog, include=["forms"]) == ["forms-input--empty", "forms-input--disabled"]

    def test_include_matches_title(self, run_config, catalog):
        # make_task titles "button--primary" as "Button"
        assert self._select(run_config, catalog, include=["Button"]) == ["button--primary", "button--secondary"]

    def test_exclude_wildcard(self, run_config, catalog):
        assert self._select(run_config, catalog, exclude=["wip-*"]) == [
            "button--primary", "button--secondary", "forms-input--empty", "forms-input--disabled",
        ]

    def test_filters_combine(self, run_config, catalog):
        assert self._select(run_config, catalog, include=["forms", "button"], exclude=["disabled", "secondary"]) == [
            "button--primary", "forms-input--empty",
        ]

    def test_failed_only(self, run_config, catalog):
        orchestrator = _make_orchestrator(run_config.merged({"failed_only": True}), catalog)
        orchestrator.results.record_outcome(catalog[2], TestOutcome(status="failed"))
        orchestrator.results.record_outcome(catalog[0], TestOutcome(status="passed"))
        assert [t.story_id for t in orchestrator.select_tasks(catalog)] == ["forms-input--empty"]

    def test_missing_only(self, run_config, catalog):
        orchestrator = _make_orchestrator(run_config.merged({"missing_only": True}), catalog)
        for task in catalog[:3]:
            write_png(orchestrator.snapshots.snapshot_path(task.key))
        assert [t.story_id for t in orchestrator.select_tasks(catalog)] == [
            "forms-input--disabled", "wip-card--draft",
        ]


class TestDiscovery:
    """Tests for the discovery stage."""

    @pytest.mark.asyncio
    async def test_failure_names_source(self, run_config):
        orchestrator = _make_orchestrator(run_config, discovery_error=RuntimeError("HTTP 404 for /index.json"))
        with pytest.raises(DiscoveryError) as exc_info:
            await orchestrator.discover()
        assert exc_info.value.source == "fake catalog"
        assert "fake catalog" in str(exc_info.value)
        assert "HTTP 404" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_discovery_error_not_rewrapped(self, run_config):
        original = DiscoveryError("elsewhere", "down")
        orchestrator = _make_orchestrator(run_config, discovery_error=original)
        with pytest.raises(DiscoveryError) as exc_info:
            await orchestrator.discover()
        assert exc_info.value is original

    @pytest.mark.asyncio
    async def test_colliding_story_ids_rejected(self, run_config):
        orchestrator = _make_orchestrator(run_config, [make_task("card--a:b"), make_task("card--a b")])
        with pytest.raises(DiscoveryError, match="would share the image card/card-a-b__chromium__desktop.png"):
            await orchestrator.discover()

    @pytest.mark.asyncio
    async def test_plan_writes_manifest(self, run_config, tasks):
        orchestrator = _make_orchestrator(run_config.merged({"grep": "story-[12]"}), tasks)
        manifest = await orchestrator.plan()

        stored = read_manifest(run_config.manifest_path)
        assert stored.run_id == manifest.run_id
        assert [t.story_id for t in stored.tasks] == ["story-1--default", "story-2--default"]
        assert stored.config.grep == "story-[12]"


class TestRun:
    """Tests for full runs against fake collaborators."""

    @pytest.mark.asyncio
    async def test_all_passed(self, run_config, tasks):
        orchestrator = _make_orchestrator(run_config, tasks)
        report = await orchestrator.arun()

        assert report.total == 5
        assert report.passed == 5
        assert report.exit_code == EXIT_OK
        assert orchestrator.capture.started and orchestrator.capture.closed
        assert not orchestrator.running

    @pytest.mark.asyncio
    async def test_results_indexed(self, run_config, tasks):
        orchestrator = _make_orchestrator(run_config, tasks, statuses={"story-2--default": "failed"})
        report = await orchestrator.arun()

        assert report.failed == 1
        assert report.exit_code == EXIT_FAILED
        assert orchestrator.results.failed_keys() == {tasks[1].key}
        assert len(orchestrator.results.entries()) == 5

    @pytest.mark.asyncio
    async def test_new_baselines_recorded(self, run_config, tasks):
        orchestrator = _make_orchestrator(run_config, tasks[:2], statuses={t.story_id: "new" for t in tasks})
        report = await orchestrator.arun()

        assert report.new == 2
        assert report.exit_code == EXIT_OK
        assert {e.story_id for e in orchestrator.snapshots.entries()} == {"story-1--default", "story-2--default"}

    @pytest.mark.asyncio
    async def test_strict_missing_fails(self, run_config, tasks):
        config = run_config.merged({"strict_missing": True})
        orchestrator = _make_orchestrator(config, tasks[:1], statuses={tasks[0].story_id: "missing"})
        report = await orchestrator.arun()
        assert report.missing == 1
        assert report.exit_code == EXIT_FAILED
        assert orchestrator.snapshots.entries() == []

    @pytest.mark.asyncio
    async def test_max_failures_stops_run(self, run_config, tasks):
        config = run_config.merged({"workers": 1, "max_failures": 2})
        statuses = {"story-1--default": "failed", "story-3--default": "failed"}
        orchestrator = _make_orchestrator(config, tasks, statuses=statuses)
        report = await orchestrator.arun()

        assert report.max_failures_reached
        assert report.exit_code == EXIT_FAILED
        assert report.not_run == [
            "story-4--default::browser:chromium::viewport:desktop",
            "story-5--default::browser:chromium::viewport:desktop",
        ]

    @pytest.mark.asyncio
    async def test_cancel_mid_run(self, run_config, tasks):
        orchestrator = _make_orchestrator(run_config, tasks, delay=0.05)
        run = asyncio.create_task(orchestrator.arun())
        await asyncio.sleep(0.02)
        assert orchestrator.running
        assert orchestrator.cancel()
        report = await run

        assert report.cancelled
        assert report.exit_code == EXIT_CANCELLED
        assert report.passed == 2
        assert len(report.not_run) == 3

    def test_cancel_when_idle(self, run_config):
        orchestrator = _make_orchestrator(run_config)
        assert orchestrator.cancel() is False
        assert orchestrator.progress() is None

    @pytest.mark.asyncio
    async def test_run_from_manifest_skips_discovery(self, run_config, tasks):
        planner = _make_orchestrator(run_config, tasks)
        manifest = await planner.plan()

        orchestrator = _make_orchestrator(run_config, [])
        report = await orchestrator.arun(manifest)
        assert orchestrator.discovery.calls == 0
        assert report.run_id == manifest.run_id
        assert report.total == 5

    @pytest.mark.asyncio
    async def test_indexes_compacted_after_run(self, run_config, tasks):
        for _ in range(3):
            await _make_orchestrator(run_config, tasks).arun()
        results_log = run_config.results_dir / "index.jsonl"
        assert len(results_log.read_text().splitlines()) == 5

    @pytest.mark.asyncio
    async def test_compaction_skipped_while_another_run_holds_log(self, run_config, tasks):
        results_log = run_config.results_dir / "index.jsonl"
        with JsonlIndex(results_log, ResultEntry).session():
            for _ in range(2):
                report = await _make_orchestrator(run_config, tasks).arun()
                assert report.exit_code == EXIT_OK
        assert len(results_log.read_text().splitlines()) == 10

    @pytest.mark.asyncio
    async def test_json_report_written(self, run_config, tasks):
        orchestrator = _make_orchestrator(run_config, tasks[:2], statuses={"story-1--default": "failed"})
        report = await orchestrator.arun()

        path = run_config.reports_dir / f"report_{report.run_id}.json"
        data = json.loads(path.read_text())
        assert data["failed"] == 1
        assert data["failures"][0]["story_id"] == "story-1--default"

    @pytest.mark.asyncio
    async def test_listener_receives_events(self, run_config, tasks):
        seen = []

        class Collector(RunListener):
            def on_story_complete(self, task, outcome):
                seen.append(task.story_id)

        await _make_orchestrator(run_config, tasks, listener=Collector()).arun()
        assert sorted(seen) == [t.story_id for t in tasks]

    def test_sync_run(self, run_config, tasks):
        report = _make_orchestrator(run_config, tasks[:1]).run()
        assert report.passed == 1
