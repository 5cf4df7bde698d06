"""Run orchestrator: coordinates discover, select, run, index and report stages."""

from __future__ import annotations

import asyncio
import fnmatch
import logging
import re
import time
from typing import Optional

from storyshot.capture.base import CaptureProvider, DiscoveryProvider
from storyshot.errors import DiscoveryError, IndexLocked
from storyshot.executor.pool import PoolResult, RunListener, TaskPool
from storyshot.index.paths import artifact_collisions, key_string
from storyshot.index.results import ResultsIndexManager
from storyshot.index.snapshots import SnapshotIndexManager
from storyshot.manifest import RunManifest, write_manifest
from storyshot.models.config import RunConfig
from storyshot.models.task import RunReport, TestOutcome, TestTask
from storyshot.reporter.json_report import write_json_report

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CANCELLED = 130


def exit_code_for(report: RunReport, strict_missing: bool = False) -> int:
    if report.failed or report.max_failures_reached:
        return EXIT_FAILED
    if strict_missing and report.missing:
        return EXIT_FAILED
    if report.cancelled:
        return EXIT_CANCELLED
    return EXIT_OK


def _matches(patterns: list[str], haystack: str) -> bool:
    for pattern in patterns:
        pattern = pattern.lower()
        if any(c in pattern for c in "*?["):
            if fnmatch.fnmatch(haystack, f"*{pattern}*"):
                return True
        elif pattern in haystack:
            return True
    return False


class Orchestrator:
    """Coordinates one visual regression run.

    The capture collaborator is driven in-process; :class:`storyshot.bridge.WorkerBridge`
    drives the same pipeline inside a supervised worker.
    """

    def __init__(
        self,
        config: RunConfig,
        discovery: DiscoveryProvider | None = None,
        capture: CaptureProvider | None = None,
        listener: RunListener | None = None,
    ):
        self.config = config
        self.snapshots = SnapshotIndexManager(config.snapshot_dir)
        self.results = ResultsIndexManager(config.results_dir)
        if discovery is None or capture is None:
            from storyshot.capture.storybook import StorybookCapture, StorybookDiscovery

            discovery = discovery or StorybookDiscovery(config)
            capture = capture or StorybookCapture(config, self.snapshots, self.results)
        self.discovery = discovery
        self.capture = capture
        self.listener = listener or RunListener()
        self._pool: Optional[TaskPool] = None
        self._active = False
        self._cancel_requested = False

    @property
    def running(self) -> bool:
        return self._active

    def cancel(self) -> bool:
        """Stop dequeuing tasks; returns False when no run is active."""
        if not self._active:
            return False
        self._cancel_requested = True
        if self._pool is not None:
            self._pool.cancel()
        return True

    def progress(self):
        return self._pool.progress() if self._pool else None

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    async def discover(self) -> list[TestTask]:
        source = getattr(self.discovery, "source", type(self.discovery).__name__)
        logger.debug("Discovering stories from %s", source)
        try:
            tasks = await self.discovery.discover()
        except DiscoveryError:
            raise
        except Exception as e:
            logger.error("Discovery failed: %s", e)
            raise DiscoveryError(source, str(e) or type(e).__name__) from e

        collisions = artifact_collisions(t.key for t in tasks)
        if collisions:
            first, second, path = collisions[0]
            raise DiscoveryError(
                source,
                f"stories '{first[0]}' and '{second[0]}' would share the image {path}",
            )
        return tasks

    def select_tasks(self, tasks: list[TestTask]) -> list[TestTask]:
        cfg = self.config
        selected = tasks
        if cfg.grep:
            grep = re.compile(cfg.grep, re.IGNORECASE)
            selected = [t for t in selected if grep.search(t.story_id)]
        if cfg.include:
            selected = [t for t in selected if _matches(cfg.include, self._haystack(t))]
        if cfg.exclude:
            selected = [t for t in selected if not _matches(cfg.exclude, self._haystack(t))]
        if cfg.failed_only:
            failed = self.results.failed_keys()
            selected = [t for t in selected if t.key in failed]
        if cfg.missing_only:
            selected = [t for t in selected if not self.snapshots.has_baseline(t.key)]

        logger.info("Selected %d of %d tasks", len(selected), len(tasks))
        return selected

    @staticmethod
    def _haystack(task: TestTask) -> str:
        return f"{task.story_id} {task.title} {task.name}".lower()

    async def plan(self) -> RunManifest:
        """Discover, select and persist the run manifest."""
        tasks = self.select_tasks(await self.discover())
        manifest = RunManifest(config=self.config, tasks=tasks)
        write_manifest(manifest, self.config.manifest_path)
        return manifest

    async def arun(self, manifest: RunManifest | None = None) -> RunReport:
        start = time.time()
        self._active = True
        try:
            if manifest is None:
                manifest = await self.plan()
            return await self._execute(manifest, start)
        finally:
            self._active = False
            self._cancel_requested = False

    async def _execute(self, manifest: RunManifest, start: float) -> RunReport:
        logger.info("=== Starting run %s (%d tasks) ===", manifest.run_id, len(manifest.tasks))
        started_at = time.strftime("%Y-%m-%dT%H:%M:%SZ")

        pool = TaskPool(
            self.capture.capture,
            workers=self.config.workers,
            max_failures=self.config.max_failures,
            retries=self.config.retries,
            mismatch_retries=self.config.mismatch_retries,
            listener=self.listener,
            on_outcome=self._record_outcome,
        )
        self._pool = pool
        if self._cancel_requested:
            pool.cancel()
        try:
            with self.snapshots.index.session(), self.results.index.session():
                async with self.capture:
                    result = await pool.run(manifest.tasks)
        finally:
            self._pool = None

        await asyncio.to_thread(self._compact)
        report = self._build_report(manifest, started_at, result)
        report.duration_ms = int((time.time() - start) * 1000)
        path = write_json_report(report, self.config.reports_dir)
        logger.info("JSON report: %s", path)
        logger.info(
            "=== Run complete: %d passed, %d failed, %d new, %d missing, %d not run (%.1fs) ===",
            report.passed, report.failed, report.new, report.missing, len(report.not_run),
            time.time() - start,
        )
        return report

    def run(self, manifest: RunManifest | None = None) -> RunReport:
        return asyncio.run(self.arun(manifest))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _record_outcome(self, task: TestTask, outcome: TestOutcome) -> None:
        await asyncio.to_thread(self._append_indexes, task, outcome)

    def _append_indexes(self, task: TestTask, outcome: TestOutcome) -> None:
        self.results.record_outcome(task, outcome)
        if outcome.status == "new" or (self.config.update and outcome.status == "passed"):
            if self.snapshots.has_baseline(task.key):
                self.snapshots.record_baseline(task)
            else:
                logger.warning("No baseline image written for %s", task.display_name)

    def _compact(self) -> None:
        removed = 0
        for index in (self.results.index, self.snapshots.index):
            try:
                removed += index.compact()
            except IndexLocked as e:
                # Another process is still running against the same output root
                logger.info("Skipping compaction: %s", e)
        logger.debug("Compaction removed %d superseded record(s)", removed)

    def _build_report(self, manifest: RunManifest, started_at: str, result: PoolResult) -> RunReport:
        report = RunReport(
            run_id=manifest.run_id,
            started_at=started_at,
            completed_at=time.strftime("%Y-%m-%dT%H:%M:%SZ"),
            total=len(manifest.tasks),
            passed=result.count("passed"),
            failed=result.count("failed"),
            new=result.count("new"),
            missing=result.count("missing"),
            not_run=[key_string(t.key) for t in result.not_run],
            cancelled=result.cancelled,
            max_failures_reached=result.max_failures_reached,
            records=result.records,
        )
        report.exit_code = exit_code_for(report, self.config.strict_missing)
        return report
