"""Default capture collaborator: Storybook index discovery and Playwright screenshots."""

from __future__ import annotations

import asyncio
import logging
import shutil
import time
from pathlib import Path
from typing import Any
from urllib.parse import quote

from playwright.async_api import Browser, Playwright, async_playwright
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from storyshot.errors import TaskError
from storyshot.index.results import ResultsIndexManager
from storyshot.index.snapshots import SnapshotIndexManager
from storyshot.models.config import RunConfig
from storyshot.models.task import TestOutcome, TestTask

from .base import CaptureProvider, DiscoveryProvider, StoryEntry, expand_tasks
from .image_compare import compare_images

logger = logging.getLogger(__name__)

INDEX_PATHS = ("index.json", "stories.json")
FETCH_TIMEOUT_MS = 15000
NETWORK_IDLE_TIMEOUT_MS = 3000


def story_url(base_url: str, story_id: str) -> str:
    return f"{base_url.rstrip('/')}/iframe.html?id={quote(story_id)}&viewMode=story"


def parse_story_index(data: dict[str, Any], base_url: str) -> list[StoryEntry]:
    """Extract story entries from a Storybook ``index.json`` (v4+) or ``stories.json`` (v3)."""
    raw = data.get("entries") or data.get("stories") or {}
    stories = []
    for story_id, entry in raw.items():
        if entry.get("type", "story") != "story":
            continue
        sid = entry.get("id", story_id)
        stories.append(
            StoryEntry(
                id=sid,
                title=entry.get("title", entry.get("kind", "")),
                name=entry.get("name", entry.get("story", "")),
                url=story_url(base_url, sid),
            )
        )
    return stories


class StorybookDiscovery(DiscoveryProvider):
    """Reads the running Storybook's story index."""

    def __init__(self, config: RunConfig):
        self.config = config
        self.source = f"storybook at {config.url}"

    async def discover(self) -> list[TestTask]:
        data = await self._fetch_index()
        stories = parse_story_index(data, self.config.url)
        tasks = expand_tasks(stories, self.config)
        logger.info("Discovered %d stories (%d tasks)", len(stories), len(tasks))
        return tasks

    async def _fetch_index(self) -> dict[str, Any]:
        base = self.config.url.rstrip("/")
        last_error = "no index found"
        async with async_playwright() as p:
            request = await p.request.new_context()
            try:
                for path in INDEX_PATHS:
                    url = f"{base}/{path}"
                    logger.debug("Fetching story index %s", url)
                    response = await request.get(url, timeout=FETCH_TIMEOUT_MS)
                    if response.ok:
                        return await response.json()
                    last_error = f"HTTP {response.status} for {url}"
            finally:
                await request.dispose()
        raise RuntimeError(last_error)


class StorybookCapture(CaptureProvider):
    """Screenshots each story iframe and compares it with its baseline.

    One browser per engine is launched lazily and shared; every task gets
    its own context sized to the task viewport.
    """

    def __init__(self, config: RunConfig, snapshots: SnapshotIndexManager, results: ResultsIndexManager):
        self.config = config
        self.snapshots = snapshots
        self.results = results
        self._playwright: Playwright | None = None
        self._browsers: dict[str, Browser] = {}
        self._launch_lock = asyncio.Lock()

    async def start(self) -> None:
        if self._playwright is None:
            self._playwright = await async_playwright().start()

    async def close(self) -> None:
        for name, browser in self._browsers.items():
            try:
                await browser.close()
            except PlaywrightError as e:
                logger.debug("Closing %s failed: %s", name, e)
        self._browsers.clear()
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None

    async def _browser(self, name: str) -> Browser:
        async with self._launch_lock:
            await self.start()
            if name not in self._browsers:
                logger.debug("Launching %s", name)
                launcher = getattr(self._playwright, name)
                self._browsers[name] = await launcher.launch(headless=True)
            return self._browsers[name]

    async def _screenshot(self, task: TestTask, path: Path) -> None:
        browser = await self._browser(task.browser)
        context = await browser.new_context(
            viewport={"width": task.viewport_width, "height": task.viewport_height},
            reduced_motion="reduce",
        )
        try:
            page = await context.new_page()
            url = task.url or story_url(self.config.url, task.story_id)
            try:
                response = await page.goto(url, wait_until="load", timeout=self.config.test_timeout_ms)
            except PlaywrightError as e:
                raise TaskError(f"Navigation failed for {task.story_id}: {e}") from e
            if response is not None and not response.ok:
                raise TaskError(f"HTTP {response.status} loading {url}")

            try:
                await page.wait_for_load_state("networkidle", timeout=NETWORK_IDLE_TIMEOUT_MS)
            except PlaywrightTimeoutError:
                pass
            if self.config.snapshot_delay_ms:
                await page.wait_for_timeout(self.config.snapshot_delay_ms)

            path.parent.mkdir(parents=True, exist_ok=True)
            try:
                await page.screenshot(path=str(path), full_page=self.config.full_page, animations="disabled")
            except PlaywrightError as e:
                raise TaskError(f"Screenshot failed for {task.story_id}: {e}") from e
        finally:
            await context.close()

    async def capture(self, task: TestTask) -> TestOutcome:
        start = time.time()
        actual = self.results.result_path(task.key, "actual")
        diff = self.results.result_path(task.key, "diff")
        baseline = self.snapshots.snapshot_path(task.key)

        await self._screenshot(task, actual)
        paths = {"expected": str(baseline), "actual": str(actual)}

        def elapsed() -> int:
            return int((time.time() - start) * 1000)

        if not baseline.exists():
            if self.config.strict_missing and not self.config.update:
                return TestOutcome(
                    status="missing",
                    duration_ms=elapsed(),
                    artifact_paths={"actual": str(actual)},
                    error="Baseline snapshot missing",
                    error_type="other_error",
                )
            baseline.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(actual, baseline)
            logger.debug("New baseline %s", baseline)
            return TestOutcome(status="new", duration_ms=elapsed(), artifact_paths=paths)

        if self.config.update:
            shutil.copy2(actual, baseline)
            diff.unlink(missing_ok=True)
            return TestOutcome(status="passed", duration_ms=elapsed(), artifact_paths=paths)

        try:
            result = await asyncio.to_thread(
                compare_images,
                baseline,
                actual,
                diff,
                self.config.threshold,
                self.config.max_diff_pixels,
            )
        except OSError as e:
            raise TaskError(f"Cannot compare {task.story_id} with {baseline}: {e}", kind=TaskError.MISMATCH) from e
        if result.match:
            diff.unlink(missing_ok=True)
            return TestOutcome(
                status="passed",
                diff_pixels=result.diff_pixels,
                diff_percent=result.diff_percent,
                duration_ms=elapsed(),
                artifact_paths=paths,
            )
        return TestOutcome(
            status="failed",
            diff_pixels=result.diff_pixels,
            diff_percent=result.diff_percent,
            duration_ms=elapsed(),
            artifact_paths={**paths, "diff": str(diff)},
            error=f"Screenshot mismatch: {result.message}",
            error_type="screenshot_mismatch",
        )
