"""Tests for Storybook discovery parsing and the screenshot capture flow."""

from unittest.mock import AsyncMock

import pytest

from conftest import write_png
from storyshot.capture.base import StoryEntry, expand_tasks
from storyshot.capture.storybook import StorybookCapture, parse_story_index, story_url
from storyshot.errors import TaskError
from storyshot.index.results import ResultsIndexManager
from storyshot.index.snapshots import SnapshotIndexManager
from storyshot.models.config import RunConfig, ViewportConfig


BASE_URL = "http://localhost:6006"


class TestParseStoryIndex:
    """Tests for parse_story_index."""

    def test_v7_index(self):
        data = {
            "v": 4,
            "entries": {
                "button--primary": {"id": "button--primary", "title": "Button", "name": "Primary", "type": "story"},
                "button--docs": {"id": "button--docs", "title": "Button", "name": "Docs", "type": "docs"},
            },
        }
        stories = parse_story_index(data, BASE_URL)
        assert [s.id for s in stories] == ["button--primary"]
        assert stories[0].title == "Button"
        assert stories[0].url == f"{BASE_URL}/iframe.html?id=button--primary&viewMode=story"

    def test_v6_stories_json(self):
        data = {"v": 3, "stories": {"forms-input--empty": {"kind": "Forms/Input", "story": "Empty"}}}
        [story] = parse_story_index(data, BASE_URL)
        assert story.id == "forms-input--empty"
        assert story.title == "Forms/Input"
        assert story.name == "Empty"

    def test_empty_index(self):
        assert parse_story_index({}, BASE_URL) == []

    def test_story_url_quotes_id(self):
        assert story_url(BASE_URL + "/", "a b") == f"{BASE_URL}/iframe.html?id=a%20b&viewMode=story"


class TestExpandTasks:
    """Tests for expand_tasks."""

    def test_cartesian_product_in_order(self):
        config = RunConfig(
            browsers=["chromium", "firefox"],
            viewports=[ViewportConfig(name="mobile", width=375, height=667), ViewportConfig(name="desktop")],
        )
        stories = [StoryEntry(id="a--one"), StoryEntry(id="b--two")]
        tasks = expand_tasks(stories, config)

        assert len(tasks) == 8
        assert [t.key for t in tasks[:4]] == [
            ("a--one", "chromium", "mobile"),
            ("a--one", "chromium", "desktop"),
            ("a--one", "firefox", "mobile"),
            ("a--one", "firefox", "desktop"),
        ]
        assert tasks[0].viewport_width == 375
        assert tasks[0].artifact_rel_path == "a/a-one__chromium__mobile.png"


@pytest.fixture
def capture(run_config):
    provider = StorybookCapture(
        run_config,
        SnapshotIndexManager(run_config.snapshot_dir),
        ResultsIndexManager(run_config.results_dir),
    )
    return provider


def _screenshot_writing(color=(255, 255, 255, 255)) -> AsyncMock:
    async def fake(task, path):
        write_png(path, color=color)

    return AsyncMock(side_effect=fake)


class TestStorybookCapture:
    """Tests for StorybookCapture.capture with the browser stubbed out."""

    @pytest.mark.asyncio
    async def test_missing_baseline_becomes_new(self, capture, task):
        capture._screenshot = _screenshot_writing()
        outcome = await capture.capture(task)

        assert outcome.status == "new"
        assert capture.snapshots.has_baseline(task.key)
        assert set(outcome.artifact_paths) == {"expected", "actual"}

    @pytest.mark.asyncio
    async def test_strict_missing(self, capture, task):
        capture.config = capture.config.merged({"strict_missing": True})
        capture._screenshot = _screenshot_writing()
        outcome = await capture.capture(task)

        assert outcome.status == "missing"
        assert not capture.snapshots.has_baseline(task.key)
        assert outcome.error == "Baseline snapshot missing"

    @pytest.mark.asyncio
    async def test_matching_screenshot_passes(self, capture, task):
        write_png(capture.snapshots.snapshot_path(task.key))
        capture._screenshot = _screenshot_writing()
        outcome = await capture.capture(task)

        assert outcome.status == "passed"
        assert outcome.diff_pixels == 0
        assert not capture.results.result_path(task.key, "diff").exists()

    @pytest.mark.asyncio
    async def test_mismatch_fails_with_diff(self, capture, task):
        write_png(capture.snapshots.snapshot_path(task.key))
        capture._screenshot = _screenshot_writing(color=(0, 0, 0, 255))
        outcome = await capture.capture(task)

        assert outcome.status == "failed"
        assert outcome.error_type == "screenshot_mismatch"
        assert outcome.diff_percent == 100.0
        assert capture.results.result_path(task.key, "diff").exists()
        assert outcome.artifact_paths["diff"] == str(capture.results.result_path(task.key, "diff"))

    @pytest.mark.asyncio
    async def test_update_mode_replaces_baseline(self, capture, task):
        baseline = write_png(capture.snapshots.snapshot_path(task.key))
        capture.config = capture.config.merged({"update": True})
        capture._screenshot = _screenshot_writing(color=(0, 0, 0, 255))
        outcome = await capture.capture(task)

        assert outcome.status == "passed"
        actual = capture.results.result_path(task.key, "actual")
        assert baseline.read_bytes() == actual.read_bytes()

    @pytest.mark.asyncio
    async def test_previous_diff_removed_on_pass(self, capture, task):
        write_png(capture.snapshots.snapshot_path(task.key))
        stale_diff = write_png(capture.results.result_path(task.key, "diff"))
        capture._screenshot = _screenshot_writing()
        await capture.capture(task)
        assert not stale_diff.exists()

    @pytest.mark.asyncio
    async def test_screenshot_error_propagates(self, capture, task):
        capture._screenshot = AsyncMock(side_effect=TaskError("Navigation failed for button--primary"))
        with pytest.raises(TaskError):
            await capture.capture(task)
        assert not capture.snapshots.has_baseline(task.key)

    @pytest.mark.asyncio
    async def test_unreadable_baseline_is_mismatch_error(self, capture, task):
        baseline = capture.snapshots.snapshot_path(task.key)
        baseline.parent.mkdir(parents=True, exist_ok=True)
        baseline.write_bytes(b"not a png")
        capture._screenshot = _screenshot_writing()

        with pytest.raises(TaskError) as exc_info:
            await capture.capture(task)
        assert exc_info.value.kind == TaskError.MISMATCH

    @pytest.mark.asyncio
    async def test_close_without_start(self, capture):
        await capture.close()
