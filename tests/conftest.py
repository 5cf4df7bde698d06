"""Pytest configuration and shared fixtures."""

import asyncio
import json
from pathlib import Path

import pytest
from PIL import Image

from storyshot.capture.base import CaptureProvider, DiscoveryProvider
from storyshot.index.paths import artifact_rel_path
from storyshot.models.config import RunConfig, ViewportConfig
from storyshot.models.task import TestOutcome, TestTask


# ============================================================================
# Wire helpers
# ============================================================================


class FakeWriter:
    """Collects bytes written by an RPC endpoint."""

    def __init__(self):
        self.data = b""
        self.flushes = 0

    def write(self, data: bytes) -> None:
        self.data += data

    def flush(self) -> None:
        self.flushes += 1

    @property
    def frames(self) -> list[dict]:
        return [json.loads(line) for line in self.data.splitlines() if line.strip()]

    def clear(self) -> None:
        self.data = b""


@pytest.fixture
def writer() -> FakeWriter:
    return FakeWriter()


def encode_frame(frame: dict) -> bytes:
    return json.dumps(frame).encode() + b"\n"


# ============================================================================
# Configuration Fixtures
# ============================================================================


@pytest.fixture
def run_config(tmp_path: Path) -> RunConfig:
    """A config rooted in a temporary project with a single viewport."""
    return RunConfig(
        url="http://localhost:6006",
        project_root=str(tmp_path),
        viewports=[ViewportConfig(name="desktop", width=1024, height=768)],
        workers=2,
        max_failures=0,
    )


# ============================================================================
# Task Fixtures
# ============================================================================


def make_task(story_id: str = "button--primary", browser: str = "chromium", viewport: str = "desktop") -> TestTask:
    return TestTask(
        story_id=story_id,
        title=story_id.split("--")[0].title(),
        name=story_id.split("--")[-1].title(),
        browser=browser,
        viewport_name=viewport,
        artifact_rel_path=artifact_rel_path(story_id, browser, viewport),
    )


@pytest.fixture
def task() -> TestTask:
    return make_task()


@pytest.fixture
def tasks() -> list[TestTask]:
    return [make_task(f"story-{i}--default") for i in range(1, 6)]


# ============================================================================
# Image Fixtures
# ============================================================================


def write_png(path: Path, size=(20, 10), color=(255, 255, 255, 255)) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    Image.new("RGBA", size, color).save(path)
    return path


# ============================================================================
# Collaborator Fakes
# ============================================================================


class FakeDiscovery(DiscoveryProvider):
    """Returns a fixed task list, or raises ``error``."""

    source = "fake catalog"

    def __init__(self, tasks=None, error: Exception | None = None):
        self.tasks = list(tasks or [])
        self.error = error
        self.calls = 0

    async def discover(self):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return list(self.tasks)


class FakeCapture(CaptureProvider):
    """Scripted capture that writes artifacts the way the real provider does.

    ``statuses`` maps story ids to an outcome status; everything else passes.
    A ``new`` or update-mode outcome writes the baseline image.
    """

    def __init__(self, snapshots=None, statuses=None, delay: float = 0.0, update: bool = False):
        self.snapshots = snapshots
        self.statuses = dict(statuses or {})
        self.delay = delay
        self.update = update
        self.captured: list[str] = []
        self.started = False
        self.closed = False

    async def start(self):
        self.started = True

    async def close(self):
        self.closed = True

    async def capture(self, task):
        self.captured.append(task.story_id)
        if self.delay:
            await asyncio.sleep(self.delay)
        status = self.statuses.get(task.story_id, "passed")
        if self.snapshots is not None and (status == "new" or (self.update and status == "passed")):
            write_png(self.snapshots.snapshot_path(task.key))
        if status == "failed":
            return TestOutcome(
                status="failed",
                diff_pixels=12,
                diff_percent=6.0,
                error="Screenshot mismatch",
                error_type="screenshot_mismatch",
            )
        return TestOutcome(status=status, duration_ms=5)
