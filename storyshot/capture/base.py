"""Capture collaborator contracts: story discovery and per-task capture."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Iterable, Optional

from pydantic import BaseModel

from storyshot.index.paths import artifact_rel_path
from storyshot.models.config import RunConfig
from storyshot.models.task import TestOutcome, TestTask


class StoryEntry(BaseModel):
    """One renderable story variant as reported by the catalog."""

    id: str
    title: str = ""
    name: str = ""
    url: Optional[str] = None


class DiscoveryProvider(ABC):
    """Lists the stories to test. ``source`` names where they come from."""

    source: str = "discovery"

    @abstractmethod
    async def discover(self) -> list[TestTask]:
        ...


class CaptureProvider(ABC):
    """Renders one task, compares it with its baseline and returns the outcome.

    Raising signals a transport failure (navigation, browser crash); a
    returned ``failed`` outcome signals a comparison mismatch.
    """

    async def start(self) -> None:
        pass

    async def close(self) -> None:
        pass

    @abstractmethod
    async def capture(self, task: TestTask) -> TestOutcome:
        ...

    async def __aenter__(self) -> "CaptureProvider":
        await self.start()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()


def expand_tasks(stories: Iterable[StoryEntry], config: RunConfig) -> list[TestTask]:
    """One task per (story, browser, viewport), in catalog order."""
    tasks = []
    for story in stories:
        for browser in config.browsers:
            for viewport in config.viewports:
                tasks.append(
                    TestTask(
                        story_id=story.id,
                        title=story.title,
                        name=story.name,
                        browser=browser,
                        viewport_name=viewport.name,
                        viewport_width=viewport.width,
                        viewport_height=viewport.height,
                        artifact_rel_path=artifact_rel_path(story.id, browser, viewport.name),
                        url=story.url,
                    )
                )
    return tasks
