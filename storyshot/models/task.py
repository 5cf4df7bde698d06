"""Task, outcome and run report data structures."""

from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

OutcomeStatus = Literal["passed", "failed", "new", "missing"]
ErrorType = Literal["screenshot_mismatch", "loading_failure", "network_error", "other_error"]

CompositeKey = tuple[str, str, str]


class TestTask(BaseModel):
    """One (story, browser, viewport) comparison, produced by discovery."""

    __test__ = False  # not a pytest class
    model_config = ConfigDict(frozen=True)

    story_id: str
    title: str = ""
    name: str = ""
    browser: str = "chromium"
    viewport_name: str = "desktop"
    viewport_width: int = 1024
    viewport_height: int = 768
    artifact_rel_path: str
    url: Optional[str] = None

    @property
    def key(self) -> CompositeKey:
        return (self.story_id, self.browser, self.viewport_name)

    @property
    def display_name(self) -> str:
        label = f"{self.title} / {self.name}" if self.title and self.name else self.story_id
        return f"{label} [{self.browser}, {self.viewport_name}]"


class TestOutcome(BaseModel):
    """Final result of one task in one run."""

    __test__ = False

    status: OutcomeStatus
    diff_pixels: Optional[int] = None
    diff_percent: Optional[float] = None
    duration_ms: int = 0
    artifact_paths: dict[str, str] = Field(default_factory=dict)  # expected/actual/diff
    error: Optional[str] = None
    error_type: Optional[ErrorType] = None
    attempts: int = 1

    @property
    def failed(self) -> bool:
        return self.status == "failed"


class TaskRecord(BaseModel):
    """A task paired with its outcome, as reported over the wire."""

    story_id: str
    browser: str
    viewport_name: str
    story_name: str = ""
    outcome: TestOutcome


class ProgressInfo(BaseModel):
    running: bool = True
    completed: int = 0
    total: int = 0
    passed: int = 0
    failed: int = 0
    new: int = 0
    missing: int = 0
    current_story: Optional[str] = None
    elapsed_ms: int = 0


class RunReport(BaseModel):
    run_id: str
    started_at: str
    completed_at: str = ""
    total: int = 0
    passed: int = 0
    failed: int = 0
    new: int = 0
    missing: int = 0
    not_run: list[str] = Field(default_factory=list)  # key strings of tasks never dequeued
    cancelled: bool = False
    max_failures_reached: bool = False
    duration_ms: int = 0
    exit_code: int = 0
    records: list[TaskRecord] = Field(default_factory=list)


class StoryResult(BaseModel):
    """A results-index entry shaped for the control panel."""

    story_id: str
    story_name: str
    browser: str
    viewport_name: str
    status: str
    duration_ms: Optional[int] = None
    diff_path: Optional[str] = None
    actual_path: Optional[str] = None
    expected_path: Optional[str] = None
    error_type: Optional[ErrorType] = None
    error: Optional[str] = None
    diff_pixels: Optional[int] = None
    diff_percent: Optional[float] = None
