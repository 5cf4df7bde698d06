"""Results index: the latest outcome per test and its artifacts."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Literal, Optional

from storyshot.models.index import ResultEntry
from storyshot.models.task import CompositeKey, ErrorType, StoryResult, TestOutcome, TestTask

from .paths import artifact_rel_path, diff_rel_path, snapshot_id
from .store import JsonlIndex, utc_now

logger = logging.getLogger(__name__)

INDEX_FILENAME = "index.jsonl"

ArtifactKind = Literal["actual", "diff"]

NETWORK_MARKERS = ("net::", "err_connection", "econnrefused", "enotfound", "network")


def classify_failure(entry: ResultEntry, actual_exists: bool) -> tuple[ErrorType, str]:
    """Derive an error type and message for a failed entry."""
    if entry.diff_pixels is not None or entry.diff_percent is not None:
        return "screenshot_mismatch", (
            f"Screenshot mismatch ({entry.diff_pixels or 0} pixels, {entry.diff_percent or 0:.2f}%)"
        )
    if entry.error and any(m in entry.error.lower() for m in NETWORK_MARKERS):
        return "network_error", entry.error
    if actual_exists:
        return "screenshot_mismatch", "Screenshot mismatch (comparison data unavailable)"
    if entry.error:
        return "loading_failure", entry.error
    return "loading_failure", "Failed to capture screenshot"


class ResultsIndexManager:
    """Manages actual/diff images under ``results_dir`` and their index log."""

    def __init__(self, results_dir: Path):
        self.results_dir = Path(results_dir)
        self.index: JsonlIndex[ResultEntry] = JsonlIndex(self.results_dir / INDEX_FILENAME, ResultEntry)

    def result_path(self, key: CompositeKey, kind: ArtifactKind = "actual") -> Path:
        if kind == "diff":
            return self.results_dir / diff_rel_path(*key)
        return self.results_dir / artifact_rel_path(*key)

    def get_entry(self, key: CompositeKey) -> Optional[ResultEntry]:
        return self.index.get(key)

    def entries(self) -> list[ResultEntry]:
        return self.index.all_entries()

    def record_outcome(self, task: TestTask, outcome: TestOutcome) -> ResultEntry:
        now = utc_now()
        previous = self.index.get(task.key)
        entry = ResultEntry(
            story_id=task.story_id,
            browser=task.browser,
            viewport_name=task.viewport_name,
            snapshot_id=snapshot_id(task.key),
            created_at=previous.created_at if previous else now,
            updated_at=now,
            status=outcome.status,
            diff_pixels=outcome.diff_pixels,
            diff_percent=outcome.diff_percent,
            duration_ms=outcome.duration_ms,
            error=outcome.error,
            error_type=outcome.error_type,
        )
        self.index.append(entry)
        return entry

    def failed_keys(self) -> set[CompositeKey]:
        return {key for key, entry in self.index.entries().items() if entry.status == "failed"}

    def story_results(self, status: str = "failed") -> list[StoryResult]:
        """Entries with ``status`` shaped for the control panel."""
        results = []
        for entry in self.index.all_entries():
            if entry.status != status:
                continue
            actual = self.result_path(entry.key, "actual")
            diff = self.result_path(entry.key, "diff")
            actual_exists = actual.exists()
            error_type, error = entry.error_type, entry.error
            if status == "failed" and (error_type is None or error is None):
                derived_type, derived_error = classify_failure(entry, actual_exists)
                error_type = error_type or derived_type
                error = error or derived_error
            results.append(
                StoryResult(
                    story_id=entry.story_id,
                    story_name=entry.story_id,
                    browser=entry.browser,
                    viewport_name=entry.viewport_name,
                    status=entry.status,
                    duration_ms=entry.duration_ms,
                    diff_path=str(diff) if diff.exists() else None,
                    actual_path=str(actual) if actual_exists else None,
                    error_type=error_type,
                    error=error,
                    diff_pixels=entry.diff_pixels,
                    diff_percent=entry.diff_percent,
                )
            )
        return results
