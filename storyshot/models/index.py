"""Index log record structures."""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel

from storyshot.models.task import CompositeKey, ErrorType, OutcomeStatus


class IndexEntry(BaseModel):
    story_id: str
    browser: str
    viewport_name: str
    snapshot_id: str
    created_at: str  # ISO timestamp
    updated_at: str  # ISO timestamp

    @property
    def key(self) -> CompositeKey:
        return (self.story_id, self.browser, self.viewport_name)


class SnapshotEntry(IndexEntry):
    viewport_width: Optional[int] = None
    viewport_height: Optional[int] = None
    image_hash: Optional[str] = None  # SHA-256 hex digest


class ResultEntry(IndexEntry):
    status: OutcomeStatus
    diff_pixels: Optional[int] = None
    diff_percent: Optional[float] = None
    duration_ms: Optional[int] = None
    error: Optional[str] = None
    error_type: Optional[ErrorType] = None
