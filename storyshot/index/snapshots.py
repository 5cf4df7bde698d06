"""Snapshot index: approved baseline images and their log."""

from __future__ import annotations

import hashlib
import logging
import shutil
from pathlib import Path
from typing import Iterable, Optional

from storyshot.models.index import SnapshotEntry
from storyshot.models.task import CompositeKey, TestTask

from .paths import artifact_rel_path, snapshot_id
from .store import JsonlIndex, utc_now

logger = logging.getLogger(__name__)

INDEX_FILENAME = "index.jsonl"


class SnapshotIndexManager:
    """Manages baseline images under ``snapshots_dir`` and their index log."""

    def __init__(self, snapshots_dir: Path):
        self.snapshots_dir = Path(snapshots_dir)
        self.index: JsonlIndex[SnapshotEntry] = JsonlIndex(self.snapshots_dir / INDEX_FILENAME, SnapshotEntry)

    def snapshot_path(self, key: CompositeKey) -> Path:
        return self.snapshots_dir / artifact_rel_path(*key)

    def has_baseline(self, key: CompositeKey) -> bool:
        return self.snapshot_path(key).exists()

    def get_entry(self, key: CompositeKey) -> Optional[SnapshotEntry]:
        return self.index.get(key)

    def entries(self) -> list[SnapshotEntry]:
        return self.index.all_entries()

    def record_baseline(self, task: TestTask, source_image_path: Path | None = None) -> SnapshotEntry:
        """Register the baseline for ``task``, copying it into place if needed.

        ``created_at`` is kept from the previous entry for the same key.
        """
        dest = self.snapshot_path(task.key)
        if source_image_path is not None and Path(source_image_path).resolve() != dest.resolve():
            dest.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(source_image_path, dest)
        if not dest.exists():
            raise FileNotFoundError(f"Baseline image not found: {dest}")

        image_hash = hashlib.sha256(dest.read_bytes()).hexdigest()
        now = utc_now()
        previous = self.index.get(task.key)
        entry = SnapshotEntry(
            story_id=task.story_id,
            browser=task.browser,
            viewport_name=task.viewport_name,
            snapshot_id=snapshot_id(task.key),
            created_at=previous.created_at if previous else now,
            updated_at=now,
            viewport_width=task.viewport_width,
            viewport_height=task.viewport_height,
            image_hash=image_hash,
        )
        self.index.append(entry)
        logger.info("Stored baseline for %s", task.display_name)
        return entry

    def prune_stale(self, discovered_keys: Iterable[CompositeKey]) -> int:
        """Delete baselines for keys that discovery no longer reports.

        Their records are dropped by compaction; returns the number removed.
        """
        live = set(discovered_keys)
        stale = [e for e in self.index.all_entries() if e.key not in live]
        for entry in stale:
            path = self.snapshot_path(entry.key)
            if path.exists():
                path.unlink()
                logger.debug("Removed stale baseline %s", path)
        if stale:
            self.index.compact(keep=lambda e: e.key in live)
            logger.info("Pruned %d stale baseline(s)", len(stale))
        return len(stale)
