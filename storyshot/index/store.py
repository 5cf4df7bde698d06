"""Append-only NDJSON index log with idempotent compaction."""

from __future__ import annotations

import fcntl
import json
import logging
import os
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Generic, Iterator, Optional, TypeVar

from pydantic import ValidationError

from storyshot.errors import IndexCorruption, IndexLocked
from storyshot.models.index import IndexEntry
from storyshot.models.task import CompositeKey

from .paths import key_string

logger = logging.getLogger(__name__)

E = TypeVar("E", bound=IndexEntry)


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds").replace("+00:00", "Z")


def _parse_ts(value: str) -> datetime:
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return datetime.min.replace(tzinfo=timezone.utc)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class JsonlIndex(Generic[E]):
    """One self-contained JSON record per line, keyed by the composite key.

    Appends are single ``os.write`` calls on an ``O_APPEND`` descriptor, so
    independent writers never interleave partial lines. Readers scan the
    whole log and keep the newest record per key. Only :meth:`compact`
    removes records.

    Writers coordinate through ``flock`` on a sidecar ``<log>.lock`` file:
    appends and run sessions hold it shared, compaction holds it exclusive.
    The lock is per open file, so it separates processes as well as
    sessions within one process.
    """

    def __init__(self, path: Path, model: type[E]):
        self.path = Path(path)
        self.model = model

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------

    @property
    def lock_path(self) -> Path:
        return self.path.with_name(self.path.name + ".lock")

    @contextmanager
    def _locked(self, operation: int) -> Iterator[None]:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.lock_path, os.O_RDWR | os.O_CREAT, 0o644)
        try:
            fcntl.flock(fd, operation)
            yield
        finally:
            # Closing the descriptor releases the lock
            os.close(fd)

    def append(self, entry: E) -> None:
        data = (entry.model_dump_json(exclude_none=True) + "\n").encode("utf-8")
        with self._locked(fcntl.LOCK_SH):
            fd = os.open(self.path, os.O_RDWR | os.O_APPEND | os.O_CREAT, 0o644)
            try:
                size = os.fstat(fd).st_size
                if size and os.pread(fd, 1, size - 1) != b"\n":
                    # A previous writer crashed mid-line; keep our record separate
                    data = b"\n" + data
                written = os.write(fd, data)
            finally:
                os.close(fd)
        if written != len(data):
            raise OSError(f"Short write to {self.path}: {written}/{len(data)} bytes")

    @contextmanager
    def session(self) -> Iterator[None]:
        """Hold the log open for a run; compaction is refused meanwhile.

        Waits while another process is compacting.
        """
        with self._locked(fcntl.LOCK_SH):
            yield

    @property
    def in_session(self) -> bool:
        """True while any process holds the log lock."""
        if not self.lock_path.exists():
            return False
        try:
            with self._locked(fcntl.LOCK_EX | fcntl.LOCK_NB):
                return False
        except BlockingIOError:
            return True

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    def records(self) -> Iterator[E]:
        """Every parseable record in log order."""
        if not self.path.exists():
            return
        with open(self.path, "rb") as f:
            for line_number, raw in enumerate(f, start=1):
                if not raw.strip():
                    continue
                try:
                    yield self.model.model_validate(json.loads(raw.decode("utf-8")))
                except (UnicodeDecodeError, json.JSONDecodeError, ValidationError) as e:
                    problem = IndexCorruption(str(self.path), line_number, type(e).__name__)
                    logger.warning("Skipping invalid index line %s", problem)

    def entries(self) -> dict[CompositeKey, E]:
        """Latest record per key; ties on ``updated_at`` go to the later line."""
        latest: dict[CompositeKey, E] = {}
        for entry in self.records():
            current = latest.get(entry.key)
            if current is None or _parse_ts(entry.updated_at) >= _parse_ts(current.updated_at):
                latest[entry.key] = entry
        return latest

    def get(self, key: CompositeKey) -> Optional[E]:
        return self.entries().get(key)

    def all_entries(self) -> list[E]:
        """Surviving entries sorted by key."""
        return sorted(self.entries().values(), key=lambda e: key_string(e.key))

    # ------------------------------------------------------------------
    # Compaction
    # ------------------------------------------------------------------

    def compact(self, keep: Callable[[E], bool] | None = None) -> int:
        """Rewrite the log with one record per key, sorted by key.

        ``keep`` can drop whole keys (e.g. stories that no longer exist).
        Returns the number of lines removed. Raises IndexLocked when a run
        in any process holds a session on the log.
        """
        if not self.path.exists():
            return 0
        try:
            with self._locked(fcntl.LOCK_EX | fcntl.LOCK_NB):
                return self._rewrite(keep)
        except BlockingIOError:
            raise IndexLocked(f"Cannot compact {self.path} while a run is appending to it") from None

    def _rewrite(self, keep: Callable[[E], bool] | None) -> int:
        with open(self.path, "rb") as f:
            before = sum(1 for raw in f if raw.strip())
        survivors = [e for e in self.all_entries() if keep is None or keep(e)]

        tmp_path = self.path.with_name(self.path.name + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            for entry in survivors:
                f.write(entry.model_dump_json(exclude_none=True) + "\n")
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, self.path)

        removed = before - len(survivors)
        logger.debug("Compacted %s: %d kept, %d removed", self.path, len(survivors), removed)
        return removed
