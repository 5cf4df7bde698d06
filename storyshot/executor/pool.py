"""Bounded task pool with a global fail-fast threshold, retries and cancellation."""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

from storyshot.errors import TaskError
from storyshot.index.results import NETWORK_MARKERS
from storyshot.models.task import ErrorType, ProgressInfo, TaskRecord, TestOutcome, TestTask

logger = logging.getLogger(__name__)

CaptureFn = Callable[[TestTask], Awaitable[TestOutcome]]
OutcomeHook = Callable[[TestTask, TestOutcome], Awaitable[None]]


class RunListener:
    """Receives run events. Every hook is a no-op by default."""

    def on_progress(self, progress: ProgressInfo) -> None:
        pass

    def on_story_start(self, task: TestTask) -> None:
        pass

    def on_story_complete(self, task: TestTask, outcome: TestOutcome) -> None:
        pass

    def on_result(self, record: TaskRecord) -> None:
        pass

    def on_log(self, level: str, message: str) -> None:
        pass


def error_type_for(exc: BaseException) -> ErrorType:
    if _is_mismatch(exc):
        return "screenshot_mismatch"
    text = str(exc).lower()
    if any(marker in text for marker in NETWORK_MARKERS):
        return "network_error"
    if isinstance(exc, (TaskError, TimeoutError)):
        return "loading_failure"
    return "other_error"


def _is_mismatch(exc: BaseException) -> bool:
    return isinstance(exc, TaskError) and exc.kind == TaskError.MISMATCH


def to_record(task: TestTask, outcome: TestOutcome) -> TaskRecord:
    return TaskRecord(
        story_id=task.story_id,
        browser=task.browser,
        viewport_name=task.viewport_name,
        story_name=task.display_name,
        outcome=outcome,
    )


@dataclass
class PoolResult:
    records: list[TaskRecord] = field(default_factory=list)
    not_run: list[TestTask] = field(default_factory=list)
    cancelled: bool = False
    max_failures_reached: bool = False
    duration_ms: int = 0

    def count(self, status: str) -> int:
        return sum(1 for r in self.records if r.outcome.status == status)


class TaskPool:
    """Runs capture tasks with at most ``workers`` in flight.

    Every failed outcome counts towards ``max_failures``. Reaching it, or
    calling :meth:`cancel`, stops dequeuing: in-flight tasks run to
    completion and are recorded, the rest end up in ``PoolResult.not_run``.

    A capture that raises is retried up to ``retries`` times; a capture that
    returns ``failed``, or raises a mismatch :class:`TaskError`, is retried
    up to ``mismatch_retries`` times. Only the final outcome of a task is
    recorded or reported.

    A pool runs once.
    """

    def __init__(
        self,
        capture: CaptureFn,
        workers: int = 4,
        max_failures: Optional[int] = None,
        retries: int = 0,
        mismatch_retries: int = 0,
        listener: RunListener | None = None,
        on_outcome: OutcomeHook | None = None,
    ):
        if workers < 1:
            raise ValueError("workers must be at least 1")
        self.capture = capture
        self.workers = workers
        self.max_failures = max_failures if max_failures and max_failures > 0 else None
        self.retries = retries
        self.mismatch_retries = mismatch_retries
        self.listener = listener or RunListener()
        self.on_outcome = on_outcome

        self._queue: deque[TestTask] = deque()
        self._records: list[TaskRecord] = []
        self._counts = {"passed": 0, "failed": 0, "new": 0, "missing": 0}
        self._total = 0
        self._completed = 0
        self._failures = 0
        self._stopping = False
        self._cancelled = False
        self._threshold_hit = False
        self._current: Optional[str] = None
        self._started = 0.0
        self._fatal: BaseException | None = None

    @property
    def stopping(self) -> bool:
        return self._stopping

    @property
    def failures(self) -> int:
        return self._failures

    def cancel(self) -> None:
        if not self._cancelled:
            logger.info("Cancellation requested, draining in-flight tasks")
            self.listener.on_log("info", "Cancellation requested")
        self._cancelled = True
        self._stopping = True

    def progress(self, running: bool = True) -> ProgressInfo:
        return ProgressInfo(
            running=running,
            completed=self._completed,
            total=self._total,
            current_story=self._current if running else None,
            elapsed_ms=int((time.monotonic() - self._started) * 1000) if self._started else 0,
            **self._counts,
        )

    async def run(self, tasks: list[TestTask]) -> PoolResult:
        self._queue = deque(tasks)
        self._total = len(tasks)
        self._started = time.monotonic()
        logger.info("Running %d tasks with %d workers", len(tasks), min(self.workers, len(tasks)))

        if tasks:
            self.listener.on_progress(self.progress())
            await asyncio.gather(*(self._worker(i) for i in range(min(self.workers, len(tasks)))))

        if self._fatal is not None:
            raise self._fatal

        not_run = list(self._queue)
        self._queue.clear()
        if not_run:
            logger.info("%d task(s) not run", len(not_run))
        self.listener.on_progress(self.progress(running=False))
        return PoolResult(
            records=list(self._records),
            not_run=not_run,
            cancelled=self._cancelled,
            max_failures_reached=self._threshold_hit,
            duration_ms=int((time.monotonic() - self._started) * 1000),
        )

    async def _worker(self, index: int) -> None:
        while True:
            # Check and pop with no await in between
            if self._stopping or not self._queue:
                return
            task = self._queue.popleft()
            self._current = task.display_name
            logger.debug("[worker %d] %s", index, task.display_name)
            self.listener.on_story_start(task)

            outcome = await self._execute(task)
            self._count_failure(outcome)

            if self.on_outcome is not None:
                try:
                    await self.on_outcome(task, outcome)
                except Exception as e:
                    logger.error("Recording outcome for %s failed: %s", task.display_name, e)
                    self._fatal = self._fatal or e
                    self._stopping = True
                    return

            # Only persisted outcomes show up in records and counts
            record = to_record(task, outcome)
            self._records.append(record)
            self._counts[outcome.status] += 1
            self._completed += 1
            self.listener.on_story_complete(task, outcome)
            self.listener.on_result(record)
            self.listener.on_progress(self.progress())

    async def _execute(self, task: TestTask) -> TestOutcome:
        transport_left = self.retries
        mismatch_left = self.mismatch_retries
        attempts = 0
        start = time.monotonic()
        while True:
            attempts += 1
            try:
                outcome = await self.capture(task)
            except Exception as e:
                if _is_mismatch(e):
                    if mismatch_left > 0 and not self._stopping:
                        mismatch_left -= 1
                        logger.info("Retrying %s after mismatch: %s", task.display_name, e)
                        continue
                elif transport_left > 0 and not self._stopping:
                    transport_left -= 1
                    logger.info("Retrying %s after error: %s", task.display_name, e)
                    self.listener.on_log("debug", f"Retrying {task.story_id}: {e}")
                    continue
                logger.warning("%s failed: %s", task.display_name, e)
                outcome = TestOutcome(
                    status="failed",
                    error=str(e) or type(e).__name__,
                    error_type=error_type_for(e),
                )
            else:
                if outcome.failed and mismatch_left > 0 and not self._stopping:
                    mismatch_left -= 1
                    logger.info("Retrying %s after mismatch", task.display_name)
                    continue
            break
        return outcome.model_copy(
            update={"attempts": attempts, "duration_ms": int((time.monotonic() - start) * 1000)}
        )

    def _count_failure(self, outcome: TestOutcome) -> None:
        if outcome.failed:
            self._failures += 1
            if self.max_failures and self._failures >= self.max_failures and not self._threshold_hit:
                self._threshold_hit = True
                self._stopping = True
                message = f"Reached max failures ({self.max_failures}), stopping"
                logger.warning(message)
                self.listener.on_log("warn", message)
