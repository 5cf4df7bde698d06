"""Worker mode: serves runs over JSON-RPC on stdin/stdout."""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys
from pathlib import Path
from typing import Any, Callable, Optional

from storyshot.executor.pool import RunListener
from storyshot.index.results import ResultsIndexManager
from storyshot.index.snapshots import SnapshotIndexManager
from storyshot.manifest import RunManifest, read_manifest
from storyshot.models.config import RunConfig
from storyshot.models.rpc import (
    EVENT_COMPLETE,
    EVENT_ERROR,
    EVENT_LOG,
    EVENT_PROGRESS,
    EVENT_READY,
    EVENT_RESULT,
    EVENT_STORY_COMPLETE,
    EVENT_STORY_START,
    METHOD_CANCEL,
    METHOD_GET_CONFIG,
    METHOD_GET_RESULTS,
    METHOD_GET_STATUS,
    METHOD_RUN,
    METHOD_SET_CONFIG,
)
from storyshot.models.task import ProgressInfo, TaskRecord, TestOutcome, TestTask
from storyshot.orchestrator import Orchestrator
from storyshot.rpc.server import RpcServer

logger = logging.getLogger(__name__)

OrchestratorFactory = Callable[[RunConfig, RunListener], Orchestrator]


class NotificationListener(RunListener):
    """Forwards run events to the host as notifications."""

    def __init__(self, server: RpcServer):
        self.server = server

    def on_progress(self, progress: ProgressInfo) -> None:
        self.server.notify(EVENT_PROGRESS, progress.model_dump())

    def on_story_start(self, task: TestTask) -> None:
        self.server.notify(
            EVENT_STORY_START,
            {
                "story_id": task.story_id,
                "story_name": task.display_name,
                "browser": task.browser,
                "viewport_name": task.viewport_name,
            },
        )

    def on_story_complete(self, task: TestTask, outcome: TestOutcome) -> None:
        self.server.notify(
            EVENT_STORY_COMPLETE,
            {
                "story_id": task.story_id,
                "browser": task.browser,
                "viewport_name": task.viewport_name,
                "status": outcome.status,
                "duration_ms": outcome.duration_ms,
            },
        )

    def on_result(self, record: TaskRecord) -> None:
        self.server.notify(EVENT_RESULT, record.model_dump(exclude_none=True))

    def on_log(self, level: str, message: str) -> None:
        self.server.notify(EVENT_LOG, {"level": level, "message": message})


def _default_factory(config: RunConfig, listener: RunListener) -> Orchestrator:
    return Orchestrator(config, listener=listener)


class WorkerService:
    """Method handlers for one worker process.

    A manifest handed over at startup is consumed by the first ``run``;
    later runs discover their own tasks.
    """

    def __init__(
        self,
        server: RpcServer,
        config: RunConfig,
        manifest: RunManifest | None = None,
        orchestrator_factory: OrchestratorFactory = _default_factory,
    ):
        self.server = server
        self.config = manifest.config if manifest else config
        self._manifest = manifest
        self._factory = orchestrator_factory
        self._orchestrator: Optional[Orchestrator] = None
        self.listener = NotificationListener(server)

        server.register(METHOD_RUN, self.run)
        server.register(METHOD_CANCEL, self.cancel)
        server.register(METHOD_GET_CONFIG, self.get_config)
        server.register(METHOD_SET_CONFIG, self.set_config)
        server.register(METHOD_GET_STATUS, self.get_status)
        server.register(METHOD_GET_RESULTS, self.get_results)

    @property
    def running(self) -> bool:
        return self._orchestrator is not None

    async def run(self, params: Any) -> dict:
        if self.running:
            raise RuntimeError("A run is already in progress")
        overrides = params if isinstance(params, dict) else None
        config = self.config.merged(overrides)

        manifest, self._manifest = self._manifest, None
        if manifest is not None:
            manifest = manifest.model_copy(update={"config": config})

        orchestrator = self._factory(config, self.listener)
        self._orchestrator = orchestrator
        try:
            report = await orchestrator.arun(manifest)
        except Exception as e:
            logger.error("Run failed: %s", e)
            self.server.notify(EVENT_ERROR, {"message": str(e), "type": type(e).__name__})
            raise
        finally:
            self._orchestrator = None

        summary = report.model_dump(exclude={"records"})
        self.server.notify(EVENT_COMPLETE, summary)
        return {"success": report.exit_code == 0, **summary}

    async def cancel(self, params: Any) -> dict:
        orchestrator = self._orchestrator
        return {"cancelled": bool(orchestrator and orchestrator.cancel())}

    async def get_config(self, params: Any) -> dict:
        return self.config.model_dump()

    async def set_config(self, params: Any) -> dict:
        if not isinstance(params, dict):
            raise ValueError("setConfig expects an object")
        self.config = self.config.merged(params)
        return {"updated": True}

    async def get_status(self, params: Any) -> dict:
        orchestrator = self._orchestrator
        progress = orchestrator.progress() if orchestrator else None
        return {
            "running": self.running,
            "progress": progress.model_dump() if progress else None,
        }

    async def get_results(self, params: Any) -> list[dict]:
        results = ResultsIndexManager(self.config.results_dir)
        snapshots = SnapshotIndexManager(self.config.snapshot_dir)
        payload = []
        for result in await asyncio.to_thread(results.story_results):
            expected = snapshots.snapshot_path((result.story_id, result.browser, result.viewport_name))
            if expected.exists():
                result.expected_path = str(expected)
            payload.append(result.model_dump(exclude_none=True))
        return payload

    def terminate(self) -> None:
        if self._orchestrator is not None:
            logger.info("Termination requested, cancelling run")
            self._orchestrator.cancel()


async def _stdin_reader() -> asyncio.StreamReader:
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader()
    await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), sys.stdin)
    return reader


async def serve_stdio(
    config: RunConfig,
    manifest_path: Path | None = None,
    orchestrator_factory: OrchestratorFactory = _default_factory,
) -> None:
    """Announce readiness, then serve requests until stdin closes.

    ``orchestrator_factory`` builds the orchestrator for each run; embedders
    use it to supply their own discovery and capture collaborators.
    """
    manifest = read_manifest(manifest_path) if manifest_path else None
    server = RpcServer(sys.stdout.buffer, name="worker")
    service = WorkerService(server, config, manifest, orchestrator_factory)

    reader = await _stdin_reader()
    serving = asyncio.ensure_future(server.serve(reader))

    def on_terminate() -> None:
        service.terminate()
        serving.cancel()

    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGTERM, on_terminate)
    except (NotImplementedError, RuntimeError):
        logger.debug("SIGTERM handler unavailable on this platform")

    server.notify(EVENT_READY, {"methods": server.methods})
    logger.info("Worker ready (pid %s)", os.getpid())
    try:
        await serving
    except asyncio.CancelledError:
        # Let a cancelled run drain and answer before exiting
        await server.drain()


def run_json_rpc_mode(config: RunConfig, manifest_path: Path | None = None) -> None:
    asyncio.run(serve_stdio(config, manifest_path))
