"""Host-side handle on a supervised worker process."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Sequence

from storyshot.models.config import RunConfig
from storyshot.rpc.client import DEFAULT_REQUEST_TIMEOUT, READY_WAIT_WINDOW, RpcClient
from storyshot.rpc.subscriptions import Listener, Subscription
from storyshot.supervisor import READY_TIMEOUT_SECONDS, ExecutionProfile, ProcessSupervisor

logger = logging.getLogger(__name__)


class WorkerBridge:
    """Owns one RPC client and the supervisor of its worker.

    Hosts construct a bridge and pass it to whatever needs the worker;
    there is no process-wide instance.
    """

    def __init__(
        self,
        command: Sequence[str] | None = None,
        cwd: str | Path | None = None,
        profile: ExecutionProfile | None = None,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        ready_timeout: float = READY_TIMEOUT_SECONDS,
        ready_wait: float = READY_WAIT_WINDOW,
    ):
        self.client = RpcClient(default_timeout=request_timeout, ready_wait=ready_wait, name="worker-bridge")
        self.supervisor = ProcessSupervisor(self.client, command, cwd, profile, ready_timeout)
        self._command = list(self.supervisor.command)

    @classmethod
    def from_config(cls, config: RunConfig, **kwargs: Any) -> "WorkerBridge":
        kwargs.setdefault("cwd", Path(config.project_root).resolve())
        kwargs.setdefault("request_timeout", config.request_timeout_ms / 1000)
        kwargs.setdefault("ready_timeout", config.worker_ready_timeout_ms / 1000)
        return cls(**kwargs)

    @property
    def ready(self) -> bool:
        return self.supervisor.ready

    async def start(self, manifest_path: str | Path | None = None) -> None:
        command = list(self._command)
        if manifest_path is not None:
            command += ["--manifest", str(Path(manifest_path).resolve())]
        self.supervisor.command = command
        await self.supervisor.start()

    async def stop(self) -> None:
        await self.supervisor.stop()

    def subscribe(self, event: str, listener: Listener) -> Subscription:
        return self.client.on(event, listener)

    async def run_remote(self, manifest_path: str | Path, params: dict | None = None) -> dict:
        """Start a worker on ``manifest_path`` and drive it through one run.

        The worker reads its manifest once at startup, so a running worker
        is restarted first.
        """
        if self.supervisor.alive:
            logger.debug("Restarting worker for manifest %s", manifest_path)
            await self.stop()
        await self.start(manifest_path)
        return await self.client.run(params)

    # Convenience calls

    async def run(self, params: dict | None = None) -> dict:
        return await self.client.run(params)

    async def cancel(self) -> dict:
        return await self.client.cancel()

    async def get_config(self) -> dict:
        return await self.client.get_config()

    async def set_config(self, config: dict) -> dict:
        return await self.client.set_config(config)

    async def get_status(self) -> dict:
        return await self.client.get_status()

    async def get_results(self) -> list[dict]:
        return await self.client.get_results()

    async def __aenter__(self) -> "WorkerBridge":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.stop()
