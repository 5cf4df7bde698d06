"""Process supervisor: owns the worker process and drives the RPC client state."""

from __future__ import annotations

import asyncio
import logging
import os
import sys
from collections import deque
from pathlib import Path
from typing import Optional, Sequence

from pydantic import BaseModel, Field

from storyshot.errors import ProcessError
from storyshot.rpc.client import RpcClient

logger = logging.getLogger(__name__)

CONTROL_FLAG = "--json-rpc"
PROJECT_MARKERS = ("pyproject.toml", "package.json", ".git")
MAX_ROOT_HOPS = 10
STOP_GRACE_SECONDS = 5.0
READY_TIMEOUT_SECONDS = 30.0
STDERR_TAIL_LINES = 50
READ_CHUNK = 64 * 1024


class ExecutionProfile(BaseModel):
    """Deterministic environment for the worker process.

    Everything that makes a run nondeterministic or noisy on a pipe is
    switched off here in one place rather than sprinkled across spawn calls.
    """

    disable_color: bool = True
    disable_hot_reload: bool = True
    disable_watch: bool = True
    disable_telemetry: bool = True
    ci: bool = True
    unbuffered: bool = True
    extra_env: dict[str, str] = Field(default_factory=dict)

    def to_env(self, base: Optional[dict[str, str]] = None) -> dict[str, str]:
        env = dict(os.environ if base is None else base)
        if self.disable_color:
            env.update({"NO_COLOR": "1", "FORCE_COLOR": "0", "TERM": "dumb"})
        if self.disable_hot_reload:
            env.update({"DISABLE_HMR": "true", "STORYBOOK_DISABLE_HMR": "true", "NO_HMR": "1"})
        if self.disable_watch:
            env.update({"VITE_SKIP_WATCH": "true", "WATCHPACK_POLLING": "false"})
        if self.disable_telemetry:
            env.update({"STORYBOOK_DISABLE_TELEMETRY": "1", "DO_NOT_TRACK": "1"})
        if self.ci:
            env["CI"] = "true"
        if self.unbuffered:
            env["PYTHONUNBUFFERED"] = "1"
        env.update(self.extra_env)
        return env


def find_project_root(
    start: str | Path | None = None,
    markers: Sequence[str] = PROJECT_MARKERS,
    max_hops: int = MAX_ROOT_HOPS,
) -> Path:
    """Walk upward from ``start`` until a directory holds a project marker.

    The walk is capped at ``max_hops`` parents; when nothing is found the
    start directory is returned.
    """
    origin = Path(start or os.getcwd()).resolve()
    current = origin
    for _ in range(max_hops + 1):
        try:
            if any((current / marker).exists() for marker in markers):
                return current
        except OSError as e:
            logger.debug("Cannot inspect %s: %s", current, e)
            break
        if current.parent == current:
            break
        current = current.parent
    return origin


def default_worker_command() -> list[str]:
    return [sys.executable, "-m", "storyshot.cli", CONTROL_FLAG]


def _with_control_flag(command: Sequence[str]) -> list[str]:
    command = list(command)
    if CONTROL_FLAG not in command:
        command.append(CONTROL_FLAG)
    return command


def explain_start_failure(stderr_text: str, returncode: Optional[int]) -> str:
    message = stderr_text.strip() or f"Worker process exited before ready (code {returncode})"
    lowered = message.lower()
    if CONTROL_FLAG in message and ("no such option" in lowered or "unknown option" in lowered):
        message = (
            "The worker command does not support JSON-RPC mode "
            f"({CONTROL_FLAG}). Upgrade or rebuild the worker.\n\n"
            f"Original error: {message}"
        )
    return message


class ProcessSupervisor:
    """Spawns the worker and maps its lifecycle onto the client state machine."""

    def __init__(
        self,
        client: RpcClient,
        command: Sequence[str] | None = None,
        cwd: str | Path | None = None,
        profile: ExecutionProfile | None = None,
        ready_timeout: float = READY_TIMEOUT_SECONDS,
        stop_grace: float = STOP_GRACE_SECONDS,
    ):
        self.client = client
        self.command = _with_control_flag(command or default_worker_command())
        self.cwd = Path(cwd) if cwd else None
        self.profile = profile or ExecutionProfile()
        self.ready_timeout = ready_timeout
        self.stop_grace = stop_grace
        self.process: asyncio.subprocess.Process | None = None
        self._stderr_tail: deque[str] = deque(maxlen=STDERR_TAIL_LINES)
        self._pumps: list[asyncio.Task] = []
        self._exit_watch: asyncio.Task | None = None
        self._stopping = False

    @property
    def alive(self) -> bool:
        return self.process is not None and self.process.returncode is None

    @property
    def ready(self) -> bool:
        return self.alive and self.client.is_ready

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid if self.process else None

    @property
    def returncode(self) -> Optional[int]:
        return self.process.returncode if self.process else None

    @property
    def stderr_text(self) -> str:
        return "\n".join(self._stderr_tail)

    async def start(self) -> None:
        if self.alive:
            raise ProcessError("Worker process already running")

        cwd = self.cwd or find_project_root()
        logger.info("Spawning worker: %s", " ".join(self.command))
        logger.debug("Worker working directory: %s", cwd)
        self._stderr_tail.clear()
        self._stopping = False
        try:
            self.process = await asyncio.create_subprocess_exec(
                *self.command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(cwd),
                env=self.profile.to_env(),
            )
        except OSError as e:
            raise ProcessError(f"Failed to spawn worker process '{self.command[0]}': {e}") from e

        self.client.attach(self.process.stdin)
        self._pumps = [
            asyncio.create_task(self._pump_stdout()),
            asyncio.create_task(self._pump_stderr()),
        ]
        self._exit_watch = asyncio.create_task(self._watch_exit())

        try:
            await asyncio.wait_for(self.client.wait_started(), self.ready_timeout)
        except asyncio.TimeoutError:
            logger.error("Worker did not become ready within %.1fs", self.ready_timeout)
            await self.stop()
            raise ProcessError(
                f"Worker process did not signal ready within {self.ready_timeout:.1f}s"
            ) from None

        if not self.client.is_ready:
            await self._exit_watch
            await asyncio.gather(*self._pumps, return_exceptions=True)
            message = explain_start_failure(self.stderr_text, self.returncode)
            logger.error("Worker process failed: %s", message)
            raise ProcessError(message)
        logger.debug("Worker %s ready", self.pid)

    async def _pump_stdout(self) -> None:
        assert self.process and self.process.stdout
        while True:
            chunk = await self.process.stdout.read(READ_CHUNK)
            if not chunk:
                break
            self.client.feed(chunk)

    async def _pump_stderr(self) -> None:
        assert self.process and self.process.stderr
        while True:
            line = await self.process.stderr.readline()
            if not line:
                break
            text = line.decode("utf-8", errors="replace").rstrip()
            if text:
                self._stderr_tail.append(text)
                logger.debug("worker stderr: %s", text)

    async def _watch_exit(self) -> None:
        assert self.process
        code = await self.process.wait()
        # Deliver whatever the worker wrote before exiting
        await asyncio.gather(*self._pumps, return_exceptions=True)
        if self._stopping:
            logger.debug("Worker exited with code %s after stop request", code)
        elif self.client.is_ready:
            logger.error("Worker exited unexpectedly with code %s", code)
        self.client.close("Process terminated")

    async def stop(self) -> None:
        """Terminate gracefully, escalate to kill after the grace window."""
        self._stopping = True
        self.client.begin_stop()
        process = self.process
        if process is not None and process.returncode is None:
            logger.debug("Stopping worker %s", process.pid)
            try:
                process.terminate()
            except ProcessLookupError:
                pass
            try:
                await asyncio.wait_for(process.wait(), self.stop_grace)
            except asyncio.TimeoutError:
                logger.warning("Worker %s ignored SIGTERM for %.1fs, killing", process.pid, self.stop_grace)
                try:
                    process.kill()
                except ProcessLookupError:
                    pass
                await process.wait()
        if self._exit_watch is not None:
            await asyncio.gather(self._exit_watch, return_exceptions=True)
        if self._pumps:
            await asyncio.gather(*self._pumps, return_exceptions=True)
        if process is not None and process.stdin is not None:
            process.stdin.close()
        self.client.close("Process terminated")

    async def __aenter__(self) -> "ProcessSupervisor":
        await self.start()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.stop()
