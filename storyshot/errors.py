"""Error taxonomy shared by the RPC layer, the supervisor and the orchestrator."""

from __future__ import annotations

from typing import Any, Optional


class StoryshotError(Exception):
    """Base class for every error raised by storyshot."""


class ProtocolError(StoryshotError):
    """A frame on the wire could not be parsed or is not JSON-RPC 2.0."""


class CorrelationError(StoryshotError):
    """A response arrived for an id with no pending call."""


class RpcTimeoutError(StoryshotError, TimeoutError):
    """No response arrived before the request deadline."""

    def __init__(self, method: str, timeout: float):
        super().__init__(f"Request timeout: {method}")
        self.method = method
        self.timeout = timeout


class RpcRemoteError(StoryshotError):
    """The remote endpoint answered with an error response."""

    def __init__(self, code: int, message: str, data: Optional[Any] = None):
        super().__init__(message)
        self.code = code
        self.data = data


class ProcessError(StoryshotError):
    """The worker process failed to spawn, exited, or never became ready."""


class DiscoveryError(ProcessError):
    """The story discovery source could not be reached or parsed."""

    def __init__(self, source: str, reason: str):
        super().__init__(f"Discovery source unavailable ({source}): {reason}")
        self.source = source
        self.reason = reason


class ConfigError(StoryshotError):
    """Run parameters are invalid."""


class TaskError(StoryshotError):
    """A single comparison task failed.

    ``kind`` is ``"transport"`` for navigation/capture failures and
    ``"mismatch"`` for screenshot differences; the pool retries each from
    its own budget.
    """

    TRANSPORT = "transport"
    MISMATCH = "mismatch"

    def __init__(self, message: str, kind: str = TRANSPORT):
        if kind not in (self.TRANSPORT, self.MISMATCH):
            raise ValueError(f"Unknown task error kind: {kind}")
        super().__init__(message)
        self.kind = kind


class IndexCorruption(StoryshotError):
    """A line of an index log could not be parsed."""

    def __init__(self, path: str, line_number: int, reason: str):
        super().__init__(f"{path}:{line_number}: {reason}")
        self.path = path
        self.line_number = line_number
        self.reason = reason


class IndexLocked(StoryshotError, RuntimeError):
    """Compaction was refused because a run holds the index log."""
