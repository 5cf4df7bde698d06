"""JSON-RPC client half: request correlation, deadlines and the readiness handshake."""

from __future__ import annotations

import asyncio
import itertools
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Protocol

from storyshot.errors import CorrelationError, ProcessError, ProtocolError, RpcRemoteError, RpcTimeoutError
from storyshot.models.rpc import (
    EVENT_READY,
    METHOD_CANCEL,
    METHOD_GET_CONFIG,
    METHOD_GET_RESULTS,
    METHOD_GET_STATUS,
    METHOD_RUN,
    METHOD_SET_CONFIG,
    RpcId,
    RpcNotification,
    RpcRequest,
    RpcResponse,
    parse_frame,
)

from .channel import MessageChannel
from .subscriptions import Listener, Subscription, SubscriptionRegistry

logger = logging.getLogger(__name__)

DEFAULT_REQUEST_TIMEOUT = 30.0
READY_WAIT_WINDOW = 10.0
RUN_TIMEOUT = 6 * 60 * 60.0


class EndpointState(str, Enum):
    NOT_STARTED = "not_started"
    STARTING = "starting"
    READY = "ready"
    STOPPING = "stopping"
    STOPPED = "stopped"


class ByteWriter(Protocol):
    def write(self, data: bytes) -> None: ...


@dataclass
class PendingCall:
    id: RpcId
    method: str
    future: asyncio.Future
    deadline: float  # event loop time
    timer: Optional[asyncio.TimerHandle] = field(default=None, repr=False)


class RpcClient:
    """Sends requests to a worker and correlates its responses.

    Bytes read from the worker's stdout are pushed in with :meth:`feed`.
    Requests issued before the worker's ``ready`` notification wait up to
    ``ready_wait`` seconds and are only written once the worker is ready.
    """

    def __init__(
        self,
        default_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        ready_wait: float = READY_WAIT_WINDOW,
        name: str = "rpc-client",
    ):
        self.default_timeout = default_timeout
        self.ready_wait = ready_wait
        self.name = name
        self.channel = MessageChannel(name)
        self.subscriptions = SubscriptionRegistry()
        self._writer: ByteWriter | None = None
        self._state = EndpointState.NOT_STARTED
        self._ids = itertools.count(1)
        self._pending: dict[RpcId, PendingCall] = {}
        self._ready = asyncio.Event()
        self._closed = asyncio.Event()

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    @property
    def state(self) -> EndpointState:
        return self._state

    @property
    def is_ready(self) -> bool:
        return self._state is EndpointState.READY

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def attach(self, writer: ByteWriter) -> None:
        """Bind the worker's input stream; the endpoint now awaits ``ready``."""
        if self._state not in (EndpointState.NOT_STARTED, EndpointState.STOPPED):
            raise ProcessError(f"Cannot attach a worker while {self._state.value}")
        self._writer = writer
        self._ready = asyncio.Event()
        self._closed = asyncio.Event()
        self.channel.reset()
        self._state = EndpointState.STARTING
        logger.debug("[%s] Attached, waiting for ready", self.name)

    def mark_ready(self) -> None:
        if self._state is EndpointState.STARTING:
            self._state = EndpointState.READY
            self._ready.set()
            logger.info("[%s] Worker ready", self.name)
        elif self._state is EndpointState.READY:
            logger.debug("[%s] Duplicate ready notification ignored", self.name)
        else:
            logger.debug("[%s] Ready notification ignored in state %s", self.name, self._state.value)

    def begin_stop(self) -> None:
        if self._state in (EndpointState.STARTING, EndpointState.READY):
            self._state = EndpointState.STOPPING

    def close(self, reason: str = "Process terminated") -> None:
        """Enter STOPPED and reject every pending call."""
        if self._state is EndpointState.STOPPED:
            return
        self._state = EndpointState.STOPPED
        self._writer = None
        self._closed.set()
        pending = list(self._pending.values())
        self._pending.clear()
        for call in pending:
            if call.timer:
                call.timer.cancel()
            if not call.future.done():
                call.future.set_exception(ProcessError(reason))
        if pending:
            logger.warning("[%s] %s: rejected %d pending call(s)", self.name, reason, len(pending))

    async def wait_ready(self) -> None:
        if self._state is EndpointState.READY:
            return
        if self._state in (EndpointState.STOPPING, EndpointState.STOPPED):
            raise ProcessError("Worker process is not running")

        logger.debug("[%s] Waiting up to %.1fs for worker readiness", self.name, self.ready_wait)
        try:
            await asyncio.wait_for(self._ready_or_closed(), self.ready_wait)
        except asyncio.TimeoutError:
            raise ProcessError(
                f"Worker process not ready after {self.ready_wait:.1f}s. "
                "Please wait a moment and try again."
            ) from None
        if self._state is not EndpointState.READY:
            raise ProcessError("Worker process terminated before it became ready")

    async def wait_started(self) -> bool:
        """Wait without a deadline until the worker is ready or gone."""
        if self._state in (EndpointState.STARTING, EndpointState.NOT_STARTED):
            await self._ready_or_closed()
        return self._state is EndpointState.READY

    async def _ready_or_closed(self) -> None:
        waiters = {
            asyncio.ensure_future(self._ready.wait()),
            asyncio.ensure_future(self._closed.wait()),
        }
        try:
            await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                waiter.cancel()

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def request(self, method: str, params: Any = None, timeout: float | None = None) -> Any:
        """Send a request and wait for its response or its deadline."""
        await self.wait_ready()

        call_id = next(self._ids)
        timeout = self.default_timeout if timeout is None else timeout
        loop = asyncio.get_running_loop()
        call = PendingCall(
            id=call_id,
            method=method,
            future=loop.create_future(),
            deadline=loop.time() + timeout,
        )
        call.timer = loop.call_later(timeout, self._expire, call_id, timeout)
        self._pending[call_id] = call

        request = RpcRequest(id=call_id, method=method)
        if params is not None:
            request.params = params
        try:
            logger.debug("[%s] -> %s (id=%s)", self.name, method, call_id)
            self._send(request.to_wire())
            return await call.future
        finally:
            self._discard(call_id)

    def notify(self, method: str, params: Any = None) -> None:
        """Send a notification; no response is expected."""
        notification = RpcNotification(method=method)
        if params is not None:
            notification.params = params
        self._send(notification.to_wire())

    def _send(self, message: dict[str, Any]) -> None:
        if self._writer is None or self._state is EndpointState.STOPPED:
            raise ProcessError("Worker process not started")
        self._writer.write(self.channel.encode(message))

    def _expire(self, call_id: RpcId, timeout: float) -> None:
        call = self._pending.pop(call_id, None)
        if call is None or call.future.done():
            return
        logger.warning("[%s] Request timeout: %s (id=%s, %.1fs)", self.name, call.method, call_id, timeout)
        call.future.set_exception(RpcTimeoutError(call.method, timeout))

    def _discard(self, call_id: RpcId) -> None:
        call = self._pending.pop(call_id, None)
        if call is not None and call.timer:
            call.timer.cancel()

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    def feed(self, data: bytes) -> None:
        """Consume bytes read from the worker's output stream."""
        for frame in self.channel.feed(data):
            self.dispatch(frame)

    def dispatch(self, frame: Any) -> None:
        try:
            message = parse_frame(frame)
        except ProtocolError as e:
            logger.debug("[%s] Dropping frame: %s", self.name, e)
            return

        if isinstance(message, RpcResponse):
            self._settle(message)
        elif isinstance(message, RpcNotification):
            if message.method == EVENT_READY:
                self.mark_ready()
            self.subscriptions.emit(message.method, message.params)
        else:
            logger.debug("[%s] Ignoring request '%s' sent by worker", self.name, message.method)

    def _settle(self, response: RpcResponse) -> None:
        call = self._pending.pop(response.id, None)
        if call is None:
            # Late response for an expired call, or an id we never issued
            problem = CorrelationError(f"No pending call for response id={response.id}")
            logger.debug("[%s] Dropping response: %s", self.name, problem)
            return
        if call.timer:
            call.timer.cancel()
        if call.future.done():
            return
        if response.error is not None:
            err = response.error
            call.future.set_exception(RpcRemoteError(err.code, err.message, err.data))
        else:
            call.future.set_result(response.result)

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def on(self, event: str, listener: Listener) -> Subscription:
        return self.subscriptions.subscribe(event, listener)

    def once(self, event: str, listener: Listener) -> Subscription:
        return self.subscriptions.once(event, listener)

    # ------------------------------------------------------------------
    # Worker methods
    # ------------------------------------------------------------------

    async def run(self, params: dict | None = None, timeout: float = RUN_TIMEOUT) -> Any:
        return await self.request(METHOD_RUN, params, timeout=timeout)

    async def cancel(self) -> Any:
        return await self.request(METHOD_CANCEL)

    async def get_config(self) -> dict:
        return await self.request(METHOD_GET_CONFIG)

    async def set_config(self, config: dict) -> Any:
        return await self.request(METHOD_SET_CONFIG, config)

    async def get_status(self) -> dict:
        return await self.request(METHOD_GET_STATUS)

    async def get_results(self) -> list[dict]:
        return await self.request(METHOD_GET_RESULTS)
