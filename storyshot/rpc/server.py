"""JSON-RPC server half: dispatches worker-side method handlers."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from storyshot.errors import ProtocolError
from storyshot.models.rpc import (
    GENERIC_FAILURE,
    METHOD_NOT_FOUND,
    RpcErrorPayload,
    RpcId,
    RpcNotification,
    RpcRequest,
    RpcResponse,
    parse_frame,
)

from .channel import MessageChannel
from .client import ByteWriter

logger = logging.getLogger(__name__)

Handler = Callable[[Any], Awaitable[Any]]

READ_CHUNK = 64 * 1024


class RpcServer:
    """Serves registered methods over a byte stream.

    Every inbound request runs as its own task so a long ``run`` never blocks
    a ``cancel`` sent while it is in flight.
    """

    def __init__(self, writer: ByteWriter, name: str = "rpc-server"):
        self.writer = writer
        self.name = name
        self.channel = MessageChannel(name)
        self._handlers: dict[str, Handler] = {}
        self._tasks: set[asyncio.Task] = set()

    def register(self, method: str, handler: Handler) -> None:
        if method in self._handlers:
            logger.debug("[%s] Replacing handler for %s", self.name, method)
        self._handlers[method] = handler

    @property
    def methods(self) -> list[str]:
        return sorted(self._handlers)

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    def notify(self, method: str, params: Any = None) -> None:
        notification = RpcNotification(method=method)
        if params is not None:
            notification.params = params
        self._send(notification.to_wire())

    def respond(self, call_id: RpcId, result: Any) -> None:
        self._send(RpcResponse(id=call_id, result=result).to_wire())

    def error(self, call_id: RpcId, code: int, message: str, data: Optional[Any] = None) -> None:
        payload = RpcErrorPayload(code=code, message=message)
        if data is not None:
            payload.data = data
        response = RpcResponse(id=call_id, error=payload)
        self._send(response.to_wire())

    def _send(self, message: dict[str, Any]) -> None:
        self.writer.write(self.channel.encode(message))
        flush = getattr(self.writer, "flush", None)
        if flush is not None:
            flush()

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    def feed(self, data: bytes) -> list[asyncio.Task]:
        """Consume bytes from the host; returns the handler tasks started."""
        started = []
        for frame in self.channel.feed(data):
            task = self.dispatch(frame)
            if task is not None:
                started.append(task)
        return started

    def dispatch(self, frame: Any) -> asyncio.Task | None:
        try:
            message = parse_frame(frame)
        except ProtocolError as e:
            logger.debug("[%s] Dropping frame: %s", self.name, e)
            return None

        if isinstance(message, RpcRequest):
            task = asyncio.ensure_future(self.handle_request(message))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            return task
        if isinstance(message, RpcNotification):
            logger.debug("[%s] Notification '%s' received, no reply needed", self.name, message.method)
        else:
            logger.debug("[%s] Ignoring response frame id=%s", self.name, message.id)
        return None

    async def handle_request(self, request: RpcRequest) -> None:
        handler = self._handlers.get(request.method)
        if handler is None:
            logger.warning("[%s] No handler found for method: %s", self.name, request.method)
            self.error(request.id, METHOD_NOT_FOUND, f"Method not found: {request.method}")
            return

        logger.debug("[%s] <- %s (id=%s)", self.name, request.method, request.id)
        try:
            result = await handler(request.params)
        except Exception as e:
            logger.error("[%s] Handler error for %s: %s", self.name, request.method, e)
            self.error(request.id, GENERIC_FAILURE, str(e) or type(e).__name__)
            return
        self.respond(request.id, result)

    async def serve(self, reader: asyncio.StreamReader) -> None:
        """Read requests until EOF, then wait for in-flight handlers."""
        logger.debug("[%s] Serving %s", self.name, ", ".join(self.methods))
        while True:
            chunk = await reader.read(READ_CHUNK)
            if not chunk:
                logger.debug("[%s] Input closed", self.name)
                break
            self.feed(chunk)
        await self.drain()

    async def drain(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
