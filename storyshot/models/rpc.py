"""JSON-RPC 2.0 message models and the method/event names used on the wire."""

from __future__ import annotations

from typing import Any, Optional, Union

from pydantic import BaseModel, ValidationError

from storyshot.errors import ProtocolError

JSONRPC_VERSION = "2.0"

# Reserved error codes
GENERIC_FAILURE = -32000
METHOD_NOT_FOUND = -32601

# Methods served by the worker
METHOD_RUN = "run"
METHOD_CANCEL = "cancel"
METHOD_GET_CONFIG = "getConfig"
METHOD_SET_CONFIG = "setConfig"
METHOD_GET_STATUS = "getStatus"
METHOD_GET_RESULTS = "getResults"

# Notifications emitted by the worker
EVENT_PROGRESS = "progress"
EVENT_STORY_START = "storyStart"
EVENT_STORY_COMPLETE = "storyComplete"
EVENT_RESULT = "result"
EVENT_LOG = "log"
EVENT_READY = "ready"
EVENT_COMPLETE = "complete"
EVENT_ERROR = "error"

RpcId = Union[int, str]


class RpcErrorPayload(BaseModel):
    code: int
    message: str
    data: Optional[Any] = None


class _Frame(BaseModel):
    def to_wire(self) -> dict[str, Any]:
        """Dump the fields that were explicitly set, plus the protocol tag."""
        data = {"jsonrpc": JSONRPC_VERSION}
        data.update(self.model_dump(exclude_unset=True))
        return data


class RpcRequest(_Frame):
    id: RpcId
    method: str
    params: Optional[Any] = None


class RpcResponse(_Frame):
    id: RpcId
    result: Optional[Any] = None
    error: Optional[RpcErrorPayload] = None

    @property
    def is_error(self) -> bool:
        return self.error is not None


class RpcNotification(_Frame):
    method: str
    params: Optional[Any] = None


RpcMessage = Union[RpcRequest, RpcResponse, RpcNotification]


def parse_frame(frame: Any) -> RpcMessage:
    """Classify a decoded JSON value as a request, response or notification.

    Raises ProtocolError for anything that is not a JSON-RPC 2.0 frame.
    """
    if not isinstance(frame, dict):
        raise ProtocolError(f"Frame is not an object: {type(frame).__name__}")
    if frame.get("jsonrpc") != JSONRPC_VERSION:
        raise ProtocolError("Frame is missing jsonrpc 2.0 tag")

    body = {k: v for k, v in frame.items() if k != "jsonrpc"}
    has_id = body.get("id") is not None
    try:
        if "method" in body:
            if has_id:
                return RpcRequest(**body)
            body.pop("id", None)
            return RpcNotification(**body)
        if has_id and ("result" in body or "error" in body):
            return RpcResponse(**body)
    except ValidationError as e:
        raise ProtocolError(f"Malformed frame: {e}") from e
    raise ProtocolError("Frame is neither a request, a response nor a notification")
