"""Newline-delimited JSON framing over a raw byte stream."""

from __future__ import annotations

import json
import logging
from typing import Any

logger = logging.getLogger(__name__)

NEWLINE = b"\n"


class MessageChannel:
    """Splits incoming bytes into JSON values and serializes outgoing ones.

    Each call to :meth:`feed` returns every complete value found so far; the
    trailing partial line is buffered until more bytes arrive. Lines that do
    not decode as JSON are dropped with a warning and never block the lines
    after them.
    """

    def __init__(self, name: str = "channel"):
        self.name = name
        self._buffer = b""

    @property
    def pending(self) -> int:
        """Number of buffered bytes not yet terminated by a newline."""
        return len(self._buffer)

    def feed(self, data: bytes) -> list[Any]:
        self._buffer += data
        if NEWLINE not in self._buffer:
            return []

        *lines, self._buffer = self._buffer.split(NEWLINE)
        values = []
        for raw in lines:
            if not raw.strip():
                continue
            try:
                values.append(json.loads(raw.decode("utf-8")))
            except (UnicodeDecodeError, json.JSONDecodeError) as e:
                logger.warning("[%s] Dropping unparseable line (%s): %.200r", self.name, e, raw)
        return values

    def reset(self) -> None:
        self._buffer = b""

    @staticmethod
    def encode(value: Any) -> bytes:
        """Serialize one value as a single line."""
        return json.dumps(value, separators=(",", ":"), default=str).encode("utf-8") + NEWLINE
