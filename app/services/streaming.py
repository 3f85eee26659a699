"""SSE event factories and the matching wire decoder.

Producers build events through the factories below; the job processor reads them
back with ``SSEDecoder``. Nothing else touches the text framing.
"""
from __future__ import annotations

import json
from typing import Any

from loguru import logger

from app.errors import error_payload
from app.models.events import DecodedEvent, EventType, SSEEvent


def status(message: str, step: str, progress: float, **kwargs: Any) -> SSEEvent:
    return SSEEvent(
        event=EventType.STATUS,
        data={"message": message, "step": step, "progress": progress, **kwargs},
    )


def preview(payload: dict[str, Any]) -> SSEEvent:
    return SSEEvent(event=EventType.PREVIEW, data=payload)


def complete(message: str = "Research complete", **kwargs: Any) -> SSEEvent:
    return SSEEvent(event=EventType.COMPLETE, data={"message": message, **kwargs})


def error(message: str, **kwargs: Any) -> SSEEvent:
    return SSEEvent(event=EventType.ERROR, data={"message": message, **kwargs})


def error_from_exception(exc: BaseException) -> SSEEvent:
    return SSEEvent(event=EventType.ERROR, data=error_payload(exc))


class SSEDecoder:
    """Incremental decoder for ``event:``/``data:`` blocks separated by blank lines.

    Chunks may split anywhere, including inside a CRLF pair; any partial block is
    buffered until the next ``feed`` call.
    """

    def __init__(self) -> None:
        self._buffer = ""
        self._pending_cr = False

    def feed(self, chunk: str) -> list[DecodedEvent]:
        if self._pending_cr:
            chunk = "\r" + chunk
            self._pending_cr = False
        if chunk.endswith("\r"):
            chunk = chunk[:-1]
            self._pending_cr = True

        self._buffer += chunk.replace("\r\n", "\n").replace("\r", "\n")
        blocks = self._buffer.split("\n\n")
        self._buffer = blocks.pop()
        return [e for e in (self._parse_block(b) for b in blocks) if e is not None]

    def flush(self) -> list[DecodedEvent]:
        """Decode whatever is left once the stream has closed."""
        remaining = self._buffer
        self._buffer = ""
        if self._pending_cr:
            self._pending_cr = False
        parsed = self._parse_block(remaining)
        return [parsed] if parsed is not None else []

    @staticmethod
    def _parse_block(block: str) -> DecodedEvent | None:
        if not block.strip():
            return None

        event_type = "message"
        data_lines: list[str] = []
        for line in block.split("\n"):
            if not line or line.startswith(":"):
                continue
            name, _, value = line.partition(":")
            if value.startswith(" "):
                value = value[1:]
            if name == "event":
                event_type = value.strip()
            elif name == "data":
                data_lines.append(value)

        if not data_lines:
            return None

        raw = "\n".join(data_lines)
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning(f"Skipping undecodable SSE block (event={event_type}): {raw[:200]}")
            return None
        if not isinstance(data, dict):
            data = {"value": data}
        return DecodedEvent(event=event_type, data=data)
