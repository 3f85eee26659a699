from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class EventType(str, Enum):
    STATUS = "status"
    PREVIEW = "preview"
    ERROR = "error"
    COMPLETE = "complete"


@dataclass
class SSEEvent:
    event: EventType
    data: dict[str, Any] = field(default_factory=dict)

    def format(self) -> str:
        return f"event: {self.event.value}\ndata: {json.dumps(self.data, default=str)}\n\n"

    def to_message(self) -> dict[str, str]:
        """Shape expected by sse-starlette's EventSourceResponse."""
        return {"event": self.event.value, "data": json.dumps(self.data, default=str)}


@dataclass
class DecodedEvent:
    """One event block read back off an SSE stream."""

    event: str
    data: dict[str, Any]
