"""
Wire schema of the streamed message protocol.

Outbound events are built as ``StreamEvent`` envelopes; on the wire the payload
fields are flattened next to ``type``/``seq``/``timestamp``:

    {"type": "delta", "seq": 3, "timestamp": "2024-...", "text": "Hel"}
"""

from __future__ import annotations

import datetime
import json
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

from .conversation import ConversationTurn


class EventType(str, Enum):
    STARTED = "started"
    DELTA = "delta"
    TOOL_USE = "tool_use"
    DONE = "done"
    USAGE = "usage"
    ACK = "ack"
    ERROR = "error"


_ENVELOPE_FIELDS = ("type", "seq", "timestamp")


def utc_timestamp() -> str:
    return datetime.datetime.now(datetime.timezone.utc).isoformat()


class StreamEvent(BaseModel):
    type: EventType
    seq: Optional[int] = Field(
        default=None,
        description="Monotonic within one stream invocation; reset for every invocation",
    )
    timestamp: str = Field(default_factory=utc_timestamp)
    payload: Dict[str, Any] = Field(default_factory=dict)

    def to_wire(self) -> Dict[str, Any]:
        data = dict(self.payload)
        data["type"] = self.type.value
        data["seq"] = self.seq
        data["timestamp"] = self.timestamp
        return data

    @classmethod
    def from_wire(cls, data: Dict[str, Any]) -> "StreamEvent":
        seq = data.get("seq")
        return cls(
            type=data.get("type"),
            seq=seq if isinstance(seq, int) and not isinstance(seq, bool) else None,
            timestamp=data.get("timestamp") or utc_timestamp(),
            payload={k: v for k, v in data.items() if k not in _ENVELOPE_FIELDS},
        )


class ChatRequest(BaseModel):
    """Inbound plain chat message."""

    message: str = ""
    history: List[ConversationTurn] = Field(default_factory=list)
    model: Optional[str] = None
    system: Optional[str] = None


class ToolResultRequest(BaseModel):
    """Inbound tool result that resumes a suspended turn."""

    type: Literal["tool_result"]
    tool_use_id: str = Field(..., min_length=1)
    content: str = ""
    is_error: bool = False
    history: List[ConversationTurn]
    model: Optional[str] = None
    system: Optional[str] = None

    @field_validator("content", mode="before")
    @classmethod
    def _stringify_content(cls, value: Any) -> str:
        if value is None:
            return ""
        if isinstance(value, str):
            return value
        return json.dumps(value, ensure_ascii=False)


__all__ = [
    "ChatRequest",
    "EventType",
    "StreamEvent",
    "ToolResultRequest",
    "utc_timestamp",
]
