from .conversation import (
    ContentBlock,
    ConversationTurn,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
)
from .events import ChatRequest, EventType, StreamEvent, ToolResultRequest
from .session import (
    ConnectionRecord,
    SessionClaims,
    SessionGrant,
    SessionRecord,
    UsageRecord,
)

__all__ = [
    "ChatRequest",
    "ConnectionRecord",
    "ContentBlock",
    "ConversationTurn",
    "EventType",
    "SessionClaims",
    "SessionGrant",
    "SessionRecord",
    "StreamEvent",
    "TextBlock",
    "ToolResultBlock",
    "ToolResultRequest",
    "ToolUseBlock",
    "UsageRecord",
]
