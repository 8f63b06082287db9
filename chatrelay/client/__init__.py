from .engine import ClientEngine, EngineState, Idle, Streaming, ToolPending
from .reassembly import DeltaBuffer, Fragment
from .tool_bridge import ToolBridge, ToolExecutionError, ToolOutcome, format_tool_result
from .transport import ChatClient

__all__ = [
    "ChatClient",
    "ClientEngine",
    "DeltaBuffer",
    "EngineState",
    "Fragment",
    "Idle",
    "Streaming",
    "ToolBridge",
    "ToolExecutionError",
    "ToolOutcome",
    "ToolPending",
    "format_tool_result",
]
