"""
Conversation history in the Anthropic Messages schema.

The client owns the history and resends it with every request; the server only
validates and forwards it.
"""

from __future__ import annotations

import json
from typing import Annotated, Any, Dict, List, Literal, Union

from pydantic import BaseModel, Field, field_validator


class TextBlock(BaseModel):
    type: Literal["text"] = "text"
    text: str


class ToolUseBlock(BaseModel):
    type: Literal["tool_use"] = "tool_use"
    id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    input: Dict[str, Any] = Field(default_factory=dict)


class ToolResultBlock(BaseModel):
    type: Literal["tool_result"] = "tool_result"
    tool_use_id: str = Field(..., min_length=1)
    content: str = ""
    is_error: bool = False

    @field_validator("content", mode="before")
    @classmethod
    def _stringify_content(cls, value: Any) -> str:
        if value is None:
            return ""
        if isinstance(value, str):
            return value
        return json.dumps(value, ensure_ascii=False)


ContentBlock = Annotated[
    Union[TextBlock, ToolUseBlock, ToolResultBlock],
    Field(discriminator="type"),
]


class ConversationTurn(BaseModel):
    role: Literal["user", "assistant"]
    content: List[ContentBlock]

    @field_validator("content", mode="before")
    @classmethod
    def _wrap_plain_text(cls, value: Any) -> Any:
        # The Messages API also accepts a bare string as content.
        if isinstance(value, str):
            return [{"type": "text", "text": value}]
        return value

    @classmethod
    def user_text(cls, text: str) -> "ConversationTurn":
        return cls(role="user", content=[TextBlock(text=text)])

    @classmethod
    def assistant_text(cls, text: str) -> "ConversationTurn":
        return cls(role="assistant", content=[TextBlock(text=text)])

    @classmethod
    def tool_use(cls, tool_use_id: str, name: str, tool_input: Dict[str, Any]) -> "ConversationTurn":
        return cls(
            role="assistant",
            content=[ToolUseBlock(id=tool_use_id, name=name, input=tool_input)],
        )

    @classmethod
    def tool_result(
        cls, tool_use_id: str, content: str, *, is_error: bool = False
    ) -> "ConversationTurn":
        return cls(
            role="user",
            content=[ToolResultBlock(tool_use_id=tool_use_id, content=content, is_error=is_error)],
        )

    def tool_use_ids(self) -> set[str]:
        return {block.id for block in self.content if isinstance(block, ToolUseBlock)}

    def tool_result_ids(self) -> set[str]:
        return {
            block.tool_use_id for block in self.content if isinstance(block, ToolResultBlock)
        }

    def to_api(self) -> Dict[str, Any]:
        """Plain dict in the shape the Messages API and the wire protocol expect."""
        return self.model_dump(mode="json")


__all__ = [
    "ContentBlock",
    "ConversationTurn",
    "TextBlock",
    "ToolResultBlock",
    "ToolUseBlock",
]
