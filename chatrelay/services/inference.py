"""
Streaming inference client.

Wraps the Anthropic async SDK: a model turn is consumed as a sequence of
``TextDelta`` fragments followed by exactly one ``Completion``.
"""

from __future__ import annotations

import abc
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Union

import anthropic
from anthropic import AsyncAnthropic

from chatrelay.errors import UpstreamError
from chatrelay.logging_config import logger
from chatrelay.settings import settings


@dataclass(frozen=True)
class TextDelta:
    text: str


@dataclass(frozen=True)
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass(frozen=True)
class Completion:
    content: List[Dict[str, Any]] = field(default_factory=list)
    usage: Optional[TokenUsage] = None
    stop_reason: Optional[str] = None

    def first_tool_use(self) -> Optional[Dict[str, Any]]:
        for block in self.content:
            if block.get("type") == "tool_use":
                return block
        return None


InferenceEvent = Union[TextDelta, Completion]


class InferenceClient(abc.ABC):
    """A token-streaming model service."""

    @abc.abstractmethod
    def stream(
        self,
        *,
        messages: List[Dict[str, Any]],
        tools: List[Dict[str, Any]],
        model: str,
        system: str,
        max_tokens: int,
    ) -> AsyncIterator[InferenceEvent]:
        """
        Yield text fragments as they arrive, then one terminal ``Completion``.

        Raises:
            UpstreamError: the service failed before or during the stream
        """


def _block_to_dict(block: Any) -> Dict[str, Any]:
    if isinstance(block, dict):
        return block
    dump = getattr(block, "model_dump", None)
    if callable(dump):
        return dump(mode="json", exclude_none=True)
    return {"type": getattr(block, "type", "unknown")}


class AnthropicInferenceClient(InferenceClient):
    def __init__(
        self,
        *,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        client: Optional[AsyncAnthropic] = None,
    ) -> None:
        if client is None:
            kwargs: Dict[str, Any] = {"api_key": api_key or settings.anthropic_api_key}
            if base_url or settings.anthropic_base_url:
                kwargs["base_url"] = base_url or settings.anthropic_base_url
            client = AsyncAnthropic(**kwargs)
        self._client = client

    async def stream(
        self,
        *,
        messages: List[Dict[str, Any]],
        tools: List[Dict[str, Any]],
        model: str,
        system: str,
        max_tokens: int,
    ) -> AsyncIterator[InferenceEvent]:
        try:
            async with self._client.messages.stream(
                model=model,
                max_tokens=max_tokens,
                system=system,
                messages=messages,
                tools=tools,
            ) as stream:
                async for text in stream.text_stream:
                    if text:
                        yield TextDelta(text=text)
                final = await stream.get_final_message()
        except anthropic.APIStatusError as exc:
            logger.warning(
                "Anthropic stream failed with status %s: %s", exc.status_code, exc.message
            )
            raise UpstreamError(
                f"Inference service error: {exc.message}",
                details={"status_code": exc.status_code},
            ) from exc
        except anthropic.APIError as exc:
            logger.warning("Anthropic stream failed: %s", exc)
            raise UpstreamError(f"Inference service error: {exc}") from exc

        usage = None
        if final.usage is not None:
            usage = TokenUsage(
                input_tokens=final.usage.input_tokens or 0,
                output_tokens=final.usage.output_tokens or 0,
            )
        yield Completion(
            content=[_block_to_dict(block) for block in final.content],
            usage=usage,
            stop_reason=final.stop_reason,
        )


__all__ = [
    "AnthropicInferenceClient",
    "Completion",
    "InferenceClient",
    "InferenceEvent",
    "TextDelta",
    "TokenUsage",
]
