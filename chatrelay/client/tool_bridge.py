"""
Client-side execution of model tool calls.

A ``tool_use`` event names one of the advertised tools; the bridge POSTs its
``input`` as JSON to the endpoint configured for that name and turns the
response (or the failure) into ``tool_result`` content.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

import httpx

from chatrelay.logging_config import logger
from chatrelay.settings import settings


class ToolExecutionError(Exception):
    """Raised when a tool call cannot be dispatched or its endpoint fails."""


@dataclass(frozen=True)
class ToolOutcome:
    content: str
    is_error: bool = False


def format_tool_result(result: Any) -> str:
    """
    Render a tool response as ``tool_result`` content.

    Strings pass through; arrays and objects are pretty-printed JSON; other
    scalars use their JSON form.
    """
    if isinstance(result, str):
        return result
    return json.dumps(result, indent=2, ensure_ascii=False)


class ToolBridge:
    def __init__(
        self,
        endpoints: Optional[Mapping[str, str]] = None,
        *,
        client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None,
    ) -> None:
        self.endpoints: Dict[str, str] = dict(
            endpoints if endpoints is not None else settings.tool_endpoints
        )
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=timeout if timeout is not None else settings.tool_timeout_seconds
        )

    async def call(self, name: str, tool_input: Dict[str, Any]) -> Any:
        """
        POST ``tool_input`` to the endpoint of ``name`` and return the decoded body.

        Raises:
            ToolExecutionError: unknown tool, transport failure or non-2xx status
        """
        url = self.endpoints.get(name)
        if not url:
            raise ToolExecutionError(f"Unknown tool: {name}")

        logger.info("Calling tool %s at %s", name, url)
        try:
            response = await self._client.post(url, json=tool_input)
        except httpx.HTTPError as exc:
            raise ToolExecutionError(f"Tool transport error: {exc}") from exc

        if not response.is_success:
            raise ToolExecutionError(f"Tool HTTP {response.status_code}")

        try:
            return response.json()
        except ValueError:
            return response.text

    async def execute(self, name: str, tool_input: Dict[str, Any]) -> ToolOutcome:
        """
        Run a tool call; failures become an ``is_error`` outcome carrying the error text.
        """
        try:
            result = await self.call(name, tool_input)
        except ToolExecutionError as exc:
            logger.warning("Tool %s failed: %s", name, exc)
            return ToolOutcome(content=str(exc), is_error=True)
        except Exception as exc:
            # e.g. httpx.InvalidURL from a misconfigured endpoint
            logger.warning("Tool %s could not be dispatched: %s", name, exc, exc_info=True)
            return ToolOutcome(content=f"Tool dispatch failed: {exc}", is_error=True)
        return ToolOutcome(content=format_tool_result(result))

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


__all__ = ["ToolBridge", "ToolExecutionError", "ToolOutcome", "format_tool_result"]
