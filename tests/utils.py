from __future__ import annotations

import time
from typing import Any, Callable, Dict, List, Optional, Sequence

import httpx
from redis.exceptions import ConnectionError as RedisConnectionError

from chatrelay.client.engine import ClientEngine
from chatrelay.client.tool_bridge import ToolBridge
from chatrelay.services.inference import (
    Completion,
    InferenceClient,
    TextDelta,
    TokenUsage,
)
from chatrelay.services.orchestrator import SendOutcome


class FakeClock:
    """Controllable epoch clock shared by the Redis fake and the services."""

    def __init__(self, start: Optional[float] = None) -> None:
        self.now = float(start if start is not None else int(time.time()))

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class InMemoryRedis:
    """
    Minimal async Redis stand-in with TTL support driven by an injectable clock.

    Set ``fail = True`` to make every command raise a redis ConnectionError.
    """

    def __init__(self, clock: Optional[Callable[[], float]] = None) -> None:
        self._clock = clock or time.time
        self._data: dict[str, str] = {}
        self._zsets: dict[str, dict[str, float]] = {}
        self._expiry: dict[str, float] = {}
        self.fail = False

    def _check(self) -> None:
        if self.fail:
            raise RedisConnectionError("redis unavailable")

    def _purge(self, key: str) -> None:
        deadline = self._expiry.get(key)
        if deadline is not None and deadline <= self._clock():
            self._data.pop(key, None)
            self._zsets.pop(key, None)
            self._expiry.pop(key, None)

    def _exists(self, key: str) -> bool:
        self._purge(key)
        return key in self._data or key in self._zsets

    # --- String operations ---

    async def get(self, key: str):
        self._check()
        self._purge(key)
        return self._data.get(key)

    async def set(
        self, key: str, value: Any, ex: int | None = None, nx: bool = False
    ):
        self._check()
        self._purge(key)
        if nx and key in self._data:
            return None
        self._data[key] = str(value)
        if ex is not None:
            self._expiry[key] = self._clock() + ex
        else:
            self._expiry.pop(key, None)
        return True

    async def incrby(self, key: str, amount: int) -> int:
        self._check()
        self._purge(key)
        current = int(self._data.get(key, 0)) + int(amount)
        self._data[key] = str(current)
        return current

    async def delete(self, *keys: str) -> int:
        self._check()
        removed = 0
        for key in keys:
            if self._exists(key):
                removed += 1
            self._data.pop(key, None)
            self._zsets.pop(key, None)
            self._expiry.pop(key, None)
        return removed

    async def expire(self, key: str, seconds: int) -> bool:
        self._check()
        if not self._exists(key):
            return False
        self._expiry[key] = self._clock() + seconds
        return True

    async def ttl(self, key: str) -> int:
        self._check()
        if not self._exists(key):
            return -2
        deadline = self._expiry.get(key)
        if deadline is None:
            return -1
        return int(deadline - self._clock())

    # --- Sorted set operations ---

    async def zadd(self, key: str, mapping: dict[str, float]) -> int:
        self._check()
        self._purge(key)
        z = self._zsets.setdefault(key, {})
        added = sum(1 for member in mapping if member not in z)
        for member, score in mapping.items():
            z[member] = float(score)
        return added

    async def zremrangebyscore(self, key: str, min_score: float, max_score: float) -> int:
        self._check()
        self._purge(key)
        z = self._zsets.get(key, {})
        doomed = [m for m, score in z.items() if float(min_score) <= score <= float(max_score)]
        for member in doomed:
            z.pop(member, None)
        return len(doomed)

    async def zcard(self, key: str) -> int:
        self._check()
        self._purge(key)
        return len(self._zsets.get(key, {}))


class ScriptedInference(InferenceClient):
    """
    Inference client replaying one script per ``stream`` call.

    A script is a sequence of TextDelta / Completion items; an exception in the
    script is raised at that point of the stream.
    """

    def __init__(self, *scripts: Sequence[Any]) -> None:
        self.scripts: List[Sequence[Any]] = list(scripts)
        self.calls: List[Dict[str, Any]] = []

    async def stream(self, *, messages, tools, model, system, max_tokens):
        self.calls.append(
            {
                "messages": messages,
                "tools": tools,
                "model": model,
                "system": system,
                "max_tokens": max_tokens,
            }
        )
        script = self.scripts.pop(0)
        for item in script:
            if isinstance(item, Exception):
                raise item
            yield item


def text_script(*fragments: str, input_tokens: int = 10, output_tokens: int = 5) -> list:
    text = "".join(fragments)
    return [
        *(TextDelta(text=f) for f in fragments),
        Completion(
            content=[{"type": "text", "text": text}],
            usage=TokenUsage(input_tokens=input_tokens, output_tokens=output_tokens),
            stop_reason="end_turn",
        ),
    ]


def tool_script(
    *fragments: str,
    tool_uses: Sequence[Dict[str, Any]],
    input_tokens: int = 20,
    output_tokens: int = 8,
) -> list:
    content: List[Dict[str, Any]] = []
    if fragments:
        content.append({"type": "text", "text": "".join(fragments)})
    for block in tool_uses:
        content.append({"type": "tool_use", **block})
    return [
        *(TextDelta(text=f) for f in fragments),
        Completion(
            content=content,
            usage=TokenUsage(input_tokens=input_tokens, output_tokens=output_tokens),
            stop_reason="tool_use",
        ),
    ]


class RecordingSink:
    def __init__(self, *, gone: bool = False) -> None:
        self.events: List[Dict[str, Any]] = []
        self.gone = gone

    async def send(self, event: Dict[str, Any]) -> SendOutcome:
        if self.gone:
            return SendOutcome.GONE
        self.events.append(event)
        return SendOutcome.DELIVERED

    def types(self) -> List[str]:
        return [event["type"] for event in self.events]

    def of_type(self, event_type: str) -> List[Dict[str, Any]]:
        return [event for event in self.events if event["type"] == event_type]


class FakeTransport:
    """Transport double for the client engine."""

    def __init__(self, *, open: bool = True) -> None:
        self.open = open
        self.sent: List[Dict[str, Any]] = []

    @property
    def is_open(self) -> bool:
        return self.open

    async def send_json(self, data: Dict[str, Any]) -> bool:
        if not self.open:
            return False
        self.sent.append(data)
        return True


def wire_event(event_type: str, seq: Optional[int] = None, **payload: Any) -> Dict[str, Any]:
    return {"type": event_type, "seq": seq, "timestamp": "2025-01-01T00:00:00+00:00", **payload}


TOOL_ENDPOINTS = {
    "github_search": "https://tools.local/gitSearch",
    "github_get_file": "https://tools.local/gitFile",
}


def make_engine(handler=None, **kwargs) -> ClientEngine:
    """ClientEngine whose tool bridge talks to an httpx MockTransport."""
    handler = handler or (lambda request: httpx.Response(200, json=[{"path": "router.py"}]))
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    kwargs.setdefault("debounce_ms", 5)
    return ClientEngine(ToolBridge(TOOL_ENDPOINTS, client=client), **kwargs)
