"""
Client engine: the receiving and sending halves of the chat protocol.

The engine owns the conversation history and resends it (trimmed) with every
request. Per-connection flags are one tagged state:

- ``Idle``: no turn in flight;
- ``Streaming``: a turn is producing deltas;
- ``ToolPending(tool_use_id)``: a tool round trip is running; ``delta`` and
  ``done`` events are dropped until the ``tool_result`` has been sent.

Outbound messages go through an outbox that is flushed in FIFO order whenever
a transport is (re)attached. ``tool_result`` sends are tracked against an ack
timeout; a missing ack is logged as a failure and not retried.
"""

from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, List, Optional, Protocol, Set, Union

from pydantic import ValidationError as PydanticValidationError

from chatrelay.client.reassembly import DeltaBuffer
from chatrelay.client.tool_bridge import ToolBridge
from chatrelay.errors import ValidationError
from chatrelay.logging_config import logger
from chatrelay.models import ConversationTurn, EventType, StreamEvent
from chatrelay.services.history import history_to_api, trim_history
from chatrelay.settings import settings


@dataclass(frozen=True)
class Idle:
    pass


@dataclass(frozen=True)
class Streaming:
    pass


@dataclass(frozen=True)
class ToolPending:
    tool_use_id: str


EngineState = Union[Idle, Streaming, ToolPending]


class Transport(Protocol):
    @property
    def is_open(self) -> bool: ...

    async def send_json(self, data: Dict[str, Any]) -> bool:
        """Send one message; False when it could not be delivered."""


class ClientEngine:
    def __init__(
        self,
        tool_bridge: ToolBridge,
        *,
        history_window: Optional[int] = None,
        ack_timeout: Optional[float] = None,
        debounce_ms: Optional[int] = None,
        on_text: Optional[Callable[[str], None]] = None,
        on_turn_complete: Optional[Callable[[str], None]] = None,
        on_error: Optional[Callable[[Dict[str, Any]], None]] = None,
    ) -> None:
        self.tool_bridge = tool_bridge
        self.history_window = history_window or settings.history_window
        self.ack_timeout = ack_timeout if ack_timeout is not None else settings.ack_timeout_seconds
        self.on_turn_complete = on_turn_complete
        self.on_error = on_error

        self.state: EngineState = Idle()
        self.history: List[ConversationTurn] = []
        self.buffer = DeltaBuffer(debounce_ms=debounce_ms, on_flush=on_text)
        self.outbox: Deque[Dict[str, Any]] = deque()
        self.pending_acks: Dict[str, asyncio.TimerHandle] = {}
        self.failed_acks: List[str] = []
        self.errors: List[Dict[str, Any]] = []
        self.last_usage: Optional[Dict[str, Any]] = None

        self._transport: Optional[Transport] = None
        self._tool_tasks: Set[asyncio.Task] = set()

    # -- Outbound --

    async def attach(self, transport: Transport) -> None:
        """Use ``transport`` for sends and flush everything queued while offline."""
        self._transport = transport
        await self.flush_outbox()

    def detach(self) -> None:
        self._transport = None

    @property
    def is_connected(self) -> bool:
        return self._transport is not None and self._transport.is_open

    async def flush_outbox(self) -> None:
        while self.outbox and self.is_connected:
            data = self.outbox.popleft()
            if not await self._transport.send_json(data):
                self.outbox.appendleft(data)
                break

    async def send_raw(self, data: Dict[str, Any]) -> None:
        if not self.is_connected:
            logger.warning("Transport not open; queued %s message", data.get("type", "chat"))
            self.outbox.append(data)
            return
        if not await self._transport.send_json(data):
            self.outbox.append(data)

    async def send_with_ack(self, data: Dict[str, Any], key: str) -> None:
        await self.send_raw(data)
        previous = self.pending_acks.pop(key, None)
        if previous is not None:
            previous.cancel()
        loop = asyncio.get_running_loop()
        self.pending_acks[key] = loop.call_later(self.ack_timeout, self._ack_timed_out, key)

    def _ack_timed_out(self, key: str) -> None:
        self.pending_acks.pop(key, None)
        self.failed_acks.append(key)
        logger.error("ACK timeout: server never received tool_result %s", key)

    def _history_payload(self) -> List[Dict[str, Any]]:
        return history_to_api(trim_history(self.history, self.history_window))

    async def send_message(
        self, text: str, *, model: Optional[str] = None, system: Optional[str] = None
    ) -> None:
        """
        Start a new turn. The history sent is the conversation before ``text``;
        the server appends the new user turn itself.
        """
        text = (text or "").strip()
        if not text:
            raise ValidationError("Empty message")

        # Leftover text of an interrupted turn is not part of the history.
        self.buffer.reset()

        payload: Dict[str, Any] = {"message": text, "history": self._history_payload()}
        if model:
            payload["model"] = model
        if system:
            payload["system"] = system

        self.history.append(ConversationTurn.user_text(text))
        self.state = Streaming()
        await self.send_raw(payload)

    # -- Inbound --

    async def handle_event(self, data: Dict[str, Any]) -> None:
        try:
            event = StreamEvent.from_wire(data)
        except PydanticValidationError:
            logger.warning("Ignoring unrecognised event: %s", data)
            return

        handler = {
            EventType.ACK: self._on_ack,
            EventType.STARTED: self._on_started,
            EventType.DELTA: self._on_delta,
            EventType.DONE: self._on_done,
            EventType.USAGE: self._on_usage,
            EventType.ERROR: self._on_error,
            EventType.TOOL_USE: self._on_tool_use,
        }[event.type]
        await handler(event)

    async def _on_ack(self, event: StreamEvent) -> None:
        key = event.payload.get("tool_use_id")
        timer = self.pending_acks.pop(key, None)
        if timer is not None:
            timer.cancel()
            logger.debug("ACK received for %s", key)

    async def _on_started(self, event: StreamEvent) -> None:
        if not isinstance(self.state, ToolPending):
            self.state = Streaming()

    async def _on_delta(self, event: StreamEvent) -> None:
        if isinstance(self.state, ToolPending):
            logger.debug("Dropping delta during tool round trip: %r", event.payload.get("text"))
            return
        self.state = Streaming()
        self.buffer.push(event.seq, event.payload.get("text") or "")

    async def _on_done(self, event: StreamEvent) -> None:
        if isinstance(self.state, ToolPending):
            logger.debug("Dropping done during tool round trip")
            return
        text = self.buffer.take()
        if text:
            self.history.append(ConversationTurn.assistant_text(text))
        self.state = Idle()
        if self.on_turn_complete is not None:
            self.on_turn_complete(text)

    async def _on_usage(self, event: StreamEvent) -> None:
        self.last_usage = dict(event.payload)

    async def _on_error(self, event: StreamEvent) -> None:
        logger.warning(
            "Server error event: %s (%s)",
            event.payload.get("message"),
            event.payload.get("code"),
        )
        self.errors.append(dict(event.payload))
        if not isinstance(self.state, ToolPending):
            self.buffer.reset()
            self.state = Idle()
        if self.on_error is not None:
            self.on_error(dict(event.payload))

    async def _on_tool_use(self, event: StreamEvent) -> None:
        tool_use_id = event.payload.get("id")
        name = event.payload.get("name")
        tool_input = event.payload.get("input") or {}
        if not tool_use_id or not name:
            logger.warning("Ignoring malformed tool_use event: %s", event.payload)
            return

        # Text streamed before the tool call precedes it in the history.
        text = self.buffer.take()
        if text:
            self.history.append(ConversationTurn.assistant_text(text))
        self.history.append(ConversationTurn.tool_use(tool_use_id, name, tool_input))
        self.state = ToolPending(tool_use_id)

        task = asyncio.create_task(self._run_tool(tool_use_id, name, tool_input))
        self._tool_tasks.add(task)
        task.add_done_callback(self._tool_tasks.discard)

    async def _run_tool(self, tool_use_id: str, name: str, tool_input: Dict[str, Any]) -> None:
        try:
            outcome = await self.tool_bridge.execute(name, tool_input)
            self.history.append(
                ConversationTurn.tool_result(
                    tool_use_id, outcome.content, is_error=outcome.is_error
                )
            )
            payload: Dict[str, Any] = {
                "type": "tool_result",
                "tool_use_id": tool_use_id,
                "content": outcome.content,
                "history": self._history_payload(),
            }
            if outcome.is_error:
                payload["is_error"] = True
            await self.send_with_ack(payload, tool_use_id)
        finally:
            if self.state == ToolPending(tool_use_id):
                self.state = Streaming()

    async def wait_for_tools(self) -> None:
        """Wait until every running tool round trip has sent its result."""
        while self._tool_tasks:
            await asyncio.gather(*list(self._tool_tasks))

    def close(self) -> None:
        self.buffer.close()
        for timer in self.pending_acks.values():
            timer.cancel()
        self.pending_acks.clear()


__all__ = [
    "ClientEngine",
    "EngineState",
    "Idle",
    "Streaming",
    "ToolPending",
    "Transport",
]
