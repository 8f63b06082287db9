"""
Stream orchestrator: drives one model turn over a connection.

One invocation handles one inbound message and moves through
``IDLE -> RECEIVED -> STREAMING -> {DONE | TOOL_PENDING | ERROR}``. A turn
suspended in ``TOOL_PENDING`` is resumed by a later, independent invocation
carrying ``type: "tool_result"`` and the client's history.

Event order for a completed stream:

    started (chat only) / ack (tool_result only)
    delta*          one per text fragment
    usage           when the model reported token usage
    tool_use | done exactly one of them
"""

from __future__ import annotations

import uuid
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol

from pydantic import ValidationError as PydanticValidationError
from redis.asyncio import Redis

from chatrelay.errors import (
    TOKEN_LIMIT_EXCEEDED,
    ChatRelayError,
    InternalError,
    QuotaError,
    UpstreamError,
    ValidationError,
)
from chatrelay.logging_config import logger
from chatrelay.models import (
    ChatRequest,
    ConversationTurn,
    EventType,
    StreamEvent,
    ToolResultRequest,
)
from chatrelay.services import connection_registry
from chatrelay.services.history import (
    ensure_tool_result,
    history_to_api,
    rewrite_empty_tool_result,
    trim_history,
    validate_pairing,
)
from chatrelay.services.inference import Completion, InferenceClient, TextDelta
from chatrelay.services.tools import TOOL_DEFINITIONS
from chatrelay.services.usage_ledger import UsageLedger
from chatrelay.settings import settings


class TurnState(str, Enum):
    IDLE = "idle"
    RECEIVED = "received"
    STREAMING = "streaming"
    DONE = "done"
    TOOL_PENDING = "tool_pending"
    ERROR = "error"


class SendOutcome(str, Enum):
    DELIVERED = "delivered"
    GONE = "gone"


class EventSink(Protocol):
    async def send(self, event: Dict[str, Any]) -> SendOutcome:
        """Deliver one wire event; report GONE instead of raising when the peer left."""


class EventEmitter:
    """
    Stamps outbound events with a stream-local ``seq`` and hands them to the sink.
    """

    def __init__(self, sink: EventSink) -> None:
        self._sink = sink
        self._seq = 0
        self.gone = False

    async def emit(self, event_type: EventType, **payload: Any) -> SendOutcome:
        event = StreamEvent(type=event_type, seq=self._seq, payload=payload)
        self._seq += 1
        outcome = await self._sink.send(event.to_wire())
        if outcome is SendOutcome.GONE and not self.gone:
            self.gone = True
            logger.info("Recipient gone; continuing turn without delivery")
        return outcome

    async def error(self, exc: ChatRelayError) -> SendOutcome:
        payload: Dict[str, Any] = {"message": exc.message, "code": exc.code}
        if exc.details:
            payload["details"] = exc.details
        return await self.emit(EventType.ERROR, **payload)


class StreamOrchestrator:
    def __init__(
        self,
        redis: Redis,
        inference: InferenceClient,
        *,
        ledger: Optional[UsageLedger] = None,
        tools: Optional[List[Dict[str, Any]]] = None,
        history_window: Optional[int] = None,
    ) -> None:
        self.redis = redis
        self.inference = inference
        self.ledger = ledger or UsageLedger(redis)
        self.tools = tools if tools is not None else TOOL_DEFINITIONS
        self.history_window = history_window or settings.history_window

    async def handle(
        self, connection_id: str, payload: Dict[str, Any], sink: EventSink
    ) -> TurnState:
        """
        Process one inbound message. Never raises: every failure is reported
        in-band as an ``error`` event and the connection stays usable.
        """
        emitter = EventEmitter(sink)
        try:
            if isinstance(payload, dict) and payload.get("type") == "tool_result":
                return await self._handle_tool_result(connection_id, payload, emitter)
            return await self._handle_chat(connection_id, payload, emitter)
        except ChatRelayError as exc:
            logger.info(
                "Turn on connection %s failed: %s (%s)", connection_id, exc.message, exc.code
            )
            await emitter.error(exc)
            return TurnState.ERROR
        except Exception:
            error_id = uuid.uuid4().hex
            logger.exception(
                "Unhandled error in turn on connection %s (error_id=%s)",
                connection_id,
                error_id,
            )
            await emitter.error(
                InternalError(
                    "Internal error, please try again", details={"error_id": error_id}
                )
            )
            return TurnState.ERROR

    async def _handle_chat(
        self, connection_id: str, payload: Any, emitter: EventEmitter
    ) -> TurnState:
        try:
            request = ChatRequest.model_validate(payload)
        except PydanticValidationError as exc:
            raise ValidationError(
                "Malformed chat message",
                details={"errors": exc.errors(include_url=False, include_context=False)},
            ) from exc
        if not request.message.strip():
            raise ValidationError("Empty message")

        await emitter.emit(EventType.STARTED)

        session_id = await connection_registry.lookup(self.redis, connection_id)
        used = await self.ledger.get_usage(session_id)
        if used >= self.ledger.quota:
            raise QuotaError(
                "Token limit exceeded for this session",
                code=TOKEN_LIMIT_EXCEEDED,
                details={"session_total": used, "session_limit": self.ledger.quota},
            )

        history = trim_history(request.history, self.history_window)
        validate_pairing(history)
        messages = [*history, ConversationTurn.user_text(request.message)]
        return await self._stream(
            session_id, messages, emitter, model=request.model, system=request.system
        )

    async def _handle_tool_result(
        self, connection_id: str, payload: Dict[str, Any], emitter: EventEmitter
    ) -> TurnState:
        await emitter.emit(EventType.ACK, tool_use_id=payload.get("tool_use_id"))

        try:
            request = ToolResultRequest.model_validate(payload)
        except PydanticValidationError as exc:
            raise ValidationError(
                "Malformed tool_result message",
                details={"errors": exc.errors(include_url=False, include_context=False)},
            ) from exc

        history = ensure_tool_result(
            list(request.history),
            request.tool_use_id,
            request.content,
            is_error=request.is_error,
        )
        validate_pairing(history)
        history = rewrite_empty_tool_result(history, request.tool_use_id)

        session_id = await connection_registry.lookup(self.redis, connection_id)
        return await self._stream(
            session_id, history, emitter, model=request.model, system=request.system
        )

    async def _stream(
        self,
        session_id: str,
        messages: List[ConversationTurn],
        emitter: EventEmitter,
        *,
        model: Optional[str] = None,
        system: Optional[str] = None,
    ) -> TurnState:
        model = model or settings.default_model
        logger.debug(
            "Session %s streaming %s turns (model=%s)", session_id, len(messages), model
        )

        completion: Optional[Completion] = None
        async for item in self.inference.stream(
            messages=history_to_api(messages),
            tools=self.tools,
            model=model,
            system=system or settings.default_system_prompt,
            max_tokens=settings.max_output_tokens,
        ):
            if isinstance(item, TextDelta):
                await emitter.emit(EventType.DELTA, text=item.text)
            elif isinstance(item, Completion):
                completion = item

        if completion is None:
            raise UpstreamError("Inference stream ended without a completion")

        if completion.usage is not None:
            total = await self.ledger.add_usage(session_id, completion.usage.total)
            await emitter.emit(
                EventType.USAGE,
                input_tokens=completion.usage.input_tokens,
                output_tokens=completion.usage.output_tokens,
                session_total=total,
                session_limit=self.ledger.quota,
            )

        tool_use = completion.first_tool_use()
        if tool_use is not None:
            await emitter.emit(
                EventType.TOOL_USE,
                id=tool_use.get("id"),
                name=tool_use.get("name"),
                input=tool_use.get("input") or {},
            )
            logger.info(
                "Session %s suspended on tool %s (%s)",
                session_id,
                tool_use.get("name"),
                tool_use.get("id"),
            )
            return TurnState.TOOL_PENDING

        await emitter.emit(EventType.DONE)
        return TurnState.DONE


__all__ = [
    "EventEmitter",
    "EventSink",
    "SendOutcome",
    "StreamOrchestrator",
    "TurnState",
]
