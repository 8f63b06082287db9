"""
WebSocket endpoint of the streamed message protocol.

Handshake: ``/ws?token=<credential>``. The socket is accepted first so that a
failed handshake can be reported as a JSON ``{error, message, code}`` frame
before the close (4400 for a missing token, 4401 otherwise).

Every inbound frame is handed to the orchestrator as its own task; frames of
one connection are therefore processed concurrently, and in-flight turns keep
running after the client disconnects (their sends report ``GONE``).
"""

from __future__ import annotations

import asyncio
import json
import uuid
from typing import Any, Dict, Optional, Set

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from redis.asyncio import Redis
from starlette.websockets import WebSocketState

from chatrelay.deps import get_client_ip, get_orchestrator, get_redis
from chatrelay.errors import AuthError, ValidationError
from chatrelay.log_sanitizer import sanitize_query_for_log
from chatrelay.logging_config import logger
from chatrelay.services import connection_registry
from chatrelay.services.orchestrator import (
    EventEmitter,
    SendOutcome,
    StreamOrchestrator,
)

router = APIRouter(tags=["chat"])

CLOSE_BAD_REQUEST = 4400
CLOSE_UNAUTHORIZED = 4401

# Strong references to running turns; they outlive the handler that spawned them.
_inflight_turns: Set[asyncio.Task] = set()


class WebSocketSink:
    """EventSink over a Starlette WebSocket."""

    def __init__(self, websocket: WebSocket) -> None:
        self.websocket = websocket
        self._gone = False

    async def send(self, event: Dict[str, Any]) -> SendOutcome:
        if self._gone or self.websocket.application_state != WebSocketState.CONNECTED:
            return SendOutcome.GONE
        try:
            await self.websocket.send_json(event)
        except (WebSocketDisconnect, RuntimeError, OSError):
            self._gone = True
            return SendOutcome.GONE
        return SendOutcome.DELIVERED

    def mark_gone(self) -> None:
        self._gone = True


async def _reject(websocket: WebSocket, exc: AuthError) -> None:
    body = exc.to_response().model_dump(exclude_none=True)
    await websocket.send_json(body)
    close_code = CLOSE_BAD_REQUEST if exc.status_code == 400 else CLOSE_UNAUTHORIZED
    await websocket.close(code=close_code, reason=exc.code)


@router.websocket("/ws")
async def chat_socket(
    websocket: WebSocket,
    token: Optional[str] = None,
    redis: Redis = Depends(get_redis),
    orchestrator: StreamOrchestrator = Depends(get_orchestrator),
) -> None:
    await websocket.accept()

    connection_id = uuid.uuid4().hex
    ip = get_client_ip(websocket)
    logger.info(
        "WS connect %s from %s, query=%s",
        connection_id,
        ip,
        sanitize_query_for_log(websocket.query_params),
    )

    try:
        await connection_registry.register(redis, connection_id, token, ip)
    except AuthError as exc:
        logger.info("WS handshake rejected for %s: %s (%s)", ip, exc.message, exc.code)
        await _reject(websocket, exc)
        return

    sink = WebSocketSink(websocket)
    started = 0
    try:
        while True:
            raw = await websocket.receive_text()
            try:
                payload = json.loads(raw)
            except json.JSONDecodeError:
                await EventEmitter(sink).error(ValidationError("Message is not valid JSON"))
                continue

            task = asyncio.create_task(
                orchestrator.handle(connection_id, payload, sink),
                name=f"turn-{connection_id}",
            )
            _inflight_turns.add(task)
            task.add_done_callback(_inflight_turns.discard)
            started += 1
    except WebSocketDisconnect as exc:
        logger.info(
            "WS disconnect %s (code=%s, turns=%s)", connection_id, exc.code, started
        )
    finally:
        sink.mark_gone()
        await connection_registry.unregister(redis, connection_id)


__all__ = ["WebSocketSink", "router"]
