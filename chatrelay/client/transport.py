"""
Network side of the chat client: session admission over HTTP and the
WebSocket connection, with reconnection.
"""

from __future__ import annotations

import asyncio
import json
import time
from typing import Any, Dict, Optional

import httpx
import websockets
from jose import JWTError, jwt
from websockets.exceptions import ConnectionClosed, InvalidHandshake
from websockets.protocol import State

from chatrelay.client.engine import ClientEngine
from chatrelay.errors import (
    INVALID_PAYLOAD,
    INVALID_TOKEN,
    MISSING_TOKEN,
    QuotaError,
    UpstreamError,
)
from chatrelay.logging_config import logger
from chatrelay.models import SessionGrant

# Credentials this close to expiry are not reused for a reconnect.
CREDENTIAL_REUSE_MARGIN_SECONDS = 5

_HANDSHAKE_ERRORS = {MISSING_TOKEN, INVALID_TOKEN, INVALID_PAYLOAD}


def to_ws_url(base_url: str) -> str:
    url = base_url.rstrip("/")
    if url.startswith("https://"):
        return "wss://" + url[len("https://"):]
    if url.startswith("http://"):
        return "ws://" + url[len("http://"):]
    return url


class ChatClient:
    RECONNECT_BASE_S = 0.5
    RECONNECT_CAP_S = 30.0

    def __init__(
        self,
        base_url: str,
        engine: ClientEngine,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
        ws_url: Optional[str] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.ws_url = (ws_url or to_ws_url(self.base_url)).rstrip("/") + "/ws"
        self.engine = engine
        self._owns_http = http_client is None
        self._http = http_client or httpx.AsyncClient(base_url=self.base_url, timeout=10.0)

        self.grant: Optional[SessionGrant] = None
        self._credential_exp: Optional[float] = None
        self._ws: Optional[Any] = None
        self._closing = False
        self._reconnect_attempts = 0

    # -- Session admission --

    async def request_session(self) -> SessionGrant:
        """
        POST /sessions and remember the returned credential.

        Raises:
            QuotaError: the server refused admission (429)
            UpstreamError: any other failure
        """
        try:
            response = await self._http.post(f"{self.base_url}/sessions")
        except httpx.HTTPError as exc:
            raise UpstreamError(f"Session request failed: {exc}") from exc

        if response.status_code == 429:
            body = _safe_json(response)
            raise QuotaError(body.get("message") or "Too many sessions from this IP")
        if not response.is_success:
            raise UpstreamError(f"Session request failed with HTTP {response.status_code}")

        self.grant = SessionGrant.model_validate(response.json())
        self._credential_exp = _read_expiry(self.grant.token)
        logger.info("Admitted session %s", self.grant.session_id)
        return self.grant

    def credential_valid(self, now: Optional[float] = None) -> bool:
        if self.grant is None or self._credential_exp is None:
            return False
        now = now if now is not None else time.time()
        return self._credential_exp - now > CREDENTIAL_REUSE_MARGIN_SECONDS

    # -- Transport --

    @property
    def is_open(self) -> bool:
        return self._ws is not None and self._ws.state is State.OPEN

    async def send_json(self, data: Dict[str, Any]) -> bool:
        if not self.is_open:
            return False
        try:
            await self._ws.send(json.dumps(data, ensure_ascii=False))
        except ConnectionClosed:
            return False
        return True

    async def connect(self) -> None:
        """Open the WebSocket, re-admitting when the credential is missing or stale."""
        if not self.credential_valid():
            await self.request_session()

        url = f"{self.ws_url}?token={self.grant.token}"
        logger.info("Connecting to %s (attempt %d)", self.ws_url, self._reconnect_attempts + 1)
        self._ws = await websockets.connect(url, open_timeout=10, close_timeout=5)
        self._reconnect_attempts = 0
        await self.engine.attach(self)

    async def _receive_loop(self) -> None:
        async for raw in self._ws:
            try:
                data = json.loads(raw)
            except (json.JSONDecodeError, TypeError):
                logger.warning("Ignoring non-JSON frame")
                continue
            if not isinstance(data, dict):
                continue

            if "type" not in data and data.get("error") in _HANDSHAKE_ERRORS:
                # The server reports a failed handshake, then closes.
                logger.warning("Handshake rejected: %s", data.get("message"))
                self.grant = None
                self._credential_exp = None
                continue

            await self.engine.handle_event(data)

    async def run(self) -> None:
        """
        Keep a connection open until ``close()``: connect, pump events into the
        engine, and reconnect with exponential backoff after every drop.
        """
        while not self._closing:
            try:
                await self.connect()
                await self._receive_loop()
            except (ConnectionClosed, InvalidHandshake, OSError) as exc:
                logger.warning("WS connection lost: %s", exc)
            except QuotaError as exc:
                logger.error("Session admission refused: %s", exc.message)
            except UpstreamError as exc:
                logger.warning("%s", exc.message)
            finally:
                self.engine.detach()
                self._ws = None

            if self._closing:
                break
            await asyncio.sleep(self._next_backoff())

    def _next_backoff(self) -> float:
        self._reconnect_attempts += 1
        return min(
            self.RECONNECT_BASE_S * (2 ** (self._reconnect_attempts - 1)),
            self.RECONNECT_CAP_S,
        )

    async def close(self) -> None:
        self._closing = True
        if self._ws is not None:
            await self._ws.close()
        self.engine.detach()
        if self._owns_http:
            await self._http.aclose()


def _safe_json(response: httpx.Response) -> Dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


def _read_expiry(token: str) -> Optional[float]:
    """
    ``exp`` of a credential, read without verification (the client has no key).
    """
    try:
        claims = jwt.get_unverified_claims(token)
    except JWTError:
        return None
    exp = claims.get("exp")
    return float(exp) if isinstance(exp, (int, float)) else None


__all__ = ["ChatClient", "to_ws_url"]
