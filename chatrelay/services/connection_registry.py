"""
Binding of live WebSocket connections to sessions.

The connection record is the only link from a connection id to its session.
It expires together with the credential used at handshake time and is removed
explicitly on disconnect.
"""

import time
from typing import Optional

from redis.asyncio import Redis

from chatrelay.errors import INVALID_TOKEN, AuthError, NoSessionError
from chatrelay.logging_config import logger
from chatrelay.models import ConnectionRecord
from chatrelay.redis_client import load_record, store_record
from chatrelay.services.jwt_auth_service import verify_session_token

# Redis key template
CONNECTION_KEY = "chatrelay:connection:{connection_id}"


async def register(
    redis: Redis,
    connection_id: str,
    token: Optional[str],
    ip: str,
    *,
    now: Optional[float] = None,
) -> ConnectionRecord:
    """
    Verify the handshake credential and persist the connection binding.

    Raises:
        AuthError: see ``verify_session_token``; also INVALID_TOKEN when the
            credential has no remaining lifetime.
    """
    claims = verify_session_token(token)
    now = now if now is not None else time.time()

    ttl = int(claims.exp - now)
    if ttl <= 0:
        raise AuthError("Token expired", code=INVALID_TOKEN)

    record = ConnectionRecord(
        connection_id=connection_id,
        session_id=claims.session_id,
        jti=claims.jti,
        ip=ip,
        created_at=now,
        credential_expiry=float(claims.exp),
    )
    await store_record(
        redis, CONNECTION_KEY.format(connection_id=connection_id), record, ttl_seconds=ttl
    )
    logger.info(
        "Connection %s registered for session %s (ip=%s, ttl=%ss)",
        connection_id,
        claims.session_id,
        ip,
        ttl,
    )
    return record


async def get_connection(redis: Redis, connection_id: str) -> Optional[ConnectionRecord]:
    return await load_record(
        redis, CONNECTION_KEY.format(connection_id=connection_id), ConnectionRecord
    )


async def lookup(redis: Redis, connection_id: str) -> str:
    """
    Return the session id bound to ``connection_id``.

    Raises:
        NoSessionError: the connection is unknown or its record has expired
    """
    record = await get_connection(redis, connection_id)
    if record is None:
        raise NoSessionError("No session bound to this connection")
    return record.session_id


async def unregister(redis: Redis, connection_id: str) -> None:
    await redis.delete(CONNECTION_KEY.format(connection_id=connection_id))
    logger.info("Connection %s unregistered", connection_id)


__all__ = ["CONNECTION_KEY", "get_connection", "lookup", "register", "unregister"]
