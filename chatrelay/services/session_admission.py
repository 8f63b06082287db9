"""
Session admission gate: per-IP rate limiting and credential minting.
"""

import time
import uuid
from typing import Optional

from redis.asyncio import Redis

from chatrelay.errors import TOO_MANY_SESSIONS, QuotaError
from chatrelay.logging_config import logger
from chatrelay.models import SessionGrant, SessionRecord
from chatrelay.redis_client import load_record, store_record
from chatrelay.services.jwt_auth_service import create_session_token
from chatrelay.settings import settings

# Redis key templates
SESSION_KEY = "chatrelay:session:{session_id}"
IP_SESSIONS_KEY = "chatrelay:ip:{ip}:sessions"


async def count_active_sessions(
    redis: Redis, ip: str, *, now: Optional[float] = None
) -> int:
    """
    Drop expired members of the IP's session set and count what is left.
    """
    now = now if now is not None else time.time()
    key = IP_SESSIONS_KEY.format(ip=ip)
    await redis.zremrangebyscore(key, 0, now)
    return int(await redis.zcard(key))


async def issue_session(
    redis: Redis, ip: str, *, now: Optional[float] = None
) -> SessionGrant:
    """
    Admit a new session for ``ip`` and mint its credential.

    Args:
        redis: Registry client
        ip: Resolved client IP
        now: Admission time (epoch seconds), defaults to the current time

    Returns:
        SessionGrant with the signed token and the new session id

    Raises:
        QuotaError: TOO_MANY_SESSIONS when the IP already holds the maximum
            number of live sessions
    """
    now = now if now is not None else time.time()
    active = await count_active_sessions(redis, ip, now=now)
    if active >= settings.max_sessions_per_ip:
        logger.info(
            "Session admission rejected for ip=%s (active=%s, limit=%s)",
            ip,
            active,
            settings.max_sessions_per_ip,
        )
        raise QuotaError(
            "Too many sessions from this IP",
            code=TOO_MANY_SESSIONS,
            details={"limit": settings.max_sessions_per_ip},
        )

    ttl = settings.session_ttl_seconds
    session_id = str(uuid.uuid4())
    record = SessionRecord(
        session_id=session_id,
        ip=ip,
        created_at=now,
        expires_at=now + ttl,
    )
    await store_record(redis, SESSION_KEY.format(session_id=session_id), record, ttl_seconds=ttl)

    ip_key = IP_SESSIONS_KEY.format(ip=ip)
    await redis.zadd(ip_key, {session_id: record.expires_at})
    await redis.expire(ip_key, ttl)

    token, _jti, _exp = create_session_token(session_id, now=now)
    logger.info("Session %s admitted for ip=%s (active=%s)", session_id, ip, active + 1)
    return SessionGrant(token=token, session_id=session_id)


async def get_session(redis: Redis, session_id: str) -> Optional[SessionRecord]:
    return await load_record(redis, SESSION_KEY.format(session_id=session_id), SessionRecord)


__all__ = [
    "IP_SESSIONS_KEY",
    "SESSION_KEY",
    "count_active_sessions",
    "get_session",
    "issue_session",
]
