"""
Redis access for the relay.

Sessions, connections and usage all live in Redis. Records are pydantic
models stored as JSON strings with a TTL, so expiry doubles as cleanup.
"""

from __future__ import annotations

import asyncio
from typing import Optional, Type, TypeVar
from weakref import WeakKeyDictionary

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from redis.asyncio import Redis

from .logging_config import logger
from .settings import settings

RecordT = TypeVar("RecordT", bound=BaseModel)

# redis.asyncio connections are tied to the loop that opened them; uvicorn runs
# one loop, while TestClient and scripts may start several.
_clients: "WeakKeyDictionary[asyncio.AbstractEventLoop, Redis]" = WeakKeyDictionary()


def get_redis_client() -> Redis:
    """Shared client for the running event loop, created on first use."""
    loop = asyncio.get_running_loop()
    client = _clients.get(loop)
    if client is None:
        client = Redis.from_url(settings.redis_url, decode_responses=True)
        _clients[loop] = client
        logger.debug("Opened Redis client for %s", settings.redis_url)
    return client


async def close_redis_client() -> None:
    client = _clients.pop(asyncio.get_running_loop(), None)
    if client is not None:
        await client.aclose()


async def store_record(redis: Redis, key: str, record: BaseModel, *, ttl_seconds: int) -> None:
    """Write ``record`` as JSON under ``key``, expiring after ``ttl_seconds``."""
    await redis.set(key, record.model_dump_json(), ex=ttl_seconds)


async def load_record(redis: Redis, key: str, model: Type[RecordT]) -> Optional[RecordT]:
    """
    Read the record under ``key``.

    Returns None when the key is missing or expired. A value that no longer
    matches ``model`` is logged and treated as missing.
    """
    raw = await redis.get(key)
    if raw is None:
        return None
    try:
        return model.model_validate_json(raw)
    except PydanticValidationError:
        logger.warning("Discarding unreadable %s at %s", model.__name__, key)
        return None


__all__ = [
    "close_redis_client",
    "get_redis_client",
    "load_record",
    "store_record",
]
