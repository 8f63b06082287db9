from typing import Optional

from fastapi import Depends
from redis.asyncio import Redis
from starlette.requests import HTTPConnection

from .redis_client import get_redis_client
from .services.inference import AnthropicInferenceClient, InferenceClient
from .services.orchestrator import StreamOrchestrator
from .services.usage_ledger import UsageLedger

_inference_client: Optional[InferenceClient] = None


async def get_redis() -> Redis:
    """
    FastAPI dependency that provides a shared Redis client.

    It delegates to chatrelay.redis_client.get_redis_client() so that the
    HTTP routes and the WebSocket handler share the same underlying
    connection pool. Tests override this dependency with an in-memory fake.
    """
    return get_redis_client()


async def get_inference_client() -> InferenceClient:
    """
    Process-wide inference client, created on first use.
    """
    global _inference_client
    if _inference_client is None:
        _inference_client = AnthropicInferenceClient()
    return _inference_client


async def get_usage_ledger(redis: Redis = Depends(get_redis)) -> UsageLedger:
    return UsageLedger(redis)


async def get_orchestrator(
    redis: Redis = Depends(get_redis),
    inference: InferenceClient = Depends(get_inference_client),
    ledger: UsageLedger = Depends(get_usage_ledger),
) -> StreamOrchestrator:
    return StreamOrchestrator(redis, inference, ledger=ledger)


def get_client_ip(conn: HTTPConnection) -> str:
    """
    Resolve the originating client IP of a request or WebSocket handshake.

    Priority:
    1. X-Forwarded-For (first hop, set by proxies / load balancers)
    2. X-Real-IP (nginx)
    3. the socket peer
    """
    forwarded = conn.headers.get("X-Forwarded-For")
    if forwarded:
        # X-Forwarded-For may carry a chain; the first entry is the client.
        first = forwarded.split(",")[0].strip()
        if first:
            return first

    real_ip = conn.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()

    if conn.client:
        return conn.client.host

    return "unknown"


__all__ = [
    "get_client_ip",
    "get_inference_client",
    "get_orchestrator",
    "get_redis",
    "get_usage_ledger",
]
