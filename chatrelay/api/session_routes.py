from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response, status
from pydantic import BaseModel, Field
from redis.asyncio import Redis

from chatrelay.deps import get_client_ip, get_redis, get_usage_ledger
from chatrelay.errors import ErrorResponse, http_error
from chatrelay.models import SessionGrant
from chatrelay.services.session_admission import get_session, issue_session
from chatrelay.services.usage_ledger import UsageLedger


router = APIRouter(tags=["sessions"])


class SessionUsageResponse(BaseModel):
    session_id: str = Field(..., alias="sessionId")
    tokens_used: int = Field(..., alias="tokensUsed")
    token_limit: int = Field(..., alias="tokenLimit")
    window_start: float | None = Field(default=None, alias="windowStart")


@router.post(
    "/sessions",
    response_model=SessionGrant,
    response_model_by_alias=True,
    responses={status.HTTP_429_TOO_MANY_REQUESTS: {"model": ErrorResponse}},
)
async def create_session_endpoint(
    request: Request,
    response: Response,
    redis: Redis = Depends(get_redis),
) -> SessionGrant:
    """
    Admit a new session for the calling IP and return its credential.
    """
    response.headers["Cache-Control"] = "no-store"
    return await issue_session(redis, get_client_ip(request))


@router.get(
    "/sessions/{session_id}/usage",
    response_model=SessionUsageResponse,
    response_model_by_alias=True,
)
async def get_session_usage_endpoint(
    session_id: str,
    redis: Redis = Depends(get_redis),
    ledger: UsageLedger = Depends(get_usage_ledger),
) -> SessionUsageResponse:
    """
    Token usage of a session in its current quota window.
    """
    if await get_session(redis, session_id) is None:
        raise http_error(
            status.HTTP_404_NOT_FOUND,
            error="NOT_FOUND",
            message=f"Session '{session_id}' not found",
        )
    record = await ledger.get_record(session_id)
    return SessionUsageResponse(
        sessionId=session_id,
        tokensUsed=record.tokens_used if record else 0,
        tokenLimit=ledger.quota,
        windowStart=record.window_start if record else None,
    )


__all__ = ["router"]
