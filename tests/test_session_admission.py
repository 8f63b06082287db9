import pytest

from chatrelay.errors import TOO_MANY_SESSIONS, QuotaError
from chatrelay.services.jwt_auth_service import verify_session_token
from chatrelay.services.session_admission import (
    IP_SESSIONS_KEY,
    SESSION_KEY,
    count_active_sessions,
    get_session,
    issue_session,
)
from chatrelay.settings import settings


@pytest.mark.asyncio
async def test_issue_session_persists_record_and_mints_token(redis, clock):
    grant = await issue_session(redis, "10.0.0.1", now=clock())

    record = await get_session(redis, grant.session_id)
    assert record is not None
    assert record.ip == "10.0.0.1"
    assert record.expires_at == pytest.approx(clock() + settings.session_ttl_seconds)
    assert await redis.ttl(SESSION_KEY.format(session_id=grant.session_id)) == settings.session_ttl_seconds

    claims = verify_session_token(grant.token)
    assert claims.session_id == grant.session_id
    assert claims.scope == "chat"
    assert claims.jti


@pytest.mark.asyncio
async def test_sixth_session_for_same_ip_is_rejected(redis, clock):
    for _ in range(settings.max_sessions_per_ip):
        await issue_session(redis, "10.0.0.2", now=clock())

    with pytest.raises(QuotaError) as exc_info:
        await issue_session(redis, "10.0.0.2", now=clock())

    assert exc_info.value.code == TOO_MANY_SESSIONS
    assert exc_info.value.status_code == 429
    assert await count_active_sessions(redis, "10.0.0.2", now=clock()) == settings.max_sessions_per_ip


@pytest.mark.asyncio
async def test_admission_succeeds_again_after_a_session_expires(redis, clock):
    await issue_session(redis, "10.0.0.3", now=clock())
    clock.advance(60)
    for _ in range(settings.max_sessions_per_ip - 1):
        await issue_session(redis, "10.0.0.3", now=clock())

    with pytest.raises(QuotaError):
        await issue_session(redis, "10.0.0.3", now=clock())

    # Only the first session has expired.
    clock.advance(settings.session_ttl_seconds - 60 + 1)
    grant = await issue_session(redis, "10.0.0.3", now=clock())
    assert grant.session_id

    with pytest.raises(QuotaError):
        await issue_session(redis, "10.0.0.3", now=clock())


@pytest.mark.asyncio
async def test_limits_are_tracked_per_ip(redis, clock):
    for _ in range(settings.max_sessions_per_ip):
        await issue_session(redis, "10.0.0.4", now=clock())

    grant = await issue_session(redis, "10.0.0.5", now=clock())
    assert grant.session_id
    assert await redis.zcard(IP_SESSIONS_KEY.format(ip="10.0.0.5")) == 1


@pytest.mark.asyncio
async def test_get_session_returns_none_for_unknown_id(redis):
    assert await get_session(redis, "missing") is None
