"""
Session credential minting and verification.

Credentials are short-lived HS256 JWTs carrying ``{sessionId, jti, scope}``
plus ``iss``/``aud``/``iat``/``exp``. The server never stores them; a
credential is only verified at WebSocket handshake time.
"""

import time
import uuid
from typing import Any, Dict, Optional, Tuple

from jose import ExpiredSignatureError, JWTError, jwt
from jose.exceptions import JWTClaimsError
from pydantic import ValidationError as PydanticValidationError

from chatrelay.errors import (
    INVALID_PAYLOAD,
    INVALID_TOKEN,
    MISSING_TOKEN,
    AuthError,
)
from chatrelay.models import SessionClaims
from chatrelay.settings import settings

# JWT config
JWT_ALGORITHM = "HS256"
SESSION_SCOPE = "chat"

_REQUIRED_CLAIMS = ("sessionId", "jti", "exp")


def create_session_token(
    session_id: str,
    *,
    now: Optional[float] = None,
    ttl_seconds: Optional[int] = None,
) -> Tuple[str, str, int]:
    """
    Mint a credential bound to ``session_id``.

    Args:
        session_id: Session the credential grants access to
        now: Issue time (epoch seconds), defaults to the current time
        ttl_seconds: Lifetime, defaults to ``settings.token_ttl_seconds``

    Returns:
        (token, jti, exp) tuple
    """
    issued_at = int(now if now is not None else time.time())
    ttl = ttl_seconds if ttl_seconds is not None else settings.token_ttl_seconds
    jti = str(uuid.uuid4())
    exp = issued_at + ttl

    claims: Dict[str, Any] = {
        "sessionId": session_id,
        "jti": jti,
        "scope": SESSION_SCOPE,
        "iss": settings.jwt_issuer,
        "aud": settings.jwt_audience,
        "iat": issued_at,
        "exp": exp,
    }
    token = jwt.encode(claims, settings.jwt_secret, algorithm=JWT_ALGORITHM)
    return token, jti, exp


def verify_session_token(token: Optional[str]) -> SessionClaims:
    """
    Verify signature, expiry, issuer and audience of a credential and return its claims.

    Raises:
        AuthError: MISSING_TOKEN (400) when no token was supplied,
            INVALID_TOKEN (401) when the token fails verification,
            INVALID_PAYLOAD (401) when required claims are missing.
    """
    if not token:
        raise AuthError("Missing token", code=MISSING_TOKEN, status_code=400)

    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[JWT_ALGORITHM],
            audience=settings.jwt_audience,
            issuer=settings.jwt_issuer,
            # jose skips the aud/iss checks when the claim is absent
            options={"require_aud": True, "require_iss": True, "require_exp": True},
        )
    except ExpiredSignatureError as exc:
        raise AuthError("Token expired", code=INVALID_TOKEN) from exc
    except JWTClaimsError as exc:
        raise AuthError(f"Invalid token claims: {exc}", code=INVALID_TOKEN) from exc
    except JWTError as exc:
        raise AuthError("Invalid token", code=INVALID_TOKEN) from exc

    missing = [name for name in _REQUIRED_CLAIMS if not payload.get(name)]
    if missing:
        raise AuthError(
            "Token payload is missing required claims",
            code=INVALID_PAYLOAD,
            details={"missing": missing},
        )
    if payload.get("scope") != SESSION_SCOPE:
        raise AuthError("Token scope is not valid for chat", code=INVALID_PAYLOAD)

    try:
        return SessionClaims.model_validate(payload)
    except PydanticValidationError as exc:
        raise AuthError("Malformed token payload", code=INVALID_PAYLOAD) from exc


__all__ = [
    "JWT_ALGORITHM",
    "SESSION_SCOPE",
    "create_session_token",
    "verify_session_token",
]
