from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class SessionRecord(BaseModel):
    """
    A logical conversation window minted by the admission gate.
    """

    session_id: str = Field(..., description="Session id (uuid4)")
    ip: str = Field(..., description="Originating client IP")
    created_at: float = Field(..., description="Creation timestamp (epoch seconds)")
    expires_at: float = Field(..., description="Expiry timestamp (epoch seconds)")


class SessionGrant(BaseModel):
    """
    Response of a successful admission: the signed credential and its session id.
    """

    model_config = ConfigDict(populate_by_name=True)

    token: str = Field(..., description="Signed bearer credential for the WebSocket handshake")
    session_id: str = Field(..., alias="sessionId", description="Session the credential is bound to")


class SessionClaims(BaseModel):
    """
    Verified claims of a session credential.
    """

    session_id: str = Field(..., alias="sessionId")
    jti: str
    scope: str = "chat"
    iat: Optional[int] = None
    exp: int

    model_config = ConfigDict(populate_by_name=True)


class ConnectionRecord(BaseModel):
    """
    Binding of a live WebSocket connection to a session.
    """

    connection_id: str = Field(..., description="Server-side connection id")
    session_id: str = Field(..., description="Bound session id")
    jti: str = Field(..., description="Credential id used at handshake")
    ip: str = Field(..., description="Client IP at handshake")
    created_at: float = Field(..., description="Handshake timestamp (epoch seconds)")
    credential_expiry: float = Field(
        ..., description="Credential expiry (epoch seconds); the record expires with it"
    )


class UsageRecord(BaseModel):
    """
    Token usage of a session inside its current quota window.
    """

    session_id: str
    tokens_used: int = Field(0, ge=0)
    window_start: float = Field(..., description="Start of the quota window (epoch seconds)")
    last_seen: float = Field(..., description="Last ledger update (epoch seconds)")


__all__ = [
    "ConnectionRecord",
    "SessionClaims",
    "SessionGrant",
    "SessionRecord",
    "UsageRecord",
]
