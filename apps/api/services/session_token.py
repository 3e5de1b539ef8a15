"""Signed session tokens carrying the caller's user and optional organization."""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import JWTError, jwt

from config import settings
from services.tenancy import TenantKey


SESSION_TOKEN_TYPE = "pulse_session"
DEFAULT_ORG_ROLE = "org:member"


def create_session_token(
    user_id: str,
    org_id: Optional[str] = None,
    org_role: Optional[str] = None,
    expires_hours: Optional[int] = None,
) -> Dict[str, Any]:
    """Issue a session token; org claims make the organization the active tenant."""
    issued_at = datetime.now(timezone.utc)
    expires_at = issued_at + timedelta(hours=max(int(expires_hours or settings.JWT_EXPIRATION_HOURS or 24), 1))
    claims: Dict[str, Any] = {
        "sub": user_id,
        "type": SESSION_TOKEN_TYPE,
        "iat": int(issued_at.timestamp()),
        "exp": int(expires_at.timestamp()),
    }
    if org_id:
        claims.update(org_id=org_id, org_role=org_role or DEFAULT_ORG_ROLE)

    return {
        "token": jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM),
        "expires_at": int(expires_at.timestamp()),
    }


def decode_session_token(token: str) -> Dict[str, Any]:
    """Verify signature, expiry and token type. Raises ValueError when unusable."""
    try:
        claims = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except JWTError as exc:
        raise ValueError("Invalid or expired session token.") from exc

    if str(claims.get("type", "")).strip() != SESSION_TOKEN_TYPE:
        raise ValueError("Invalid session token type.")
    if not str(claims.get("sub", "")).strip():
        raise ValueError("Session token missing subject.")
    return claims


def tenant_from_claims(claims: Dict[str, Any]) -> TenantKey:
    org_id = str(claims.get("org_id", "") or "").strip()
    if org_id:
        return TenantKey(kind="org", id=org_id)
    return TenantKey(kind="user", id=str(claims["sub"]).strip())
