"""Authentication dependencies for API tenant scoping."""

import secrets
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBasic, HTTPBasicCredentials, HTTPBearer

from config import settings
from services.session_token import decode_session_token
from services.tenancy import TenantKey


ORG_ADMIN_ROLE = "org:admin"

auth_scheme = HTTPBearer(auto_error=False)
master_scheme = HTTPBasic(auto_error=False)


@dataclass
class AuthContext:
    user_id: str
    org_id: Optional[str] = None
    org_role: Optional[str] = None

    @property
    def tenant(self) -> TenantKey:
        """Organization tenant when the session carries one, otherwise the user."""
        if self.org_id:
            return TenantKey(kind="org", id=self.org_id)
        return TenantKey(kind="user", id=self.user_id)


async def get_auth_context(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
) -> AuthContext:
    """Resolve authenticated user (and active organization) from Bearer session token."""
    if not credentials or credentials.scheme.lower() != "bearer":
        raise HTTPException(status_code=401, detail="Missing Bearer session token.")

    try:
        payload = decode_session_token(credentials.credentials)
    except ValueError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc

    return AuthContext(
        user_id=str(payload.get("sub", "")),
        org_id=str(payload.get("org_id", "") or "") or None,
        org_role=str(payload.get("org_role", "") or "") or None,
    )


async def require_tenant_admin(auth: AuthContext = Depends(get_auth_context)) -> AuthContext:
    """Organization-scoped lifecycle actions are limited to org admins."""
    if auth.org_id and auth.org_role != ORG_ADMIN_ROLE:
        raise HTTPException(status_code=403, detail="Only organization admins can manage pipeline jobs.")
    return auth


async def require_master(credentials: Optional[HTTPBasicCredentials] = Depends(master_scheme)) -> None:
    """HTTP Basic guard for global kill switches."""
    if credentials is None:
        raise HTTPException(status_code=401, detail="Master credentials required.", headers={"WWW-Authenticate": "Basic"})
    user_ok = secrets.compare_digest(credentials.username.encode(), settings.MASTER_AUTH_USERNAME.encode())
    password_ok = secrets.compare_digest(credentials.password.encode(), settings.MASTER_AUTH_PASSWORD.encode())
    if not (user_ok and password_ok):
        raise HTTPException(status_code=401, detail="Invalid master credentials.", headers={"WWW-Authenticate": "Basic"})
