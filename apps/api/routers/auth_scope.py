"""Authentication dependencies for API user scoping."""

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from config import settings
from services.session_token import decode_session_token


auth_scheme = HTTPBearer(auto_error=False)


@dataclass
class AuthContext:
    user_id: str
    email: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.user_id in set(settings.ADMIN_USER_IDS or [])


def ensure_user_scope(auth: AuthContext, supplied_user_id: Optional[str]) -> str:
    """Return the target user_id; only admins may act on another user."""
    if supplied_user_id and supplied_user_id != auth.user_id and not auth.is_admin:
        raise HTTPException(status_code=403, detail="user_id does not match authenticated session.")
    return supplied_user_id or auth.user_id


async def get_auth_context(
    request: Request,
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
) -> AuthContext:
    """Resolve authenticated user from Bearer session token."""
    if not credentials or credentials.scheme.lower() != "bearer":
        raise HTTPException(status_code=401, detail="Missing Bearer session token.")

    try:
        payload = decode_session_token(credentials.credentials)
    except ValueError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc

    auth = AuthContext(
        user_id=str(payload.get("sub", "")),
        email=str(payload.get("email", "")) or None,
    )
    # Rate limits key on the verified caller.
    request.state.auth_user_id = auth.user_id
    return auth


async def require_admin(auth: AuthContext = Depends(get_auth_context)) -> AuthContext:
    """Allow only user ids listed in ADMIN_USER_IDS."""
    if not auth.is_admin:
        raise HTTPException(status_code=403, detail="Admin access required.")
    return auth
