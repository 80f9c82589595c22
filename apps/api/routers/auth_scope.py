"""Bearer-session dependencies: who is calling, and in which role."""

from dataclasses import dataclass
from typing import Callable, Optional

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from services.session_token import decode_session_token


auth_scheme = HTTPBearer(auto_error=False)


@dataclass
class AuthContext:
    user_id: str
    role: str
    email: Optional[str] = None


def ensure_user_scope(auth_user_id: str, supplied_user_id: Optional[str]) -> str:
    """Students may only name their own account in a request."""
    if supplied_user_id and supplied_user_id != auth_user_id:
        raise HTTPException(status_code=403, detail="user_id does not match authenticated session.")
    return auth_user_id


async def get_auth_context(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(auth_scheme),
) -> AuthContext:
    if not credentials or credentials.scheme.lower() != "bearer":
        raise HTTPException(status_code=401, detail="Missing Bearer session token.")

    try:
        claims = decode_session_token(credentials.credentials)
    except ValueError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc

    return AuthContext(
        user_id=str(claims["sub"]),
        role=str(claims["role"]),
        email=claims.get("email") or None,
    )


def require_role(role: str) -> Callable[..., AuthContext]:
    """Dependency factory rejecting sessions of any other role with 403."""

    async def _dependency(auth: AuthContext = Depends(get_auth_context)) -> AuthContext:
        if auth.role != role:
            raise HTTPException(status_code=403, detail=f"{role.capitalize()} access required.")
        return auth

    return _dependency


get_trainer_context = require_role("trainer")
get_student_context = require_role("student")
