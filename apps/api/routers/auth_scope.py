"""Authentication dependencies that scope studio and billing calls to one identity."""

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from services.errors import FailureKind
from services.session_token import decode_session_token


auth_scheme = HTTPBearer(auto_error=False)


@dataclass
class AuthContext:
    user_id: str
    email: Optional[str] = None
    name: Optional[str] = None


def _unauthenticated(message: str) -> HTTPException:
    return HTTPException(
        status_code=401,
        detail={"kind": FailureKind.UNAUTHENTICATED.value, "message": message, "retryable": False},
    )


def ensure_user_scope(auth_user_id: str, supplied_user_id: Optional[str]) -> str:
    """Return authenticated user_id and reject cross-user attempts."""
    if supplied_user_id and supplied_user_id != auth_user_id:
        raise HTTPException(status_code=403, detail="user_id does not match authenticated session.")
    return auth_user_id


async def get_auth_context(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
) -> AuthContext:
    """Resolve the caller from a Bearer session token; nothing runs without one."""
    if not credentials or credentials.scheme.lower() != "bearer":
        raise _unauthenticated("Please sign in to create games.")

    try:
        claims = decode_session_token(credentials.credentials)
    except ValueError as exc:
        raise _unauthenticated(str(exc)) from exc

    return AuthContext(user_id=claims.user_id, email=claims.email, name=claims.name)
