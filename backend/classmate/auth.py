"""Authentication helpers and FastAPI security dependencies.

Requests authenticate with the `session-token` cookie set at login or, for
API clients, a bearer JWT whose `sid` claim names the server-side
session. Either way the session row must be live (not revoked, not
expired) and its user active; otherwise the dependency raises
HTTPException(401) so it can be used directly inside route dependencies.
"""

from typing import Optional

import jwt
from fastapi import Depends, HTTPException, Request, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlmodel import Session

from . import models, services
from .database import get_session

SESSION_COOKIE = "session-token"

bearer_scheme = HTTPBearer(auto_error=False)


def decode_token(token: str) -> dict:
    """Decode and verify a JWT token.

    Returns the decoded payload on success or raises an HTTPException
    with status 401 on failure.
    """
    try:
        return services.decode_access_token(token)
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="invalid token")


def get_current_session(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Security(bearer_scheme),
    db: Session = Depends(get_session),
) -> models.UserSession:
    """Resolve the caller's live `UserSession` (cookie first, then bearer)."""
    auth = services.AuthService(db)
    cookie = request.cookies.get(SESSION_COOKIE)
    if cookie:
        resolved = auth.resolve_session(session_token=cookie)
    elif credentials is not None:
        payload = decode_token(credentials.credentials)
        sid = payload.get("sid")
        if not sid or not payload.get("user_id"):
            raise HTTPException(status_code=401, detail="invalid token payload")
        resolved = auth.resolve_session(session_id=sid)
        if resolved and resolved[1].id != payload["user_id"]:
            resolved = None
    else:
        raise HTTPException(status_code=401, detail="not authenticated")
    if resolved is None:
        raise HTTPException(status_code=401, detail="session expired or revoked")
    user_session, user = resolved
    request.state.user = user
    return user_session


def get_current_user(
    request: Request,
    user_session: models.UserSession = Depends(get_current_session),
) -> models.User:
    """FastAPI dependency that returns the authenticated user."""
    return request.state.user


def require_role(*roles: models.Role):
    """Dependency factory rejecting users whose role is not in `roles` (403)."""

    def checker(user: models.User = Depends(get_current_user)) -> models.User:
        if user.role not in roles:
            raise HTTPException(status_code=403, detail="insufficient permissions")
        return user

    return checker
