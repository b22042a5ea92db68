"""Common API dependencies: web session user, device token context, admin key."""

import secrets
from dataclasses import dataclass
from typing import Optional

import jwt
from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlmodel import Session

from server.config import settings
from server.database import get_session
from server.services import token_service
from server.services.errors import Invalid
from server.services.token_service import TokenContext
from server.utils.security import decode_session_token

bearer_scheme = HTTPBearer(auto_error=False)


@dataclass
class WebUser:
    id: str
    email: str


def _unauthorized(error: str, message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"error": error, "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


def get_web_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> WebUser:
    """Identity asserted by the web session. Human sign-in happens elsewhere."""
    if credentials is None:
        raise _unauthorized("unauthenticated", "Authentication required")
    try:
        payload = decode_session_token(credentials.credentials)
    except jwt.PyJWTError:
        raise _unauthorized("unauthenticated", "Authentication required")

    if payload.get("type") != "session" or not payload.get("sub"):
        raise _unauthorized("unauthenticated", "Authentication required")
    return WebUser(id=payload["sub"], email=payload.get("email", ""))


def get_bearer_token(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> str:
    if credentials is None:
        raise _unauthorized("missing_token", "Bearer token required")
    return credentials.credentials


def get_device_context(
    token: str = Depends(get_bearer_token),
    session: Session = Depends(get_session),
) -> TokenContext:
    """Validate (and touch) the device token on the request."""
    try:
        return token_service.validate(token, session)
    except Invalid:
        raise _unauthorized(Invalid.code, Invalid.message)


def require_admin(x_admin_key: Optional[str] = Header(default=None)) -> None:
    if not settings.admin_key or not x_admin_key or not secrets.compare_digest(
        x_admin_key.encode(), settings.admin_key.encode()
    ):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required",
        )
