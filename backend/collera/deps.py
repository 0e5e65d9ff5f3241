"""FastAPI dependencies resolving the per-app services stored on app.state."""
from typing import Optional

from fastapi import Depends, Header, Request

from collera.chat.manager import SessionManager
from collera.chat.service import ChatService
from collera.errors import AuthenticationError
from collera.identity.base import IdentityOracle


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    """Extract the token from an ``Authorization: Bearer <token>`` header."""
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def get_oracle(request: Request) -> IdentityOracle:
    return request.app.state.oracle


def get_chat_service(request: Request) -> ChatService:
    return request.app.state.chat_service


def get_sessions(request: Request) -> SessionManager:
    return request.app.state.sessions


def get_current_user(
    authorization: Optional[str] = Header(None),
    oracle: IdentityOracle = Depends(get_oracle),
) -> str:
    """Authenticate the request and return the caller's user id."""
    token = bearer_token(authorization)
    if token is None:
        raise AuthenticationError("Please log in to access this resource")
    return oracle.authenticate(token)
