"""FastAPI dependencies."""

from typing import Annotated

from fastapi import Depends, HTTPException, status
from fastapi.requests import HTTPConnection
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from nearhelp.core.identity import Identity
from nearhelp.core.security import decode_user_id
from nearhelp.db.session import get_db
from nearhelp.models.user import User
from nearhelp.services.auth_service import identity_of
from nearhelp.services.engine import EmergencyEngine

security = HTTPBearer(auto_error=False)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def get_current_user(
    db: Annotated[Session, Depends(get_db)],
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)],
) -> User:
    """Require an authenticated, active user."""
    if not credentials:
        raise _unauthorized("Not authenticated")
    user_id = decode_user_id(credentials.credentials)
    if user_id is None:
        raise _unauthorized("Invalid or expired token")
    user = db.get(User, user_id)
    if not user:
        raise _unauthorized("User not found")
    if not user.is_active:
        raise _unauthorized("User is inactive")
    return user


def get_identity(current_user: Annotated[User, Depends(get_current_user)]) -> Identity:
    return identity_of(current_user)


def get_engine(conn: HTTPConnection) -> EmergencyEngine:
    """The engine built at startup (see ``main.lifespan``)."""
    return conn.app.state.engine
