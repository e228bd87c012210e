"""Account registration and login."""

from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from nearhelp.core.identity import Identity
from nearhelp.core.security import hash_password, verify_password
from nearhelp.models.user import User
from nearhelp.schemas.auth import RegisterRequest


def get_user_by_email(db: Session, email: str) -> User | None:
    return db.execute(select(User).where(User.email == email.lower())).scalar_one_or_none()


def create_user(db: Session, data: RegisterRequest) -> User:
    user = User(
        email=data.email.lower(),
        hashed_password=hash_password(data.password),
        display_name=data.display_name.strip(),
        phone=data.phone,
        language=data.language,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def authenticate_user(db: Session, email: str, password: str) -> User | None:
    """Return the user for valid credentials, None otherwise (including inactive)."""
    user = get_user_by_email(db, email)
    if not user or not verify_password(password, user.hashed_password):
        return None
    if not user.is_active:
        return None
    return user


def identity_of(user: User) -> Identity:
    return Identity(
        uid=user.id,
        display_name=user.display_name,
        email=user.email,
        phone=user.phone,
        language=user.language,
    )
