"""Authentication service: JWT access tokens and password hashing."""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

import bcrypt
from jose import JWTError, jwt
from sqlalchemy import select

from backend.models.user import User
from backend.services.datetime_service import format_iso, now_utc

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from backend.config import Settings

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
_DUMMY_PASSWORD_HASH = bcrypt.hashpw(b"workspace-backup-dummy", bcrypt.gensalt()).decode("utf-8")


def hash_password(password: str) -> str:
    """Hash a password using bcrypt."""
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Verify a password against its hash."""
    return bcrypt.checkpw(plain_password.encode("utf-8"), hashed_password.encode("utf-8"))


def create_access_token(data: dict[str, Any], secret_key: str, expires_minutes: int = 60) -> str:
    """Create a JWT access token."""
    to_encode = data.copy()
    expire = datetime.now(UTC) + timedelta(minutes=expires_minutes)
    to_encode.update({"exp": expire, "type": "access"})
    return str(jwt.encode(to_encode, secret_key, algorithm=ALGORITHM))


def decode_access_token(token: str, secret_key: str) -> dict[str, Any] | None:
    """Decode and validate a JWT access token."""
    try:
        payload: dict[str, Any] = jwt.decode(token, secret_key, algorithms=[ALGORITHM])
        if payload.get("type") != "access":
            return None
        return payload
    except JWTError:
        logger.debug("Failed to decode access token", exc_info=True)
        return None


async def authenticate_user(session: AsyncSession, username: str, password: str) -> User | None:
    """Authenticate a user by username and password."""
    stmt = select(User).where(User.username == username)
    result = await session.execute(stmt)
    user = result.scalar_one_or_none()
    if user is None:
        # Run a dummy hash check to reduce username timing side channels.
        verify_password(password, _DUMMY_PASSWORD_HASH)
        return None
    if not verify_password(password, user.password_hash):
        return None
    return user


def issue_access_token(user: User, settings: Settings) -> str:
    """Create an access token identifying ``user``."""
    return create_access_token(
        {"sub": str(user.id), "username": user.username},
        settings.secret_key,
        settings.access_token_expire_minutes,
    )


async def create_user(
    session: AsyncSession,
    username: str,
    password: str,
    *,
    display_name: str | None = None,
    is_admin: bool = False,
) -> User:
    """Create and persist a user."""
    now = format_iso(now_utc())
    user = User(
        username=username,
        password_hash=hash_password(password),
        display_name=display_name,
        is_admin=is_admin,
        created_at=now,
        updated_at=now,
    )
    session.add(user)
    await session.commit()
    await session.refresh(user)
    return user


async def ensure_admin_user(session: AsyncSession, settings: Settings) -> None:
    """Create the admin user if it doesn't exist."""
    stmt = select(User).where(User.username == settings.admin_username)
    result = await session.execute(stmt)
    if result.scalar_one_or_none() is not None:
        return
    await create_user(
        session,
        settings.admin_username,
        settings.admin_password,
        display_name="Admin",
        is_admin=True,
    )
    logger.info("Created admin user %s", settings.admin_username)
