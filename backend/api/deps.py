"""Shared API dependencies: DB session, settings, blob store, auth, project ownership."""

from __future__ import annotations

from collections.abc import AsyncGenerator
from typing import Annotated

from fastapi import Depends, HTTPException, Path, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from backend.config import Settings
from backend.models.project import Project
from backend.models.user import User
from backend.services.auth_service import decode_access_token
from backend.services.blob_store import BlobStore
from backend.services.project_service import get_owned_project

security = HTTPBearer(auto_error=False)


def get_settings(request: Request) -> Settings:
    """Get application settings from app state."""
    settings: Settings = request.app.state.settings
    return settings


def get_blob_store(request: Request) -> BlobStore:
    """Get the blob store from app state."""
    store: BlobStore = request.app.state.blob_store
    return store


async def get_session(request: Request) -> AsyncGenerator[AsyncSession]:
    """Get a database session."""
    session_factory = request.app.state.session_factory
    async with session_factory() as session:
        yield session


async def get_current_user(
    request: Request,
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)] = None,
    session: AsyncSession = Depends(get_session),
) -> User | None:
    """Get current authenticated user, or None if not authenticated."""
    if credentials is None:
        return None

    settings: Settings = request.app.state.settings
    payload = decode_access_token(credentials.credentials, settings.secret_key)
    if payload is None:
        return None
    user_id = payload.get("sub")
    if not isinstance(user_id, str) or not user_id.isdigit():
        return None
    return await session.get(User, int(user_id))


async def require_auth(
    user: Annotated[User | None, Depends(get_current_user)],
) -> User:
    """Require authentication. Raises 401 if not authenticated."""
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user


async def require_owned_project(
    project_id: Annotated[str, Path(min_length=1, max_length=36)],
    user: Annotated[User, Depends(require_auth)],
    session: Annotated[AsyncSession, Depends(get_session)],
) -> Project:
    """Resolve the path's project and check the caller owns it (404/403 otherwise)."""
    return await get_owned_project(session, user, project_id)
