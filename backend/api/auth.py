"""Authentication API endpoints."""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from backend.api.deps import get_session, get_settings, require_auth
from backend.config import Settings
from backend.models.user import User
from backend.schemas.auth import LoginRequest, TokenResponse, UserResponse
from backend.services.auth_service import authenticate_user, issue_access_token

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])


@router.post("/login", response_model=TokenResponse)
async def login(
    body: LoginRequest,
    session: Annotated[AsyncSession, Depends(get_session)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> TokenResponse:
    """Exchange username and password for a bearer access token."""
    user = await authenticate_user(session, body.username, body.password)
    if user is None:
        logger.info("Failed login for %s", body.username)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid username or password",
        )
    return TokenResponse(access_token=issue_access_token(user, settings))


@router.get("/me", response_model=UserResponse)
async def me(user: Annotated[User, Depends(require_auth)]) -> UserResponse:
    """Return the authenticated user."""
    return UserResponse(
        id=user.id,
        username=user.username,
        display_name=user.display_name,
        is_admin=user.is_admin,
    )
