"""Project endpoints: the minimal metadata surface backups hang off."""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from backend.api.deps import get_session, require_auth
from backend.models.project import Project
from backend.models.user import User
from backend.schemas.project import ProjectCreateRequest, ProjectResponse
from backend.services.project_service import create_project, list_projects

router = APIRouter(prefix="/api/projects", tags=["projects"])


def _to_response(project: Project) -> ProjectResponse:
    return ProjectResponse(
        id=project.id,
        name=project.name,
        created_at=project.created_at,
        updated_at=project.updated_at,
    )


@router.post("", response_model=ProjectResponse, status_code=status.HTTP_201_CREATED)
async def create(
    body: ProjectCreateRequest,
    session: Annotated[AsyncSession, Depends(get_session)],
    user: Annotated[User, Depends(require_auth)],
) -> ProjectResponse:
    """Create a project owned by the caller."""
    return _to_response(await create_project(session, user, body.name))


@router.get("", response_model=list[ProjectResponse])
async def list_owned(
    session: Annotated[AsyncSession, Depends(get_session)],
    user: Annotated[User, Depends(require_auth)],
) -> list[ProjectResponse]:
    """List the caller's projects."""
    return [_to_response(p) for p in await list_projects(session, user)]
