"""Project ownership: creation, listing and access checks."""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING

from sqlalchemy import select

from backend.exceptions import ProjectAccessError, ProjectNotFoundError
from backend.models.project import Project
from backend.services.datetime_service import format_iso, now_utc

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from backend.models.user import User


async def create_project(session: AsyncSession, owner: User, name: str) -> Project:
    """Create a new, empty project owned by ``owner``."""
    now = format_iso(now_utc())
    project = Project(
        id=str(uuid.uuid4()),
        owner_id=owner.id,
        name=name,
        created_at=now,
        updated_at=now,
    )
    session.add(project)
    await session.commit()
    return project


async def list_projects(session: AsyncSession, owner: User) -> list[Project]:
    """List the projects owned by ``owner``, newest first."""
    stmt = (
        select(Project)
        .where(Project.owner_id == owner.id)
        .order_by(Project.created_at.desc(), Project.id)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def get_owned_project(session: AsyncSession, user: User, project_id: str) -> Project:
    """Return the project if ``user`` owns it.

    Raises ProjectNotFoundError if it does not exist and ProjectAccessError
    if it belongs to someone else.
    """
    project = await session.get(Project, project_id)
    if project is None:
        raise ProjectNotFoundError(f"Project not found: {project_id}")
    if project.owner_id != user.id:
        raise ProjectAccessError("Not allowed to access this project")
    return project
