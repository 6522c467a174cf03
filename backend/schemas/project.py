"""Project schemas."""

from __future__ import annotations

from pydantic import BaseModel, Field


class ProjectCreateRequest(BaseModel):
    """Request to create a project."""

    name: str = Field(min_length=1, max_length=200)


class ProjectResponse(BaseModel):
    """A project owned by the caller."""

    id: str
    name: str
    created_at: str
    updated_at: str
