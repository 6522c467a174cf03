"""SQLAlchemy ORM models for the workspace backup service."""

from backend.models.backup import ProjectAsset, ProjectFile, ProjectSyncManifest
from backend.models.base import Base
from backend.models.project import Project
from backend.models.user import User

__all__ = [
    "Base",
    "Project",
    "ProjectAsset",
    "ProjectFile",
    "ProjectSyncManifest",
    "User",
]
