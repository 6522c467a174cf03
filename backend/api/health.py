"""Health check endpoint."""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from backend.api.deps import get_session

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    status: str
    version: str
    database: str
    blob_store: str


@router.get("/api/health", response_model=HealthResponse)
async def health_check(
    request: Request,
    session: Annotated[AsyncSession, Depends(get_session)],
) -> HealthResponse:
    """Health check endpoint for monitoring and load balancers."""
    db_status = "ok"
    try:
        await session.execute(text("SELECT 1"))
    except Exception:
        logger.warning("Health check database query failed", exc_info=True)
        db_status = "error"

    blob_root = getattr(request.app.state.blob_store, "root", None)
    blob_status = "ok" if blob_root is None or blob_root.is_dir() else "error"

    healthy = db_status == "ok" and blob_status == "ok"
    return HealthResponse(
        status="ok" if healthy else "degraded",
        version=request.app.version,
        database=db_status,
        blob_store=blob_status,
    )
