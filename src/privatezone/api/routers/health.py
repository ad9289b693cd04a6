"""Health endpoint."""

from __future__ import annotations

import logging

import asyncpg
from fastapi import APIRouter, Depends

from privatezone.api.deps import get_database
from privatezone.api.models import HealthResponse
from privatezone.db import Database

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["health"])


@router.get("/health", response_model=HealthResponse)
async def health(db: Database | None = Depends(get_database)) -> HealthResponse:
    """Report ``ok`` when the database answers, ``degraded`` otherwise."""
    if db is None or db.pool is None:
        return HealthResponse(status="degraded", database="unavailable")
    try:
        await db.fetchval("SELECT 1")
    except (OSError, asyncpg.PostgresError):
        logger.warning("Health check failed: DB pool unavailable")
        return HealthResponse(status="degraded", database="unavailable")
    return HealthResponse(status="ok", database="ok")
