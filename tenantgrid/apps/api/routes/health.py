from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from tenantgrid.apps.api.deps import get_db
from tenantgrid.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tenantgrid.apps.api.response import SuccessEnvelope, success_response
from tenantgrid.persistence.db import pool_stats


logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)


class HealthResponse(BaseModel):
    status: str
    database: str
    pool: dict[str, int | None]


@router.get("/health", response_model=SuccessEnvelope[HealthResponse])
async def health(request: Request, db: AsyncSession = Depends(get_db)) -> dict:
    # Unauthenticated; a database failure reports "degraded" rather than raising.
    database = "ok"
    try:
        await db.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.warning("health_database_unreachable error=%s", type(exc).__name__)
        database = "unavailable"
    payload = HealthResponse(
        status="ok" if database == "ok" else "degraded",
        database=database,
        pool=pool_stats(),
    )
    return success_response(request=request, data=payload)
