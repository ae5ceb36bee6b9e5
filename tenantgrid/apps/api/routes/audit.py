from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, ConfigDict
from sqlalchemy.ext.asyncio import AsyncSession

from tenantgrid.apps.api.deps import Principal, get_db, require_role
from tenantgrid.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tenantgrid.apps.api.response import SuccessEnvelope, success_response
from tenantgrid.services.audit import list_events


router = APIRouter(prefix="/audit", tags=["audit"], responses=DEFAULT_ERROR_RESPONSES)


class AuditEventResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    occurred_at: datetime
    tenant_id: str | None
    actor_type: str
    actor_id: str | None
    actor_role: str | None
    event_type: str
    outcome: str
    resource_type: str | None
    resource_id: str | None
    request_id: str | None
    metadata_json: dict[str, Any] | None
    error_code: str | None


@router.get("/events", response_model=SuccessEnvelope[list[AuditEventResponse]])
async def list_audit_events(
    request: Request,
    event_type: str | None = None,
    limit: int = Query(default=50, ge=1, le=200),
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Always scoped to the caller's tenant; there is no cross-tenant audit view.
    events = await list_events(db, tenant_id=principal.tenant_id, event_type=event_type, limit=limit)
    return success_response(request=request, data=[AuditEventResponse.model_validate(row) for row in events])
