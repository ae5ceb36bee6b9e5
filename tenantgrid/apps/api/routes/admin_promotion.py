from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from tenantgrid.apps.api.deps import Principal, get_actor, get_db, require_role
from tenantgrid.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tenantgrid.apps.api.response import SuccessEnvelope, success_response
from tenantgrid.services.admin_promotion import get_admin_promotion_service, impact_as_dict
from tenantgrid.services.audit import AuditActor


router = APIRouter(prefix="/admin-promotion", tags=["admin-promotion"], responses=DEFAULT_ERROR_RESPONSES)


class PromoteRequest(BaseModel):
    user_id: str = Field(min_length=1)
    reason: str | None = Field(default=None, max_length=500)
    force_transfer: bool = False
    confirmation_code: str | None = Field(default=None, max_length=32)


class PromotionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    tenant_id: str
    new_admin_id: str
    previous_admin_id: str | None
    assignment_id: str
    transferred: bool


class ImpactResponse(BaseModel):
    tenant_id: str
    target_user_id: str
    current_admin_id: str | None
    requires_confirmation: bool
    current_admin_activity: dict[str, int]
    changes: list[str]
    recommendations: list[dict[str, str]]


class UserResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    tenant_id: str
    email: str | None
    name: str | None
    role: str
    is_active: bool
    is_tenant_admin: bool
    created_at: datetime | None = None


class CurrentAdminResponse(BaseModel):
    has_admin: bool
    admin: UserResponse | None


class DeletionCheckResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: str
    can_delete: bool
    reason: str | None


@router.post("/promote-system-admin", response_model=SuccessEnvelope[PromotionResponse])
async def promote_system_admin(
    request: Request,
    payload: PromoteRequest,
    principal: Principal = Depends(require_role("admin")),
    actor: AuditActor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
) -> dict:
    result = await get_admin_promotion_service().promote(
        db,
        tenant_id=principal.tenant_id,
        target_user_id=payload.user_id,
        reason=payload.reason,
        force_transfer=payload.force_transfer,
        confirmation_code=payload.confirmation_code,
        actor=actor,
    )
    return success_response(request=request, data=PromotionResponse.model_validate(result))


@router.get("/preview/{user_id}", response_model=SuccessEnvelope[ImpactResponse])
async def preview(
    user_id: str,
    request: Request,
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    impact = await get_admin_promotion_service().preview_promotion(
        db, tenant_id=principal.tenant_id, target_user_id=user_id
    )
    return success_response(request=request, data=ImpactResponse(**impact_as_dict(impact)))


@router.get("/current", response_model=SuccessEnvelope[CurrentAdminResponse])
async def current_admin(
    request: Request,
    principal: Principal = Depends(require_role("reader")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    admin = await get_admin_promotion_service().get_current_system_admin(db, tenant_id=principal.tenant_id)
    data = CurrentAdminResponse(
        has_admin=admin is not None,
        admin=UserResponse.model_validate(admin) if admin else None,
    )
    return success_response(request=request, data=data)


@router.get("/eligible", response_model=SuccessEnvelope[list[UserResponse]])
async def eligible_users(
    request: Request,
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    users = await get_admin_promotion_service().list_eligible_users(db, tenant_id=principal.tenant_id)
    return success_response(request=request, data=[UserResponse.model_validate(user) for user in users])


@router.get("/can-delete/{user_id}", response_model=SuccessEnvelope[DeletionCheckResponse])
async def can_delete(
    user_id: str,
    request: Request,
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    check = await get_admin_promotion_service().can_delete_user(
        db, tenant_id=principal.tenant_id, user_id=user_id
    )
    return success_response(request=request, data=DeletionCheckResponse.model_validate(check))


@router.delete("/users/{user_id}", response_model=SuccessEnvelope[UserResponse])
async def deactivate_user(
    user_id: str,
    request: Request,
    principal: Principal = Depends(require_role("admin")),
    actor: AuditActor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
) -> dict:
    user = await get_admin_promotion_service().deactivate_user(
        db, tenant_id=principal.tenant_id, user_id=user_id, actor=actor
    )
    return success_response(request=request, data=UserResponse.model_validate(user))
