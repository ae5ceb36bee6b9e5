from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from tenantgrid.apps.api.deps import Principal, get_actor, get_db, get_isolation_context, require_role
from tenantgrid.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tenantgrid.apps.api.response import SuccessEnvelope, success_response
from tenantgrid.services.audit import AuditActor
from tenantgrid.services.credit_config import (
    CreditConfigValues,
    get_comprehensive_configurations,
    get_effective_cost,
    reset_tenant_configuration,
    upsert_tenant_configuration,
)
from tenantgrid.services.isolation import IsolationContext, ensure_application, ensure_entity_visible
from tenantgrid.services.scope import ScopeContext, resolve_scope


router = APIRouter(prefix="/credit-config", tags=["credit-config"], responses=DEFAULT_ERROR_RESPONSES)


class VolumeTier(BaseModel):
    threshold: Decimal = Field(ge=0)
    cost: Decimal = Field(ge=0)


class TenantConfigRequest(BaseModel):
    credit_cost: Decimal = Field(ge=0)
    unit: str = "operation"
    unit_multiplier: Decimal = Field(default=Decimal("1"), gt=0)
    free_allowance: int = Field(default=0, ge=0)
    free_allowance_period: str | None = Field(default=None, pattern="^(day|month|year)$")
    volume_tiers: list[VolumeTier] | None = None
    allow_overage: bool = False
    overage_limit: Decimal | None = Field(default=None, ge=0)
    overage_period: str | None = Field(default=None, pattern="^(day|month|year)$")
    overage_cost: Decimal | None = Field(default=None, ge=0)
    is_inherited: bool = True
    priority: int | None = None
    application_code: str | None = None
    expires_at: datetime | None = None


class ConfigurationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    scope: str
    tenant_id: str | None
    entity_type: str | None
    entity_id: str | None
    application_code: str | None
    operation_code: str
    credit_cost: Decimal
    unit: str
    unit_multiplier: Decimal
    free_allowance: int
    free_allowance_period: str | None
    volume_tiers: list[dict[str, Any]] | None
    allow_overage: bool
    overage_limit: Decimal | None
    overage_period: str | None
    overage_cost: Decimal | None
    is_inherited: bool
    is_customized: bool
    priority: int
    is_active: bool
    expires_at: datetime | None


class EffectiveCostResponse(BaseModel):
    operation_code: str
    credit_cost: Decimal
    unit: str
    is_customized: bool
    resolved_scope: str
    resolved_entity_id: str | None
    configuration: ConfigurationResponse


class ComprehensiveResponse(BaseModel):
    tenant_configurations: list[ConfigurationResponse]
    global_configurations: list[ConfigurationResponse]


class ResetResponse(BaseModel):
    operation_code: str
    removed: int


@router.get("/effective/{operation_code}", response_model=SuccessEnvelope[EffectiveCostResponse])
async def read_effective_cost(
    operation_code: str,
    request: Request,
    organization_id: str | None = Query(default=None),
    location_id: str | None = Query(default=None),
    principal: Principal = Depends(require_role("reader")),
    context: IsolationContext = Depends(get_isolation_context),
    db: AsyncSession = Depends(get_db),
) -> dict:
    for entity_type, entity_id in (("organization", organization_id), ("location", location_id)):
        if entity_id:
            await ensure_entity_visible(db, context, entity_type=entity_type, entity_id=entity_id)
    chain = await resolve_scope(
        db,
        ScopeContext(
            tenant_id=principal.tenant_id,
            organization_id=organization_id,
            location_id=location_id,
            application_code=context.application_code,
        ),
    )
    effective = await get_effective_cost(db, operation_code, chain)
    data = EffectiveCostResponse(
        operation_code=operation_code,
        credit_cost=effective.config.credit_cost,
        unit=effective.config.unit,
        is_customized=effective.is_customized,
        resolved_scope=effective.resolved_scope,
        resolved_entity_id=effective.resolved_entity_id,
        configuration=ConfigurationResponse.model_validate(effective.config),
    )
    return success_response(request=request, data=data)


@router.get("/comprehensive", response_model=SuccessEnvelope[ComprehensiveResponse])
async def read_comprehensive(
    request: Request,
    principal: Principal = Depends(require_role("admin")),
    context: IsolationContext = Depends(get_isolation_context),
    db: AsyncSession = Depends(get_db),
) -> dict:
    view = await get_comprehensive_configurations(
        db, tenant_id=principal.tenant_id, application_code=context.application_code
    )
    data = ComprehensiveResponse(
        tenant_configurations=[ConfigurationResponse.model_validate(row) for row in view.tenant_rows],
        global_configurations=[ConfigurationResponse.model_validate(row) for row in view.global_rows],
    )
    return success_response(request=request, data=data)


@router.put("/tenant/{operation_code}", response_model=SuccessEnvelope[ConfigurationResponse])
async def put_tenant_configuration(
    operation_code: str,
    request: Request,
    payload: TenantConfigRequest,
    principal: Principal = Depends(require_role("admin")),
    context: IsolationContext = Depends(get_isolation_context),
    actor: AuditActor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
) -> dict:
    ensure_application(context, payload.application_code)
    values = CreditConfigValues(
        **payload.model_dump(exclude={"volume_tiers"}),
        volume_tiers=[tier.model_dump() for tier in payload.volume_tiers] if payload.volume_tiers else None,
    )
    row = await upsert_tenant_configuration(
        db,
        tenant_id=principal.tenant_id,
        operation_code=operation_code,
        values=values,
        actor=actor,
    )
    return success_response(request=request, data=ConfigurationResponse.model_validate(row))


@router.delete("/tenant/{operation_code}", response_model=SuccessEnvelope[ResetResponse])
async def delete_tenant_configuration(
    operation_code: str,
    request: Request,
    application_code: str | None = Query(default=None),
    principal: Principal = Depends(require_role("admin")),
    context: IsolationContext = Depends(get_isolation_context),
    actor: AuditActor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
) -> dict:
    ensure_application(context, application_code)
    removed = await reset_tenant_configuration(
        db,
        tenant_id=principal.tenant_id,
        operation_code=operation_code,
        application_code=application_code,
        actor=actor,
    )
    return success_response(request=request, data=ResetResponse(operation_code=operation_code, removed=removed))
