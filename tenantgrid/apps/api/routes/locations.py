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
from tenantgrid.services.isolation import IsolationContext, ensure_entity_visible, visible_location_ids
from tenantgrid.services.locations import (
    AssignmentRequest,
    LocationAttributes,
    add_resource,
    assign_location,
    create_location,
    get_location,
    get_location_analytics,
    list_locations,
    record_usage,
    unassign_location,
    update_capacity,
)


router = APIRouter(prefix="/locations", tags=["locations"], responses=DEFAULT_ERROR_RESPONSES)


class LocationCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    code: str | None = None
    location_type: str = "office"
    address: dict[str, Any] | None = None
    timezone: str = "UTC"
    is_headquarters: bool = False
    # Optional organization that becomes the location's primary owner.
    organization_id: str | None = None


class AssignRequest(BaseModel):
    assignment_type: str = "primary"
    priority: int = Field(default=1, ge=0)
    credit_sharing_enabled: bool = False
    credit_sharing_percentage: Decimal = Field(default=Decimal("0"), ge=0, le=100)


class CapacityRequest(BaseModel):
    max_occupancy: int = Field(ge=0)
    current_occupancy: int = Field(default=0, ge=0)
    resources: dict[str, Any] | None = None


class ResourceRequest(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    resource_type: str = Field(min_length=1)
    quantity: int = Field(default=1, ge=1)
    unit: str | None = None
    credit_cost: Decimal = Field(default=Decimal("0"), ge=0)


class UsageRequest(BaseModel):
    usage_type: str = Field(min_length=1)
    user_id: str | None = None
    resource_id: str | None = None
    started_at: datetime | None = None
    ended_at: datetime | None = None
    credit_consumed: Decimal = Field(default=Decimal("0"), ge=0)
    metadata: dict[str, Any] | None = None


class LocationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    tenant_id: str
    name: str
    code: str | None
    location_type: str
    address: dict[str, Any] | None
    capacity: dict[str, Any] | None
    timezone: str
    is_active: bool
    is_headquarters: bool


class AssignmentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    location_id: str
    entity_type: str
    entity_id: str
    assignment_type: str
    priority: int
    is_active: bool
    credit_sharing_enabled: bool
    credit_sharing_percentage: Decimal
    assigned_at: datetime | None = None


class LocationDetailResponse(LocationResponse):
    assignments: list[AssignmentResponse]


class UnassignResponse(BaseModel):
    removed: int


class ResourceResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    location_id: str
    name: str
    resource_type: str
    quantity: int
    unit: str | None
    credit_cost: Decimal
    is_active: bool
    is_available: bool


class UsageResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    location_id: str
    usage_type: str
    user_id: str | None
    resource_id: str | None
    started_at: datetime
    ended_at: datetime | None
    duration_minutes: int | None
    credit_consumed: Decimal


class AnalyticsResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    location_id: str
    max_occupancy: int
    current_occupancy: int
    utilization_rate: Decimal
    utilization_trend: str
    active_assignments: int
    active_resources: int
    usage_events: int
    credits_consumed: Decimal
    period_days: int


@router.post("", response_model=SuccessEnvelope[LocationResponse], status_code=201)
async def create(
    request: Request,
    payload: LocationCreateRequest,
    principal: Principal = Depends(require_role("editor")),
    context: IsolationContext = Depends(get_isolation_context),
    actor: AuditActor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
) -> dict:
    if payload.organization_id:
        await ensure_entity_visible(db, context, entity_type="organization", entity_id=payload.organization_id)
    location = await create_location(
        db,
        tenant_id=principal.tenant_id,
        attrs=LocationAttributes(
            name=payload.name,
            code=payload.code,
            location_type=payload.location_type,
            address=payload.address,
            timezone=payload.timezone,
            is_headquarters=payload.is_headquarters,
        ),
        organization_id=payload.organization_id,
        actor=actor,
    )
    return success_response(request=request, data=LocationResponse.model_validate(location))


@router.get("", response_model=SuccessEnvelope[list[LocationResponse]])
async def list_all(
    request: Request,
    principal: Principal = Depends(require_role("reader")),
    context: IsolationContext = Depends(get_isolation_context),
    db: AsyncSession = Depends(get_db),
) -> dict:
    locations = await list_locations(
        db,
        tenant_id=principal.tenant_id,
        visible_ids=await visible_location_ids(db, context),
    )
    return success_response(request=request, data=[LocationResponse.model_validate(row) for row in locations])


@router.get("/{location_id}", response_model=SuccessEnvelope[LocationDetailResponse])
async def read(
    location_id: str,
    request: Request,
    principal: Principal = Depends(require_role("reader")),
    context: IsolationContext = Depends(get_isolation_context),
    db: AsyncSession = Depends(get_db),
) -> dict:
    detail = await get_location(db, tenant_id=principal.tenant_id, location_id=location_id)
    await ensure_entity_visible(db, context, entity_type="location", entity_id=location_id)
    payload = LocationDetailResponse(
        **LocationResponse.model_validate(detail.location).model_dump(),
        assignments=[AssignmentResponse.model_validate(row) for row in detail.assignments],
    )
    return success_response(request=request, data=payload)


@router.post(
    "/{location_id}/assign/{organization_id}",
    response_model=SuccessEnvelope[AssignmentResponse],
    status_code=201,
)
async def assign(
    location_id: str,
    organization_id: str,
    request: Request,
    payload: AssignRequest,
    principal: Principal = Depends(require_role("editor")),
    context: IsolationContext = Depends(get_isolation_context),
    actor: AuditActor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
) -> dict:
    await ensure_entity_visible(db, context, entity_type="organization", entity_id=organization_id)
    assignment = await assign_location(
        db,
        tenant_id=principal.tenant_id,
        location_id=location_id,
        request=AssignmentRequest(
            entity_type="organization",
            entity_id=organization_id,
            assignment_type=payload.assignment_type,
            priority=payload.priority,
            credit_sharing_enabled=payload.credit_sharing_enabled,
            credit_sharing_percentage=payload.credit_sharing_percentage,
        ),
        actor=actor,
    )
    return success_response(request=request, data=AssignmentResponse.model_validate(assignment))


@router.delete("/{location_id}/assign/{organization_id}", response_model=SuccessEnvelope[UnassignResponse])
async def unassign(
    location_id: str,
    organization_id: str,
    request: Request,
    principal: Principal = Depends(require_role("editor")),
    context: IsolationContext = Depends(get_isolation_context),
    actor: AuditActor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
) -> dict:
    await ensure_entity_visible(db, context, entity_type="location", entity_id=location_id)
    removed = await unassign_location(
        db,
        tenant_id=principal.tenant_id,
        location_id=location_id,
        entity_id=organization_id,
        actor=actor,
    )
    return success_response(request=request, data=UnassignResponse(removed=removed))


@router.put("/{location_id}/capacity", response_model=SuccessEnvelope[LocationResponse])
async def put_capacity(
    location_id: str,
    request: Request,
    payload: CapacityRequest,
    principal: Principal = Depends(require_role("editor")),
    context: IsolationContext = Depends(get_isolation_context),
    actor: AuditActor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
) -> dict:
    await ensure_entity_visible(db, context, entity_type="location", entity_id=location_id)
    location = await update_capacity(
        db,
        tenant_id=principal.tenant_id,
        location_id=location_id,
        max_occupancy=payload.max_occupancy,
        current_occupancy=payload.current_occupancy,
        resources=payload.resources,
        actor=actor,
    )
    return success_response(request=request, data=LocationResponse.model_validate(location))


@router.get("/{location_id}/analytics", response_model=SuccessEnvelope[AnalyticsResponse])
async def analytics(
    location_id: str,
    request: Request,
    period_days: int = Query(default=30, ge=1, le=366),
    principal: Principal = Depends(require_role("reader")),
    context: IsolationContext = Depends(get_isolation_context),
    db: AsyncSession = Depends(get_db),
) -> dict:
    await ensure_entity_visible(db, context, entity_type="location", entity_id=location_id)
    result = await get_location_analytics(
        db,
        tenant_id=principal.tenant_id,
        location_id=location_id,
        period_days=period_days,
    )
    return success_response(request=request, data=AnalyticsResponse.model_validate(result))


@router.post(
    "/{location_id}/resources",
    response_model=SuccessEnvelope[ResourceResponse],
    status_code=201,
)
async def create_resource(
    location_id: str,
    request: Request,
    payload: ResourceRequest,
    principal: Principal = Depends(require_role("editor")),
    context: IsolationContext = Depends(get_isolation_context),
    db: AsyncSession = Depends(get_db),
) -> dict:
    await ensure_entity_visible(db, context, entity_type="location", entity_id=location_id)
    resource = await add_resource(
        db,
        tenant_id=principal.tenant_id,
        location_id=location_id,
        name=payload.name,
        resource_type=payload.resource_type,
        quantity=payload.quantity,
        unit=payload.unit,
        credit_cost=payload.credit_cost,
    )
    return success_response(request=request, data=ResourceResponse.model_validate(resource))


@router.post("/{location_id}/usage", response_model=SuccessEnvelope[UsageResponse], status_code=201)
async def create_usage(
    location_id: str,
    request: Request,
    payload: UsageRequest,
    principal: Principal = Depends(require_role("editor")),
    context: IsolationContext = Depends(get_isolation_context),
    db: AsyncSession = Depends(get_db),
) -> dict:
    await ensure_entity_visible(db, context, entity_type="location", entity_id=location_id)
    usage = await record_usage(
        db,
        tenant_id=principal.tenant_id,
        location_id=location_id,
        usage_type=payload.usage_type,
        user_id=payload.user_id or principal.user_id,
        resource_id=payload.resource_id,
        started_at=payload.started_at,
        ended_at=payload.ended_at,
        credit_consumed=payload.credit_consumed,
        metadata=payload.metadata,
    )
    return success_response(request=request, data=UsageResponse.model_validate(usage))
