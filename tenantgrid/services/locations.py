from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
import logging
from typing import Any
from uuid import uuid4

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from tenantgrid.core.clock import as_utc, utc_now
from tenantgrid.core.errors import (
    EntityNotFound,
    InvalidRequest,
    ScopeNotFound,
    SharingPercentagesInvalid,
)
from tenantgrid.domain.models import Location, LocationAssignment, LocationResource, LocationUsage
from tenantgrid.persistence.db import transaction
from tenantgrid.persistence.repos.locations import (
    get_location_for_tenant,
    list_active_assignments,
    list_locations_by_tenant,
)
from tenantgrid.persistence.repos.organizations import get_organization_for_tenant
from tenantgrid.persistence.repos.tenants import get_active_tenant
from tenantgrid.services.audit import AuditActor, stage_event


logger = logging.getLogger(__name__)

ASSIGNMENT_TYPES = ("primary", "secondary", "backup")
ASSIGNABLE_ENTITY_TYPES = ("organization", "tenant")
MAX_SHARING_PERCENTAGE = Decimal("100")


@dataclass(frozen=True)
class LocationAttributes:
    name: str
    code: str | None = None
    location_type: str = "office"
    address: dict[str, Any] | None = None
    timezone: str = "UTC"
    is_headquarters: bool = False


@dataclass(frozen=True)
class AssignmentRequest:
    entity_type: str
    entity_id: str
    assignment_type: str = "primary"
    priority: int = 1
    credit_sharing_enabled: bool = False
    credit_sharing_percentage: Decimal = Decimal("0")


@dataclass(frozen=True)
class LocationDetail:
    location: Location
    assignments: list[LocationAssignment]


@dataclass(frozen=True)
class LocationAnalytics:
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


def utilization_trend(rate: Decimal) -> str:
    if rate > 70:
        return "high"
    if rate > 30:
        return "medium"
    return "low"


def utilization_rate(capacity: dict[str, Any] | None) -> Decimal:
    capacity = capacity or {}
    maximum = int(capacity.get("max_occupancy") or 0)
    if maximum <= 0:
        return Decimal("0")
    current = int(capacity.get("current_occupancy") or 0)
    return (Decimal(current) * 100 / Decimal(maximum)).quantize(Decimal("0.01"))


async def _load_location(session: AsyncSession, tenant_id: str, location_id: str) -> Location:
    location = await get_location_for_tenant(session, location_id, tenant_id)
    if location is None or not location.is_active:
        raise EntityNotFound("Location not found", details={"location_id": location_id})
    return location


async def _ensure_assignable_entity(
    session: AsyncSession, tenant_id: str, entity_type: str, entity_id: str
) -> None:
    if entity_type == "organization":
        organization = await get_organization_for_tenant(session, entity_id, tenant_id)
        found = organization is not None and organization.is_active
    elif entity_type == "tenant":
        # Tenant-level assignments only ever point at the owning tenant.
        found = entity_id == tenant_id and await get_active_tenant(session, tenant_id) is not None
    else:
        raise InvalidRequest(
            f"Unsupported assignment entity type: {entity_type}",
            details={"allowed": list(ASSIGNABLE_ENTITY_TYPES)},
        )
    if not found:
        raise EntityNotFound(f"{entity_type} not found", details={"entity_id": entity_id})


def _validate_assignment(request: AssignmentRequest) -> Decimal:
    if request.assignment_type not in ASSIGNMENT_TYPES:
        raise InvalidRequest(
            f"Unsupported assignment type: {request.assignment_type}",
            details={"allowed": list(ASSIGNMENT_TYPES)},
        )
    percentage = Decimal(str(request.credit_sharing_percentage))
    if percentage < 0 or percentage > MAX_SHARING_PERCENTAGE:
        raise InvalidRequest(
            "Credit sharing percentage must be between 0 and 100",
            details={"credit_sharing_percentage": str(percentage)},
        )
    return percentage


def _sharing_total(assignments: list[LocationAssignment], *, exclude_entity_id: str | None = None) -> Decimal:
    return sum(
        (
            Decimal(row.credit_sharing_percentage)
            for row in assignments
            if row.credit_sharing_enabled and row.entity_id != exclude_entity_id
        ),
        Decimal("0"),
    )


async def create_location(
    session: AsyncSession,
    *,
    tenant_id: str,
    attrs: LocationAttributes,
    organization_id: str | None = None,
    actor: AuditActor | None = None,
) -> Location:
    """Create a location, optionally with a primary assignment to ``organization_id``."""
    if not attrs.name or not attrs.name.strip():
        raise InvalidRequest("Location name is required")
    async with transaction(session):
        if await get_active_tenant(session, tenant_id) is None:
            raise ScopeNotFound("Tenant not found or inactive", details={"tenant_id": tenant_id})
        if organization_id:
            await _ensure_assignable_entity(session, tenant_id, "organization", organization_id)
        location = Location(
            id=uuid4().hex,
            tenant_id=tenant_id,
            name=attrs.name.strip(),
            code=attrs.code,
            location_type=attrs.location_type,
            address=attrs.address,
            capacity={"max_occupancy": 0, "current_occupancy": 0, "resources": {}},
            timezone=attrs.timezone,
            is_headquarters=attrs.is_headquarters,
        )
        session.add(location)
        # The location row must exist before the assignment references it.
        await session.flush()
        if organization_id:
            session.add(
                LocationAssignment(
                    id=uuid4().hex,
                    location_id=location.id,
                    tenant_id=tenant_id,
                    entity_type="organization",
                    entity_id=organization_id,
                    assignment_type="primary",
                    assigned_by=actor.actor_id if actor else None,
                )
            )
        stage_event(
            session,
            tenant_id=tenant_id,
            actor=actor,
            event_type="location.created",
            outcome="success",
            resource_type="location",
            resource_id=location.id,
            metadata={"organization_id": organization_id},
        )
    logger.info("location_created tenant_id=%s location_id=%s", tenant_id, location.id)
    return location


async def assign_location(
    session: AsyncSession,
    *,
    tenant_id: str,
    location_id: str,
    request: AssignmentRequest,
    actor: AuditActor | None = None,
) -> LocationAssignment:
    """Attach an organization or user to a location.

    An existing active assignment of the same type is updated in place,
    except that a second primary for the same pair is refused. Sharing
    percentages across the location's active assignments may not exceed 100.
    """
    percentage = _validate_assignment(request)
    try:
        async with transaction(session):
            location = await _load_location(session, tenant_id, location_id)
            await _ensure_assignable_entity(session, tenant_id, request.entity_type, request.entity_id)
            assignments = await list_active_assignments(session, location.id, for_update=True)
            existing = next(
                (
                    row
                    for row in assignments
                    if row.entity_id == request.entity_id and row.assignment_type == request.assignment_type
                ),
                None,
            )
            if existing is not None and existing.assignment_type == "primary":
                raise InvalidRequest(
                    "Entity already has an active primary assignment for this location",
                    details={"location_id": location.id, "entity_id": request.entity_id},
                )
            if request.credit_sharing_enabled:
                total = _sharing_total(assignments, exclude_entity_id=request.entity_id) + percentage
                if total > MAX_SHARING_PERCENTAGE:
                    raise SharingPercentagesInvalid(
                        "Credit sharing percentages for the location exceed 100",
                        details={"location_id": location.id, "total_percentage": str(total)},
                    )
            assignment = existing or LocationAssignment(
                id=uuid4().hex,
                location_id=location.id,
                tenant_id=tenant_id,
                entity_type=request.entity_type,
                entity_id=request.entity_id,
                assignment_type=request.assignment_type,
                assigned_by=actor.actor_id if actor else None,
            )
            assignment.priority = request.priority
            assignment.credit_sharing_enabled = request.credit_sharing_enabled
            assignment.credit_sharing_percentage = percentage
            if existing is None:
                session.add(assignment)
            stage_event(
                session,
                tenant_id=tenant_id,
                actor=actor,
                event_type="location.assigned",
                outcome="success",
                resource_type="location",
                resource_id=location.id,
                metadata={
                    "entity_type": request.entity_type,
                    "entity_id": request.entity_id,
                    "assignment_type": request.assignment_type,
                },
            )
    except IntegrityError as exc:
        # A concurrent writer claimed the primary slot first.
        raise InvalidRequest(
            "Entity already has an active primary assignment for this location",
            details={"location_id": location_id, "entity_id": request.entity_id},
        ) from exc
    return assignment


async def unassign_location(
    session: AsyncSession,
    *,
    tenant_id: str,
    location_id: str,
    entity_id: str,
    actor: AuditActor | None = None,
) -> int:
    async with transaction(session):
        location = await _load_location(session, tenant_id, location_id)
        removed = 0
        for row in await list_active_assignments(session, location.id, for_update=True):
            if row.entity_id == entity_id:
                row.is_active = False
                removed += 1
        if not removed:
            raise EntityNotFound(
                "Assignment not found",
                details={"location_id": location_id, "entity_id": entity_id},
            )
        stage_event(
            session,
            tenant_id=tenant_id,
            actor=actor,
            event_type="location.unassigned",
            outcome="success",
            resource_type="location",
            resource_id=location.id,
            metadata={"entity_id": entity_id, "removed": removed},
        )
    return removed


async def list_locations(
    session: AsyncSession,
    *,
    tenant_id: str,
    visible_ids: set[str] | None = None,
) -> list[Location]:
    locations = await list_locations_by_tenant(session, tenant_id)
    if visible_ids is None:
        return locations
    return [location for location in locations if location.id in visible_ids]


async def get_location(session: AsyncSession, *, tenant_id: str, location_id: str) -> LocationDetail:
    location = await _load_location(session, tenant_id, location_id)
    return LocationDetail(location=location, assignments=await list_active_assignments(session, location.id))


async def update_capacity(
    session: AsyncSession,
    *,
    tenant_id: str,
    location_id: str,
    max_occupancy: int,
    current_occupancy: int = 0,
    resources: dict[str, Any] | None = None,
    actor: AuditActor | None = None,
) -> Location:
    if max_occupancy < 0 or current_occupancy < 0:
        raise InvalidRequest("Occupancy values must be non-negative")
    if current_occupancy > max_occupancy:
        raise InvalidRequest(
            "Current occupancy cannot exceed maximum occupancy",
            details={"max_occupancy": max_occupancy, "current_occupancy": current_occupancy},
        )
    async with transaction(session):
        location = await _load_location(session, tenant_id, location_id)
        previous = dict(location.capacity or {})
        # Reassign so the JSON column is flagged dirty.
        location.capacity = {
            "max_occupancy": max_occupancy,
            "current_occupancy": current_occupancy,
            "resources": resources if resources is not None else previous.get("resources", {}),
        }
        stage_event(
            session,
            tenant_id=tenant_id,
            actor=actor,
            event_type="location.capacity_updated",
            outcome="success",
            resource_type="location",
            resource_id=location.id,
            metadata={
                "previous_max_occupancy": previous.get("max_occupancy"),
                "max_occupancy": max_occupancy,
            },
        )
    return location


async def add_resource(
    session: AsyncSession,
    *,
    tenant_id: str,
    location_id: str,
    name: str,
    resource_type: str,
    quantity: int = 1,
    unit: str | None = None,
    credit_cost: Decimal = Decimal("0"),
) -> LocationResource:
    if quantity < 1:
        raise InvalidRequest("Resource quantity must be at least 1")
    if Decimal(str(credit_cost)) < 0:
        raise InvalidRequest("Resource credit cost must be non-negative")
    async with transaction(session):
        location = await _load_location(session, tenant_id, location_id)
        resource = LocationResource(
            id=uuid4().hex,
            location_id=location.id,
            name=name,
            resource_type=resource_type,
            quantity=quantity,
            unit=unit,
            credit_cost=Decimal(str(credit_cost)),
        )
        session.add(resource)
    return resource


async def record_usage(
    session: AsyncSession,
    *,
    tenant_id: str,
    location_id: str,
    usage_type: str,
    user_id: str | None = None,
    resource_id: str | None = None,
    started_at: datetime | None = None,
    ended_at: datetime | None = None,
    credit_consumed: Decimal = Decimal("0"),
    metadata: dict[str, Any] | None = None,
) -> LocationUsage:
    started = as_utc(started_at) if started_at else utc_now()
    ended = as_utc(ended_at) if ended_at else None
    if ended is not None and ended < started:
        raise InvalidRequest("Usage cannot end before it starts")
    async with transaction(session):
        location = await _load_location(session, tenant_id, location_id)
        if resource_id is not None:
            resource = await session.get(LocationResource, resource_id)
            if resource is None or resource.location_id != location.id:
                raise EntityNotFound("Resource not found", details={"resource_id": resource_id})
        usage = LocationUsage(
            id=uuid4().hex,
            location_id=location.id,
            usage_type=usage_type,
            user_id=user_id,
            resource_id=resource_id,
            started_at=started,
            ended_at=ended,
            duration_minutes=int((ended - started).total_seconds() // 60) if ended else None,
            credit_consumed=Decimal(str(credit_consumed)),
            metadata_json=metadata or {},
        )
        session.add(usage)
    return usage


async def get_location_analytics(
    session: AsyncSession,
    *,
    tenant_id: str,
    location_id: str,
    period_days: int = 30,
    now: datetime | None = None,
) -> LocationAnalytics:
    location = await _load_location(session, tenant_id, location_id)
    since = (now or utc_now()) - timedelta(days=period_days)
    usage = await session.execute(
        select(func.count(LocationUsage.id), func.coalesce(func.sum(LocationUsage.credit_consumed), 0)).where(
            LocationUsage.location_id == location.id,
            LocationUsage.started_at >= since,
        )
    )
    usage_events, credits_consumed = usage.one()
    resources = await session.execute(
        select(func.count(LocationResource.id)).where(
            LocationResource.location_id == location.id,
            LocationResource.is_active.is_(True),
        )
    )
    capacity = location.capacity or {}
    rate = utilization_rate(capacity)
    return LocationAnalytics(
        location_id=location.id,
        max_occupancy=int(capacity.get("max_occupancy") or 0),
        current_occupancy=int(capacity.get("current_occupancy") or 0),
        utilization_rate=rate,
        utilization_trend=utilization_trend(rate),
        active_assignments=len(await list_active_assignments(session, location.id)),
        active_resources=int(resources.scalar_one()),
        usage_events=int(usage_events),
        credits_consumed=Decimal(str(credits_consumed)),
        period_days=period_days,
    )
