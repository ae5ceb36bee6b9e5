from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tenantgrid.domain.models import Location, LocationAssignment
from tenantgrid.persistence.guards import tenant_predicate


async def get_location_for_tenant(
    session: AsyncSession, location_id: str, tenant_id: str
) -> Location | None:
    result = await session.execute(
        select(Location).where(Location.id == location_id, tenant_predicate(Location, tenant_id))
    )
    return result.scalar_one_or_none()


async def list_locations_by_tenant(session: AsyncSession, tenant_id: str) -> list[Location]:
    result = await session.execute(
        select(Location)
        .where(tenant_predicate(Location, tenant_id), Location.is_active.is_(True))
        .order_by(Location.created_at, Location.id)
    )
    return list(result.scalars().all())


async def list_active_assignments(
    session: AsyncSession,
    location_id: str,
    *,
    for_update: bool = False,
) -> list[LocationAssignment]:
    stmt = (
        select(LocationAssignment)
        .where(
            LocationAssignment.location_id == location_id,
            LocationAssignment.is_active.is_(True),
        )
        .order_by(LocationAssignment.priority, LocationAssignment.assigned_at, LocationAssignment.id)
    )
    if for_update:
        stmt = stmt.with_for_update()
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def primary_organization_id(session: AsyncSession, location_id: str) -> str | None:
    # Lowest priority number wins among active primary organization assignments.
    result = await session.execute(
        select(LocationAssignment.entity_id)
        .where(
            LocationAssignment.location_id == location_id,
            LocationAssignment.entity_type == "organization",
            LocationAssignment.assignment_type == "primary",
            LocationAssignment.is_active.is_(True),
        )
        .order_by(LocationAssignment.priority, LocationAssignment.assigned_at)
        .limit(1)
    )
    return result.scalar_one_or_none()


async def list_location_ids_for_entities(
    session: AsyncSession, tenant_id: str, entity_ids: list[str]
) -> list[str]:
    if not entity_ids:
        return []
    result = await session.execute(
        select(LocationAssignment.location_id)
        .where(
            tenant_predicate(LocationAssignment, tenant_id),
            LocationAssignment.entity_id.in_(entity_ids),
            LocationAssignment.is_active.is_(True),
        )
        .distinct()
    )
    return list(result.scalars().all())
