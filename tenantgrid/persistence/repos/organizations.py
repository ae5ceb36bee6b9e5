from __future__ import annotations

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from tenantgrid.domain.models import Organization
from tenantgrid.persistence.guards import tenant_predicate, tenant_select


PATH_SEPARATOR = "."


def path_ids(organization: Organization) -> list[str]:
    # Ancestor ids, root first.
    if not organization.hierarchy_path:
        return []
    return organization.hierarchy_path.split(PATH_SEPARATOR)


def child_path(organization: Organization) -> str:
    # Path every direct child of ``organization`` carries.
    return PATH_SEPARATOR.join([*path_ids(organization), organization.id])


def descendants_predicate(organization: Organization) -> object:
    prefix = child_path(organization)
    return or_(
        Organization.hierarchy_path == prefix,
        Organization.hierarchy_path.like(f"{prefix}{PATH_SEPARATOR}%"),
    )


async def get_organization(session: AsyncSession, organization_id: str) -> Organization | None:
    result = await session.execute(select(Organization).where(Organization.id == organization_id))
    return result.scalar_one_or_none()


async def get_organization_for_tenant(
    session: AsyncSession, organization_id: str, tenant_id: str
) -> Organization | None:
    result = await session.execute(
        select(Organization).where(
            Organization.id == organization_id,
            tenant_predicate(Organization, tenant_id),
        )
    )
    return result.scalar_one_or_none()


async def list_organizations_by_tenant(
    session: AsyncSession, tenant_id: str, *, include_inactive: bool = False
) -> list[Organization]:
    # Breadth-first by level, then creation order.
    stmt = tenant_select(Organization, tenant_id)
    if not include_inactive:
        stmt = stmt.where(Organization.is_active.is_(True))
    result = await session.execute(
        stmt.order_by(Organization.organization_level, Organization.created_at, Organization.id)
    )
    return list(result.scalars().all())


async def list_descendants(
    session: AsyncSession,
    organization: Organization,
    *,
    include_inactive: bool = True,
    for_update: bool = False,
) -> list[Organization]:
    stmt = select(Organization).where(
        tenant_predicate(Organization, organization.tenant_id),
        descendants_predicate(organization),
    )
    if not include_inactive:
        stmt = stmt.where(Organization.is_active.is_(True))
    stmt = stmt.order_by(Organization.organization_level, Organization.created_at, Organization.id)
    if for_update:
        stmt = stmt.with_for_update()
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def list_ancestors(session: AsyncSession, organization: Organization) -> list[Organization]:
    # Nearest parent first.
    ids = path_ids(organization)
    if not ids:
        return []
    result = await session.execute(
        select(Organization).where(
            tenant_predicate(Organization, organization.tenant_id),
            Organization.id.in_(ids),
        )
    )
    by_id = {row.id: row for row in result.scalars().all()}
    return [by_id[ancestor_id] for ancestor_id in reversed(ids) if ancestor_id in by_id]


async def count_active_children(session: AsyncSession, organization: Organization) -> int:
    result = await session.execute(
        select(Organization.id).where(
            tenant_predicate(Organization, organization.tenant_id),
            Organization.parent_organization_id == organization.id,
            Organization.is_active.is_(True),
        )
    )
    return len(result.scalars().all())
