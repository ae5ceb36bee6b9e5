from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tenantgrid.domain.models import Tenant, TenantUser
from tenantgrid.persistence.guards import require_tenant_id, tenant_predicate


RESOLVABLE_TENANT_STATUSES = ("active", "trial")


async def get_tenant(session: AsyncSession, tenant_id: str) -> Tenant | None:
    require_tenant_id(tenant_id)
    result = await session.execute(select(Tenant).where(Tenant.id == tenant_id))
    return result.scalar_one_or_none()


async def get_active_tenant(session: AsyncSession, tenant_id: str) -> Tenant | None:
    # Suspended tenants never resolve, even for reads.
    tenant = await get_tenant(session, tenant_id)
    if tenant is None or tenant.status not in RESOLVABLE_TENANT_STATUSES:
        return None
    return tenant


async def get_tenant_user(session: AsyncSession, tenant_id: str, user_id: str) -> TenantUser | None:
    result = await session.execute(
        select(TenantUser).where(
            TenantUser.id == user_id,
            tenant_predicate(TenantUser, tenant_id),
        )
    )
    return result.scalar_one_or_none()


async def list_active_users(session: AsyncSession, tenant_id: str) -> list[TenantUser]:
    result = await session.execute(
        select(TenantUser)
        .where(tenant_predicate(TenantUser, tenant_id), TenantUser.is_active.is_(True))
        .order_by(TenantUser.created_at, TenantUser.id)
    )
    return list(result.scalars().all())
