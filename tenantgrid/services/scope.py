from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tenantgrid.core.config import SCOPE_LOCATION, SCOPE_ORGANIZATION, SCOPE_TENANT
from tenantgrid.core.errors import ScopeNotFound
from tenantgrid.domain.models import OrganizationMembership
from tenantgrid.persistence.guards import tenant_predicate
from tenantgrid.persistence.repos.locations import get_location_for_tenant, primary_organization_id
from tenantgrid.persistence.repos.organizations import get_organization_for_tenant, list_ancestors
from tenantgrid.persistence.repos.tenants import get_active_tenant, get_tenant_user


@dataclass(frozen=True)
class ScopeContext:
    tenant_id: str
    organization_id: str | None = None
    location_id: str | None = None
    user_id: str | None = None
    application_code: str | None = None


@dataclass(frozen=True)
class ScopeLevel:
    scope: str
    entity_id: str


@dataclass(frozen=True)
class ScopeChain:
    """Ordered scope levels, most specific first, always ending with the tenant."""

    tenant_id: str
    levels: tuple[ScopeLevel, ...]
    application_code: str | None = None

    def __iter__(self):
        return iter(self.levels)

    def __len__(self) -> int:
        return len(self.levels)

    @property
    def most_specific(self) -> ScopeLevel:
        return self.levels[0]

    def entity_ids(self, scope: str) -> list[str]:
        return [level.entity_id for level in self.levels if level.scope == scope]


async def _primary_membership_organization(
    session: AsyncSession, tenant_id: str, user_id: str
) -> str | None:
    result = await session.execute(
        select(OrganizationMembership.entity_id)
        .where(
            tenant_predicate(OrganizationMembership, tenant_id),
            OrganizationMembership.user_id == user_id,
            OrganizationMembership.entity_type == SCOPE_ORGANIZATION,
            OrganizationMembership.membership_status == "active",
        )
        .order_by(OrganizationMembership.is_primary.desc(), OrganizationMembership.created_at)
        .limit(1)
    )
    return result.scalar_one_or_none()


async def resolve_scope(session: AsyncSession, context: ScopeContext) -> ScopeChain:
    """Compute ``[location?, organization, ...ancestors, tenant]`` for a request.

    Read-only and uncached: the hierarchy may change between calls. When the
    context names a location but no organization, the location's primary
    organization assignment supplies it; a lone user falls back to their
    primary membership.
    """
    tenant = await get_active_tenant(session, context.tenant_id)
    if tenant is None:
        raise ScopeNotFound("Tenant not found or inactive", details={"tenant_id": context.tenant_id})

    levels: list[ScopeLevel] = []
    organization_id = context.organization_id

    if context.location_id:
        location = await get_location_for_tenant(session, context.location_id, tenant.id)
        if location is None or not location.is_active:
            raise ScopeNotFound("Location not found in tenant", details={"location_id": context.location_id})
        levels.append(ScopeLevel(scope=SCOPE_LOCATION, entity_id=location.id))
        if organization_id is None:
            organization_id = await primary_organization_id(session, location.id)

    if organization_id is None and context.user_id:
        user = await get_tenant_user(session, tenant.id, context.user_id)
        if user is None:
            raise ScopeNotFound("User not found in tenant", details={"user_id": context.user_id})
        organization_id = await _primary_membership_organization(session, tenant.id, user.id)

    if organization_id:
        organization = await get_organization_for_tenant(session, organization_id, tenant.id)
        if organization is None or not organization.is_active:
            raise ScopeNotFound(
                "Organization not found in tenant",
                details={"organization_id": organization_id},
            )
        levels.append(ScopeLevel(scope=SCOPE_ORGANIZATION, entity_id=organization.id))
        for ancestor in await list_ancestors(session, organization):
            levels.append(ScopeLevel(scope=SCOPE_ORGANIZATION, entity_id=ancestor.id))

    levels.append(ScopeLevel(scope=SCOPE_TENANT, entity_id=tenant.id))
    return ScopeChain(
        tenant_id=tenant.id,
        levels=tuple(levels),
        application_code=context.application_code,
    )
