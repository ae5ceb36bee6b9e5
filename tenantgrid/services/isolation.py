from __future__ import annotations

from dataclasses import dataclass
import logging

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from tenantgrid.core.errors import EntityNotFound, TenantMismatch
from tenantgrid.domain.models import Location, Organization, OrganizationMembership, TenantUser
from tenantgrid.persistence.guards import require_tenant_id, tenant_predicate
from tenantgrid.persistence.repos.locations import list_location_ids_for_entities
from tenantgrid.persistence.repos.organizations import descendants_predicate


logger = logging.getLogger(__name__)

ENTITY_ORGANIZATION = "organization"
ENTITY_LOCATION = "location"
ENTITY_TENANT = "tenant"
_ENTITY_MODELS = {ENTITY_ORGANIZATION: Organization, ENTITY_LOCATION: Location, "user": TenantUser}


@dataclass(frozen=True)
class IsolationContext:
    # Built once per request from the authenticated principal and application header.
    tenant_id: str
    application_code: str | None
    caller_user_id: str | None
    is_tenant_admin: bool = False


def ensure_same_tenant(tenant_id: str, entity_tenant_id: str | None, *, resource_type: str) -> None:
    # Cross-tenant access is always fatal; nothing from the foreign row is echoed back.
    require_tenant_id(tenant_id)
    if entity_tenant_id != tenant_id:
        logger.warning("tenant_mismatch resource_type=%s tenant_id=%s", resource_type, tenant_id)
        raise TenantMismatch(f"{resource_type} does not belong to the caller's tenant")


async def load_entity_tenant(session: AsyncSession, entity_type: str, entity_id: str) -> str:
    """Return the owning tenant id of a credit-bearing entity.

    A tenant owns itself, so no lookup is needed for that type. Unknown types
    and missing rows both raise ``EntityNotFound``.
    """
    if entity_type == ENTITY_TENANT:
        return entity_id
    model = _ENTITY_MODELS.get(entity_type)
    if model is None:
        raise EntityNotFound(f"Unknown entity type: {entity_type}")
    row = await session.get(model, entity_id)
    if row is None:
        raise EntityNotFound(f"{entity_type} not found", details={"entity_id": entity_id})
    return row.tenant_id


async def ensure_entity_in_tenant(
    session: AsyncSession, tenant_id: str, *, entity_type: str, entity_id: str
) -> None:
    entity_tenant_id = await load_entity_tenant(session, entity_type, entity_id)
    ensure_same_tenant(tenant_id, entity_tenant_id, resource_type=entity_type)


def ensure_application(context: IsolationContext, application_code: str | None) -> None:
    # Callers bound to one application may only touch that application's rows.
    if not application_code or context.application_code is None:
        return
    if application_code != context.application_code:
        raise TenantMismatch("Resource belongs to a different application context")


def application_clause(column, application_code: str | None, *, shared_value: str | None = None) -> object:
    """Restrict an application-scoped column to the caller's application.

    Rows carrying ``shared_value`` (``NULL`` by default) are visible to every
    application. Without an application context only shared rows match.
    """
    shared = column.is_(None) if shared_value is None else column == shared_value
    if not application_code:
        return shared
    return or_(shared, column == application_code)


async def _active_memberships(
    session: AsyncSession, context: IsolationContext
) -> list[OrganizationMembership]:
    if not context.caller_user_id:
        return []
    result = await session.execute(
        select(OrganizationMembership).where(
            tenant_predicate(OrganizationMembership, context.tenant_id),
            OrganizationMembership.user_id == context.caller_user_id,
            OrganizationMembership.membership_status == "active",
        )
    )
    return list(result.scalars().all())


async def visible_organization_ids(session: AsyncSession, context: IsolationContext) -> set[str] | None:
    """Return the organization ids the caller may see, or ``None`` for tenant-wide access."""
    if context.is_tenant_admin:
        return None
    memberships = await _active_memberships(session, context)
    direct = [m for m in memberships if m.entity_type == ENTITY_ORGANIZATION]
    visible = {m.entity_id for m in direct}
    expand_ids = [m.entity_id for m in direct if m.can_access_sub_entities]
    if expand_ids:
        result = await session.execute(
            select(Organization).where(
                tenant_predicate(Organization, context.tenant_id),
                Organization.id.in_(expand_ids),
            )
        )
        for organization in result.scalars().all():
            descendants = await session.execute(
                select(Organization.id).where(
                    tenant_predicate(Organization, context.tenant_id),
                    descendants_predicate(organization),
                )
            )
            visible.update(descendants.scalars().all())
    return visible


async def visible_location_ids(session: AsyncSession, context: IsolationContext) -> set[str] | None:
    if context.is_tenant_admin:
        return None
    memberships = await _active_memberships(session, context)
    visible = {m.entity_id for m in memberships if m.entity_type == ENTITY_LOCATION}
    organization_ids = await visible_organization_ids(session, context)
    visible.update(
        await list_location_ids_for_entities(session, context.tenant_id, sorted(organization_ids or []))
    )
    return visible


async def ensure_entity_visible(
    session: AsyncSession,
    context: IsolationContext,
    *,
    entity_type: str,
    entity_id: str,
) -> None:
    # Hidden entities answer as "not found" so their existence does not leak.
    await ensure_entity_in_tenant(session, context.tenant_id, entity_type=entity_type, entity_id=entity_id)
    if context.is_tenant_admin or entity_type == ENTITY_TENANT:
        return
    if entity_type == ENTITY_ORGANIZATION:
        visible = await visible_organization_ids(session, context)
    elif entity_type == ENTITY_LOCATION:
        visible = await visible_location_ids(session, context)
    elif entity_type == "user":
        visible = {context.caller_user_id} if context.caller_user_id else set()
    else:
        raise EntityNotFound(f"Unknown entity type: {entity_type}")
    if visible is not None and entity_id not in visible:
        raise EntityNotFound(f"{entity_type} not found")
