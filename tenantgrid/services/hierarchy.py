from __future__ import annotations

from dataclasses import dataclass, field
import logging
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from tenantgrid.core.errors import (
    CycleDetected,
    EntityNotFound,
    InvalidHierarchy,
    InvalidRequest,
    ScopeNotFound,
)
from tenantgrid.domain.models import Organization
from tenantgrid.persistence.db import advisory_xact_lock, transaction
from tenantgrid.persistence.repos.organizations import (
    child_path,
    count_active_children,
    get_organization,
    list_descendants,
    list_organizations_by_tenant,
    path_ids,
)
from tenantgrid.persistence.repos.tenants import get_active_tenant
from tenantgrid.services.audit import AuditActor, stage_event
from tenantgrid.services.isolation import ensure_same_tenant


logger = logging.getLogger(__name__)

ORGANIZATION_TYPES = ("parent", "sub", "standalone")


@dataclass(frozen=True)
class OrganizationAttributes:
    name: str
    description: str | None = None
    tax_id: str | None = None
    # Parentless orgs default to "parent"; "standalone" opts out of the tree role.
    organization_type: str | None = None


@dataclass
class OrganizationNode:
    organization: Organization
    children: list["OrganizationNode"] = field(default_factory=list)


@dataclass(frozen=True)
class HierarchyView:
    tenant_id: str
    total_organizations: int
    roots: list[OrganizationNode]


def _hierarchy_lock_key(tenant_id: str) -> str:
    return f"org-hierarchy:{tenant_id}"


async def _load_for_tenant(
    session: AsyncSession, tenant_id: str, organization_id: str
) -> Organization:
    organization = await get_organization(session, organization_id)
    if organization is None:
        raise EntityNotFound("Organization not found", details={"organization_id": organization_id})
    ensure_same_tenant(tenant_id, organization.tenant_id, resource_type="organization")
    return organization


async def _load_parent(session: AsyncSession, tenant_id: str, parent_id: str) -> Organization:
    # A parent in another tenant is reported exactly like a missing one.
    parent = await get_organization(session, parent_id)
    if parent is None or parent.tenant_id != tenant_id:
        raise InvalidHierarchy(
            "Parent organization does not exist in this tenant",
            details={"parent_organization_id": parent_id},
        )
    if not parent.is_active:
        raise InvalidHierarchy(
            "Parent organization is inactive",
            details={"parent_organization_id": parent_id},
        )
    return parent


def _resolve_type(requested: str | None, has_parent: bool) -> str:
    if has_parent:
        return "sub"
    if requested is None:
        return "parent"
    if requested not in ORGANIZATION_TYPES or requested == "sub":
        raise InvalidHierarchy(f"Root organizations cannot have type {requested!r}")
    return requested


async def create_organization(
    session: AsyncSession,
    *,
    tenant_id: str,
    parent_organization_id: str | None,
    attrs: OrganizationAttributes,
    actor: AuditActor | None = None,
) -> Organization:
    """Create an organization under ``parent_organization_id`` or as a new root.

    Level and path are derived from the parent so they can never disagree
    with the tree.
    """
    if not attrs.name or not attrs.name.strip():
        raise InvalidRequest("Organization name is required")
    async with transaction(session):
        if await get_active_tenant(session, tenant_id) is None:
            raise ScopeNotFound("Tenant not found or inactive", details={"tenant_id": tenant_id})
        await advisory_xact_lock(session, _hierarchy_lock_key(tenant_id))
        parent = None
        if parent_organization_id:
            parent = await _load_parent(session, tenant_id, parent_organization_id)
        organization = Organization(
            id=uuid4().hex,
            tenant_id=tenant_id,
            parent_organization_id=parent.id if parent else None,
            name=attrs.name.strip(),
            description=attrs.description,
            tax_id=attrs.tax_id,
            organization_type=_resolve_type(attrs.organization_type, parent is not None),
            organization_level=parent.organization_level + 1 if parent else 0,
            hierarchy_path=child_path(parent) if parent else "",
            is_active=True,
            created_by=actor.actor_id if actor else None,
        )
        session.add(organization)
        stage_event(
            session,
            tenant_id=tenant_id,
            actor=actor,
            event_type="organization.created",
            outcome="success",
            resource_type="organization",
            resource_id=organization.id,
            metadata={"parent_organization_id": organization.parent_organization_id},
        )
    logger.info(
        "organization_created tenant_id=%s organization_id=%s level=%s",
        tenant_id,
        organization.id,
        organization.organization_level,
    )
    return organization


async def move_organization(
    session: AsyncSession,
    *,
    tenant_id: str,
    organization_id: str,
    new_parent_id: str | None,
    actor: AuditActor | None = None,
) -> Organization:
    """Re-parent an organization and rewrite the path of its whole subtree.

    The cycle check runs before any row changes; a failure anywhere rolls the
    move back as a unit.
    """
    async with transaction(session):
        await advisory_xact_lock(session, _hierarchy_lock_key(tenant_id))
        organization = await _load_for_tenant(session, tenant_id, organization_id)
        if new_parent_id == organization.id:
            raise CycleDetected(
                "An organization cannot be its own parent",
                details={"organization_id": organization_id},
            )
        parent = None
        if new_parent_id:
            parent = await _load_parent(session, tenant_id, new_parent_id)
            if organization.id in path_ids(parent):
                raise CycleDetected(
                    "Target parent is a descendant of the organization",
                    details={"organization_id": organization_id, "new_parent_id": new_parent_id},
                )
        if organization.parent_organization_id == (parent.id if parent else None):
            return organization

        old_prefix = child_path(organization)
        descendants = await list_descendants(session, organization, for_update=True)
        previous_parent_id = organization.parent_organization_id

        organization.parent_organization_id = parent.id if parent else None
        organization.hierarchy_path = child_path(parent) if parent else ""
        organization.organization_level = parent.organization_level + 1 if parent else 0
        if parent is not None:
            organization.organization_type = "sub"
        elif organization.organization_type == "sub":
            organization.organization_type = "parent"

        new_prefix = child_path(organization)
        for descendant in descendants:
            descendant.hierarchy_path = new_prefix + descendant.hierarchy_path[len(old_prefix):]
            descendant.organization_level = len(path_ids(descendant))

        stage_event(
            session,
            tenant_id=tenant_id,
            actor=actor,
            event_type="organization.moved",
            outcome="success",
            resource_type="organization",
            resource_id=organization.id,
            metadata={
                "previous_parent_id": previous_parent_id,
                "new_parent_id": organization.parent_organization_id,
                "descendants_rewritten": len(descendants),
            },
        )
    logger.info(
        "organization_moved tenant_id=%s organization_id=%s descendants=%s",
        tenant_id,
        organization.id,
        len(descendants),
    )
    return organization


async def get_organization_in_tenant(
    session: AsyncSession, *, tenant_id: str, organization_id: str
) -> Organization:
    return await _load_for_tenant(session, tenant_id, organization_id)


async def get_subtree(
    session: AsyncSession,
    *,
    tenant_id: str,
    organization_id: str,
    include_inactive: bool = False,
) -> list[Organization]:
    # Descendants only, breadth-first by level then creation order.
    organization = await _load_for_tenant(session, tenant_id, organization_id)
    return await list_descendants(session, organization, include_inactive=include_inactive)


def build_tree(organizations: list[Organization]) -> list[OrganizationNode]:
    """Nest organizations under their parents.

    Input must be ordered by level so parents are seen before children. Nodes
    whose parent is not in the input (hidden or inactive) are promoted to roots.
    """
    nodes: dict[str, OrganizationNode] = {}
    roots: list[OrganizationNode] = []
    for organization in organizations:
        node = OrganizationNode(organization=organization)
        nodes[organization.id] = node
        parent = nodes.get(organization.parent_organization_id or "")
        if parent is None:
            roots.append(node)
        else:
            parent.children.append(node)
    return roots


async def get_hierarchy(
    session: AsyncSession,
    *,
    tenant_id: str,
    visible_ids: set[str] | None = None,
) -> HierarchyView:
    organizations = await list_organizations_by_tenant(session, tenant_id)
    if visible_ids is not None:
        organizations = [org for org in organizations if org.id in visible_ids]
    return HierarchyView(
        tenant_id=tenant_id,
        total_organizations=len(organizations),
        roots=build_tree(organizations),
    )


async def update_organization(
    session: AsyncSession,
    *,
    tenant_id: str,
    organization_id: str,
    name: str | None = None,
    description: str | None = None,
    tax_id: str | None = None,
    actor: AuditActor | None = None,
) -> Organization:
    async with transaction(session):
        organization = await _load_for_tenant(session, tenant_id, organization_id)
        changed: list[str] = []
        if name is not None:
            if not name.strip():
                raise InvalidRequest("Organization name cannot be empty")
            organization.name = name.strip()
            changed.append("name")
        if description is not None:
            organization.description = description
            changed.append("description")
        if tax_id is not None:
            organization.tax_id = tax_id
            changed.append("tax_id")
        if changed:
            stage_event(
                session,
                tenant_id=tenant_id,
                actor=actor,
                event_type="organization.updated",
                outcome="success",
                resource_type="organization",
                resource_id=organization.id,
                metadata={"fields": changed},
            )
    return organization


async def delete_organization(
    session: AsyncSession,
    *,
    tenant_id: str,
    organization_id: str,
    include_subtree: bool = False,
    actor: AuditActor | None = None,
) -> list[str]:
    """Soft-delete an organization, returning the ids that were deactivated.

    Active sub-organizations block the delete unless ``include_subtree`` asks
    for the whole subtree to be deactivated with it.
    """
    async with transaction(session):
        await advisory_xact_lock(session, _hierarchy_lock_key(tenant_id))
        organization = await _load_for_tenant(session, tenant_id, organization_id)
        if not organization.is_active:
            return []
        deactivated = [organization]
        if include_subtree:
            deactivated.extend(
                await list_descendants(session, organization, include_inactive=False, for_update=True)
            )
        else:
            active_children = await count_active_children(session, organization)
            if active_children:
                raise InvalidHierarchy(
                    "Organization has active sub-organizations",
                    details={"organization_id": organization_id, "active_children": active_children},
                )
        for row in deactivated:
            row.is_active = False
        stage_event(
            session,
            tenant_id=tenant_id,
            actor=actor,
            event_type="organization.deleted",
            outcome="success",
            resource_type="organization",
            resource_id=organization.id,
            metadata={"deactivated": len(deactivated)},
        )
    return [row.id for row in deactivated]
