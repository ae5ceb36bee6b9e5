from __future__ import annotations

import pytest
from sqlalchemy import select

from tenantgrid.core.errors import (
    CycleDetected,
    InvalidHierarchy,
    InvalidRequest,
    ScopeNotFound,
    TenantMismatch,
)
from tenantgrid.domain.models import AuditEvent, Organization
from tenantgrid.persistence.db import SessionLocal
from tenantgrid.services.audit import AuditActor
from tenantgrid.services.hierarchy import (
    OrganizationAttributes,
    build_tree,
    create_organization,
    delete_organization,
    get_hierarchy,
    get_organization_in_tenant,
    get_subtree,
    move_organization,
    update_organization,
)
from tenantgrid.tests.utils.auth import create_test_tenant, unique_tenant_id
from tenantgrid.tests.utils.seed import create_org


async def _load(organization_id: str) -> Organization:
    async with SessionLocal() as session:
        return await session.get(Organization, organization_id)


@pytest.mark.asyncio
async def test_create_root_and_children_derive_level_and_path() -> None:
    tenant_id = unique_tenant_id("t-org")
    await create_test_tenant(tenant_id)

    root_id = await create_org(tenant_id, "Root")
    child_id = await create_org(tenant_id, "Child", root_id)
    grandchild_id = await create_org(tenant_id, "Grandchild", child_id)

    root = await _load(root_id)
    child = await _load(child_id)
    grandchild = await _load(grandchild_id)
    assert (root.organization_level, root.hierarchy_path, root.organization_type) == (0, "", "parent")
    assert (child.organization_level, child.hierarchy_path, child.organization_type) == (1, root_id, "sub")
    assert grandchild.organization_level == 2
    assert grandchild.hierarchy_path == f"{root_id}.{child_id}"


@pytest.mark.asyncio
async def test_create_records_audit_event_with_actor() -> None:
    tenant_id = unique_tenant_id("t-org")
    await create_test_tenant(tenant_id)
    actor = AuditActor(actor_type="api_key", actor_id="user-1", actor_role="editor", request_id="req-1")

    async with SessionLocal() as session:
        organization = await create_organization(
            session,
            tenant_id=tenant_id,
            parent_organization_id=None,
            attrs=OrganizationAttributes(name="Audited"),
            actor=actor,
        )

    async with SessionLocal() as session:
        events = (
            await session.execute(
                select(AuditEvent).where(
                    AuditEvent.tenant_id == tenant_id,
                    AuditEvent.event_type == "organization.created",
                )
            )
        ).scalars().all()
    assert len(events) == 1
    assert events[0].resource_id == organization.id
    assert events[0].actor_id == "user-1"
    assert events[0].request_id == "req-1"
    assert organization.created_by == "user-1"


@pytest.mark.asyncio
async def test_create_rejects_missing_tenant_and_foreign_parent() -> None:
    tenant_id = unique_tenant_id("t-org")
    other_tenant = unique_tenant_id("t-org-other")
    await create_test_tenant(tenant_id)
    await create_test_tenant(other_tenant)
    foreign_root = await create_org(other_tenant, "Foreign")

    async with SessionLocal() as session:
        with pytest.raises(ScopeNotFound):
            await create_organization(
                session,
                tenant_id=unique_tenant_id("t-missing"),
                parent_organization_id=None,
                attrs=OrganizationAttributes(name="Nope"),
            )
    async with SessionLocal() as session:
        with pytest.raises(InvalidHierarchy):
            await create_organization(
                session,
                tenant_id=tenant_id,
                parent_organization_id=foreign_root,
                attrs=OrganizationAttributes(name="Smuggled"),
            )
    async with SessionLocal() as session:
        with pytest.raises(InvalidRequest):
            await create_organization(
                session,
                tenant_id=tenant_id,
                parent_organization_id=None,
                attrs=OrganizationAttributes(name="   "),
            )


@pytest.mark.asyncio
async def test_suspended_tenant_cannot_create_organizations() -> None:
    tenant_id = unique_tenant_id("t-org")
    await create_test_tenant(tenant_id, status="suspended")
    async with SessionLocal() as session:
        with pytest.raises(ScopeNotFound):
            await create_organization(
                session,
                tenant_id=tenant_id,
                parent_organization_id=None,
                attrs=OrganizationAttributes(name="Blocked"),
            )


@pytest.mark.asyncio
async def test_move_rewrites_subtree_paths_and_levels() -> None:
    tenant_id = unique_tenant_id("t-org")
    await create_test_tenant(tenant_id)
    root_a = await create_org(tenant_id, "A")
    root_b = await create_org(tenant_id, "B")
    child = await create_org(tenant_id, "A1", root_a)
    grandchild = await create_org(tenant_id, "A1x", child)

    async with SessionLocal() as session:
        moved = await move_organization(
            session, tenant_id=tenant_id, organization_id=child, new_parent_id=root_b
        )
    assert moved.parent_organization_id == root_b
    assert moved.hierarchy_path == root_b

    refreshed = await _load(grandchild)
    assert refreshed.hierarchy_path == f"{root_b}.{child}"
    assert refreshed.organization_level == 2

    async with SessionLocal() as session:
        promoted = await move_organization(
            session, tenant_id=tenant_id, organization_id=child, new_parent_id=None
        )
    assert promoted.organization_level == 0
    assert promoted.hierarchy_path == ""
    assert promoted.organization_type == "parent"
    assert (await _load(grandchild)).hierarchy_path == child


@pytest.mark.asyncio
async def test_move_under_own_descendant_is_rejected_without_changes() -> None:
    tenant_id = unique_tenant_id("t-org")
    await create_test_tenant(tenant_id)
    root = await create_org(tenant_id, "Root")
    child = await create_org(tenant_id, "Child", root)
    grandchild = await create_org(tenant_id, "Grandchild", child)

    async with SessionLocal() as session:
        with pytest.raises(CycleDetected):
            await move_organization(session, tenant_id=tenant_id, organization_id=root, new_parent_id=grandchild)
    async with SessionLocal() as session:
        with pytest.raises(CycleDetected):
            await move_organization(session, tenant_id=tenant_id, organization_id=child, new_parent_id=child)

    assert (await _load(root)).hierarchy_path == ""
    assert (await _load(grandchild)).hierarchy_path == f"{root}.{child}"


@pytest.mark.asyncio
async def test_cross_tenant_reads_raise_tenant_mismatch() -> None:
    tenant_id = unique_tenant_id("t-org")
    other_tenant = unique_tenant_id("t-org-other")
    await create_test_tenant(tenant_id)
    await create_test_tenant(other_tenant)
    foreign = await create_org(other_tenant, "Foreign")

    async with SessionLocal() as session:
        with pytest.raises(TenantMismatch):
            await get_organization_in_tenant(session, tenant_id=tenant_id, organization_id=foreign)
        with pytest.raises(TenantMismatch):
            await get_subtree(session, tenant_id=tenant_id, organization_id=foreign)


@pytest.mark.asyncio
async def test_hierarchy_nests_children_and_filters_visible_ids() -> None:
    tenant_id = unique_tenant_id("t-org")
    await create_test_tenant(tenant_id)
    root = await create_org(tenant_id, "Root")
    child = await create_org(tenant_id, "Child", root)
    await create_org(tenant_id, "Other")

    async with SessionLocal() as session:
        view = await get_hierarchy(session, tenant_id=tenant_id)
        assert view.total_organizations == 3
        root_node = next(node for node in view.roots if node.organization.id == root)
        assert [node.organization.id for node in root_node.children] == [child]

        # A visible child whose parent is hidden surfaces as a root.
        partial = await get_hierarchy(session, tenant_id=tenant_id, visible_ids={child})
        assert [node.organization.id for node in partial.roots] == [child]


def test_build_tree_handles_empty_input() -> None:
    assert build_tree([]) == []


@pytest.mark.asyncio
async def test_update_changes_only_given_fields() -> None:
    tenant_id = unique_tenant_id("t-org")
    await create_test_tenant(tenant_id)
    root = await create_org(tenant_id, "Before")

    async with SessionLocal() as session:
        updated = await update_organization(
            session, tenant_id=tenant_id, organization_id=root, name="After", tax_id="TX-1"
        )
    assert updated.name == "After"
    assert updated.tax_id == "TX-1"
    assert updated.description is None

    async with SessionLocal() as session:
        with pytest.raises(InvalidRequest):
            await update_organization(session, tenant_id=tenant_id, organization_id=root, name="  ")


@pytest.mark.asyncio
async def test_delete_blocked_by_active_children_unless_subtree() -> None:
    tenant_id = unique_tenant_id("t-org")
    await create_test_tenant(tenant_id)
    root = await create_org(tenant_id, "Root")
    child = await create_org(tenant_id, "Child", root)
    grandchild = await create_org(tenant_id, "Grandchild", child)

    async with SessionLocal() as session:
        with pytest.raises(InvalidHierarchy):
            await delete_organization(session, tenant_id=tenant_id, organization_id=root)

    async with SessionLocal() as session:
        deactivated = await delete_organization(
            session, tenant_id=tenant_id, organization_id=child, include_subtree=True
        )
    assert set(deactivated) == {child, grandchild}
    assert (await _load(root)).is_active is True
    assert (await _load(grandchild)).is_active is False

    async with SessionLocal() as session:
        assert await delete_organization(session, tenant_id=tenant_id, organization_id=child) == []
        subtree = await get_subtree(session, tenant_id=tenant_id, organization_id=root)
        assert subtree == []
        with_inactive = await get_subtree(
            session, tenant_id=tenant_id, organization_id=root, include_inactive=True
        )
        assert {row.id for row in with_inactive} == {child, grandchild}


@pytest.mark.asyncio
async def test_new_parent_must_be_active() -> None:
    tenant_id = unique_tenant_id("t-org")
    await create_test_tenant(tenant_id)
    root = await create_org(tenant_id, "Root")
    retired = await create_org(tenant_id, "Retired")
    async with SessionLocal() as session:
        await delete_organization(session, tenant_id=tenant_id, organization_id=retired)

    async with SessionLocal() as session:
        with pytest.raises(InvalidHierarchy):
            await move_organization(session, tenant_id=tenant_id, organization_id=root, new_parent_id=retired)
