from __future__ import annotations

import pytest
from sqlalchemy import select
from sqlalchemy.dialects import sqlite

from tenantgrid.core.errors import EntityNotFound, TenantMismatch
from tenantgrid.domain.models import CreditConfiguration
from tenantgrid.persistence.db import SessionLocal
from tenantgrid.services.isolation import (
    IsolationContext,
    application_clause,
    ensure_application,
    ensure_entity_visible,
    load_entity_tenant,
    ensure_same_tenant,
    visible_location_ids,
    visible_organization_ids,
)
from tenantgrid.services.locations import LocationAttributes, create_location
from tenantgrid.tests.utils.auth import create_test_tenant, create_test_user, unique_tenant_id
from tenantgrid.tests.utils.seed import add_membership, create_org


def test_same_tenant_check() -> None:
    ensure_same_tenant("t-1", "t-1", resource_type="organization")
    with pytest.raises(TenantMismatch):
        ensure_same_tenant("t-1", "t-2", resource_type="organization")
    with pytest.raises(TenantMismatch):
        ensure_same_tenant("t-1", None, resource_type="organization")


def test_application_binding() -> None:
    bound = IsolationContext(tenant_id="t-1", application_code="billing", caller_user_id=None)
    unbound = IsolationContext(tenant_id="t-1", application_code=None, caller_user_id=None)
    ensure_application(bound, "billing")
    ensure_application(bound, None)
    ensure_application(unbound, "crm")
    with pytest.raises(TenantMismatch):
        ensure_application(bound, "crm")


def test_application_clause_includes_shared_rows() -> None:
    def compiled(clause) -> str:
        stmt = select(CreditConfiguration.id).where(clause)
        return str(stmt.compile(dialect=sqlite.dialect(), compile_kwargs={"literal_binds": True}))

    shared_only = compiled(application_clause(CreditConfiguration.application_code, None))
    with_app = compiled(application_clause(CreditConfiguration.application_code, "billing"))
    assert "application_code IS NULL" in shared_only
    assert "'billing'" not in shared_only
    assert "application_code IS NULL" in with_app
    assert "'billing'" in with_app


@pytest.mark.asyncio
async def test_membership_scopes_visible_organizations_and_locations() -> None:
    tenant_id = unique_tenant_id("t-iso")
    await create_test_tenant(tenant_id)
    root = await create_org(tenant_id, "Root")
    branch = await create_org(tenant_id, "Branch", root)
    sibling = await create_org(tenant_id, "Sibling")
    user_id = await create_test_user(tenant_id=tenant_id)
    await add_membership(tenant_id=tenant_id, user_id=user_id, organization_id=root, can_access_sub_entities=True)
    async with SessionLocal() as session:
        branch_location = await create_location(
            session, tenant_id=tenant_id, attrs=LocationAttributes(name="Branch office"), organization_id=branch
        )
    async with SessionLocal() as session:
        other_location = await create_location(
            session, tenant_id=tenant_id, attrs=LocationAttributes(name="Elsewhere"), organization_id=sibling
        )

    member = IsolationContext(tenant_id=tenant_id, application_code=None, caller_user_id=user_id)
    admin = IsolationContext(tenant_id=tenant_id, application_code=None, caller_user_id=None, is_tenant_admin=True)

    async with SessionLocal() as session:
        assert await visible_organization_ids(session, member) == {root, branch}
        assert await visible_location_ids(session, member) == {branch_location.id}
        assert await visible_organization_ids(session, admin) is None

        await ensure_entity_visible(session, member, entity_type="organization", entity_id=branch)
        await ensure_entity_visible(session, admin, entity_type="organization", entity_id=sibling)
        with pytest.raises(EntityNotFound):
            await ensure_entity_visible(session, member, entity_type="organization", entity_id=sibling)
        with pytest.raises(EntityNotFound):
            await ensure_entity_visible(session, member, entity_type="location", entity_id=other_location.id)
        with pytest.raises(TenantMismatch):
            await ensure_entity_visible(session, member, entity_type="tenant", entity_id="someone-else")


@pytest.mark.asyncio
async def test_direct_membership_without_subentity_access_stops_at_the_node() -> None:
    tenant_id = unique_tenant_id("t-iso")
    await create_test_tenant(tenant_id)
    root = await create_org(tenant_id, "Root")
    await create_org(tenant_id, "Hidden child", root)
    user_id = await create_test_user(tenant_id=tenant_id)
    await add_membership(tenant_id=tenant_id, user_id=user_id, organization_id=root)

    member = IsolationContext(tenant_id=tenant_id, application_code=None, caller_user_id=user_id)
    async with SessionLocal() as session:
        assert await visible_organization_ids(session, member) == {root}


@pytest.mark.asyncio
async def test_tenant_admin_cannot_reach_foreign_entities() -> None:
    tenant_id = unique_tenant_id("t-iso")
    other_tenant = unique_tenant_id("t-iso-other")
    await create_test_tenant(tenant_id)
    await create_test_tenant(other_tenant)
    own_org = await create_org(tenant_id, "Own")
    foreign_org = await create_org(other_tenant, "Foreign")
    admin = IsolationContext(tenant_id=tenant_id, application_code=None, caller_user_id=None, is_tenant_admin=True)

    async with SessionLocal() as session:
        assert await load_entity_tenant(session, "organization", foreign_org) == other_tenant
        assert await load_entity_tenant(session, "tenant", tenant_id) == tenant_id
        await ensure_entity_visible(session, admin, entity_type="organization", entity_id=own_org)
        with pytest.raises(TenantMismatch):
            await ensure_entity_visible(session, admin, entity_type="organization", entity_id=foreign_org)
        with pytest.raises(EntityNotFound):
            await ensure_entity_visible(session, admin, entity_type="location", entity_id="missing")
        with pytest.raises(EntityNotFound):
            await load_entity_tenant(session, "device", own_org)
