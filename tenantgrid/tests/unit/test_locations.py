from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from tenantgrid.core.errors import EntityNotFound, InvalidRequest, ScopeNotFound, SharingPercentagesInvalid
from tenantgrid.persistence.db import SessionLocal
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
    utilization_rate,
    utilization_trend,
)
from tenantgrid.tests.utils.auth import create_test_tenant, unique_tenant_id
from tenantgrid.tests.utils.seed import create_org


async def _tenant_location() -> tuple[str, str, str]:
    tenant_id = unique_tenant_id("t-loc")
    await create_test_tenant(tenant_id)
    org_id = await create_org(tenant_id, "Owner")
    async with SessionLocal() as session:
        location = await create_location(
            session,
            tenant_id=tenant_id,
            attrs=LocationAttributes(name="Main office", code="MAIN", is_headquarters=True),
            organization_id=org_id,
        )
    return tenant_id, location.id, org_id


@pytest.mark.asyncio
async def test_create_location_with_primary_assignment() -> None:
    tenant_id, location_id, org_id = await _tenant_location()
    async with SessionLocal() as session:
        detail = await get_location(session, tenant_id=tenant_id, location_id=location_id)
    assert detail.location.is_headquarters is True
    assert detail.location.capacity["max_occupancy"] == 0
    assert [(row.entity_id, row.assignment_type) for row in detail.assignments] == [(org_id, "primary")]


@pytest.mark.asyncio
async def test_create_location_rejects_unknown_tenant_or_organization() -> None:
    async with SessionLocal() as session:
        with pytest.raises(ScopeNotFound):
            await create_location(
                session, tenant_id=unique_tenant_id("t-missing"), attrs=LocationAttributes(name="Ghost")
            )
    tenant_id = unique_tenant_id("t-loc")
    await create_test_tenant(tenant_id)
    async with SessionLocal() as session:
        with pytest.raises(EntityNotFound):
            await create_location(
                session, tenant_id=tenant_id, attrs=LocationAttributes(name="Orphan"), organization_id="missing"
            )


@pytest.mark.asyncio
async def test_second_primary_for_same_pair_is_refused() -> None:
    tenant_id, location_id, org_id = await _tenant_location()
    async with SessionLocal() as session:
        with pytest.raises(InvalidRequest):
            await assign_location(
                session,
                tenant_id=tenant_id,
                location_id=location_id,
                request=AssignmentRequest(entity_type="organization", entity_id=org_id),
            )


@pytest.mark.asyncio
async def test_secondary_assignment_updates_in_place_and_caps_sharing() -> None:
    tenant_id, location_id, _org_id = await _tenant_location()
    partner = await create_org(tenant_id, "Partner")

    async with SessionLocal() as session:
        first = await assign_location(
            session,
            tenant_id=tenant_id,
            location_id=location_id,
            request=AssignmentRequest(
                entity_type="organization",
                entity_id=partner,
                assignment_type="secondary",
                credit_sharing_enabled=True,
                credit_sharing_percentage=Decimal("40"),
            ),
        )
    async with SessionLocal() as session:
        second = await assign_location(
            session,
            tenant_id=tenant_id,
            location_id=location_id,
            request=AssignmentRequest(
                entity_type="organization",
                entity_id=partner,
                assignment_type="secondary",
                priority=3,
                credit_sharing_enabled=True,
                credit_sharing_percentage=Decimal("70"),
            ),
        )
    assert second.id == first.id
    assert second.priority == 3

    async with SessionLocal() as session:
        with pytest.raises(SharingPercentagesInvalid):
            await assign_location(
                session,
                tenant_id=tenant_id,
                location_id=location_id,
                request=AssignmentRequest(
                    entity_type="tenant",
                    entity_id=tenant_id,
                    assignment_type="backup",
                    credit_sharing_enabled=True,
                    credit_sharing_percentage=Decimal("31"),
                ),
            )

    for bad in (
        AssignmentRequest(entity_type="organization", entity_id=partner, assignment_type="permanent"),
        AssignmentRequest(entity_type="device", entity_id=partner, assignment_type="secondary"),
        AssignmentRequest(
            entity_type="organization",
            entity_id=partner,
            assignment_type="secondary",
            credit_sharing_percentage=Decimal("101"),
        ),
    ):
        async with SessionLocal() as session:
            with pytest.raises(InvalidRequest):
                await assign_location(session, tenant_id=tenant_id, location_id=location_id, request=bad)


@pytest.mark.asyncio
async def test_backup_and_tenant_level_assignments() -> None:
    tenant_id, location_id, org_id = await _tenant_location()
    partner = await create_org(tenant_id, "Standby")
    async with SessionLocal() as session:
        backup = await assign_location(
            session,
            tenant_id=tenant_id,
            location_id=location_id,
            request=AssignmentRequest(entity_type="organization", entity_id=partner, assignment_type="backup"),
        )
    async with SessionLocal() as session:
        tenant_row = await assign_location(
            session,
            tenant_id=tenant_id,
            location_id=location_id,
            request=AssignmentRequest(entity_type="tenant", entity_id=tenant_id, assignment_type="secondary"),
        )
    assert backup.assignment_type == "backup"
    assert (tenant_row.entity_type, tenant_row.entity_id) == ("tenant", tenant_id)

    other_tenant = unique_tenant_id("t-loc-other")
    await create_test_tenant(other_tenant)
    async with SessionLocal() as session:
        with pytest.raises(EntityNotFound):
            await assign_location(
                session,
                tenant_id=tenant_id,
                location_id=location_id,
                request=AssignmentRequest(entity_type="tenant", entity_id=other_tenant, assignment_type="backup"),
            )
    async with SessionLocal() as session:
        detail = await get_location(session, tenant_id=tenant_id, location_id=location_id)
    assert sorted(row.assignment_type for row in detail.assignments) == ["backup", "primary", "secondary"]
    assert org_id in {row.entity_id for row in detail.assignments}


@pytest.mark.asyncio
async def test_unassign_deactivates_rows() -> None:
    tenant_id, location_id, org_id = await _tenant_location()
    async with SessionLocal() as session:
        assert await unassign_location(
            session, tenant_id=tenant_id, location_id=location_id, entity_id=org_id
        ) == 1
    async with SessionLocal() as session:
        detail = await get_location(session, tenant_id=tenant_id, location_id=location_id)
        assert detail.assignments == []
        with pytest.raises(EntityNotFound):
            await unassign_location(session, tenant_id=tenant_id, location_id=location_id, entity_id=org_id)


@pytest.mark.asyncio
async def test_list_locations_respects_visible_ids() -> None:
    tenant_id, location_id, _org_id = await _tenant_location()
    async with SessionLocal() as session:
        everything = await list_locations(session, tenant_id=tenant_id)
        nothing = await list_locations(session, tenant_id=tenant_id, visible_ids=set())
    assert [row.id for row in everything] == [location_id]
    assert nothing == []


@pytest.mark.asyncio
async def test_capacity_validation_and_analytics() -> None:
    tenant_id, location_id, _org_id = await _tenant_location()
    async with SessionLocal() as session:
        with pytest.raises(InvalidRequest):
            await update_capacity(
                session, tenant_id=tenant_id, location_id=location_id, max_occupancy=5, current_occupancy=6
            )
    async with SessionLocal() as session:
        await update_capacity(
            session, tenant_id=tenant_id, location_id=location_id, max_occupancy=40, current_occupancy=30
        )
    async with SessionLocal() as session:
        resource = await add_resource(
            session,
            tenant_id=tenant_id,
            location_id=location_id,
            name="Room A",
            resource_type="meeting_room",
            credit_cost=Decimal("2.5"),
        )
    now = datetime.now(timezone.utc)
    async with SessionLocal() as session:
        usage = await record_usage(
            session,
            tenant_id=tenant_id,
            location_id=location_id,
            usage_type="booking",
            resource_id=resource.id,
            started_at=now - timedelta(hours=2),
            ended_at=now - timedelta(minutes=30),
            credit_consumed=Decimal("5"),
        )
    assert usage.duration_minutes == 90

    async with SessionLocal() as session:
        with pytest.raises(InvalidRequest):
            await record_usage(
                session,
                tenant_id=tenant_id,
                location_id=location_id,
                usage_type="booking",
                started_at=now,
                ended_at=now - timedelta(minutes=1),
            )

    async with SessionLocal() as session:
        analytics = await get_location_analytics(session, tenant_id=tenant_id, location_id=location_id)
    assert analytics.utilization_rate == Decimal("75.00")
    assert analytics.utilization_trend == "high"
    assert analytics.active_resources == 1
    assert analytics.usage_events == 1
    assert analytics.credits_consumed == Decimal("5")
    assert analytics.active_assignments == 1


def test_utilization_helpers() -> None:
    assert utilization_rate(None) == Decimal("0")
    assert utilization_rate({"max_occupancy": 0, "current_occupancy": 3}) == Decimal("0")
    assert utilization_rate({"max_occupancy": 3, "current_occupancy": 1}) == Decimal("33.33")
    assert utilization_trend(Decimal("70")) == "medium"
    assert utilization_trend(Decimal("30")) == "low"
    assert utilization_trend(Decimal("70.01")) == "high"
