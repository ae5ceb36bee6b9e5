from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from tenantgrid.core.errors import CannotDeleteOnlyAdmin, ConfirmationRequired, InvalidRequest
from tenantgrid.domain.models import AuditEvent, TenantUser, UserRoleAssignment
from tenantgrid.persistence.db import SessionLocal
from tenantgrid.services.admin_promotion import (
    AdminPromotionService,
    HasAdmin,
    NoAdmin,
    confirmation_hash,
)
from tenantgrid.tests.utils.auth import create_test_tenant, create_test_user, unique_tenant_id


FIXED_NOW = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


async def _tenant_with_users(count: int) -> tuple[str, list[str]]:
    tenant_id = unique_tenant_id("t-admin")
    await create_test_tenant(tenant_id)
    users = [await create_test_user(tenant_id=tenant_id, role="admin") for _ in range(count)]
    return tenant_id, users


async def _active_admin_assignments(tenant_id: str) -> list[UserRoleAssignment]:
    async with SessionLocal() as session:
        result = await session.execute(
            select(UserRoleAssignment).where(
                UserRoleAssignment.tenant_id == tenant_id,
                UserRoleAssignment.is_system_admin.is_(True),
                UserRoleAssignment.is_active.is_(True),
            )
        )
        return list(result.scalars().all())


@pytest.mark.asyncio
async def test_first_promotion_needs_no_confirmation() -> None:
    tenant_id, (alice,) = await _tenant_with_users(1)
    service = AdminPromotionService(time_provider=lambda: FIXED_NOW)

    async with SessionLocal() as session:
        assert isinstance(await service.get_admin_state(session, tenant_id=tenant_id), NoAdmin)
    async with SessionLocal() as session:
        result = await service.promote(session, tenant_id=tenant_id, target_user_id=alice, reason="bootstrap")
    assert result.new_admin_id == alice
    assert result.previous_admin_id is None
    assert result.transferred is False

    async with SessionLocal() as session:
        state = await service.get_admin_state(session, tenant_id=tenant_id)
        user = await session.get(TenantUser, alice)
    assert isinstance(state, HasAdmin)
    assert state.user_id == alice
    assert user.is_tenant_admin is True


@pytest.mark.asyncio
async def test_transfer_requires_force_and_one_time_code() -> None:
    tenant_id, (alice, bob) = await _tenant_with_users(2)
    service = AdminPromotionService(time_provider=lambda: FIXED_NOW)
    async with SessionLocal() as session:
        await service.promote(session, tenant_id=tenant_id, target_user_id=alice)

    async with SessionLocal() as session:
        with pytest.raises(ConfirmationRequired) as conflict:
            await service.promote(session, tenant_id=tenant_id, target_user_id=bob)
    assert conflict.value.status_code == 409
    assert conflict.value.details["current_admin_id"] == alice
    assert conflict.value.details["force_transfer_required"] is True

    async with SessionLocal() as session:
        with pytest.raises(ConfirmationRequired) as missing_code:
            await service.promote(session, tenant_id=tenant_id, target_user_id=bob, force_transfer=True)
    assert missing_code.value.status_code == 400
    code = missing_code.value.details["required_code"]

    async with SessionLocal() as session:
        with pytest.raises(ConfirmationRequired) as wrong_code:
            await service.promote(
                session,
                tenant_id=tenant_id,
                target_user_id=bob,
                force_transfer=True,
                confirmation_code="NOTACODE",
            )
    assert wrong_code.value.status_code == 400

    async with SessionLocal() as session:
        result = await service.promote(
            session,
            tenant_id=tenant_id,
            target_user_id=bob,
            force_transfer=True,
            confirmation_code=code.lower(),
        )
    assert result.previous_admin_id == alice
    assert result.transferred is True

    assignments = await _active_admin_assignments(tenant_id)
    assert [row.user_id for row in assignments] == [bob]
    async with SessionLocal() as session:
        demoted = await session.get(TenantUser, alice)
        events = (
            await session.execute(
                select(AuditEvent.event_type).where(
                    AuditEvent.tenant_id == tenant_id,
                    AuditEvent.event_type.in_(["system_admin.promotion", "system_admin.demotion"]),
                )
            )
        ).scalars().all()
    assert demoted.is_tenant_admin is False
    assert sorted(events) == ["system_admin.demotion", "system_admin.promotion", "system_admin.promotion"]

    # The code was consumed; replaying it against the new admin fails.
    async with SessionLocal() as session:
        with pytest.raises(ConfirmationRequired):
            await service.promote(
                session,
                tenant_id=tenant_id,
                target_user_id=alice,
                force_transfer=True,
                confirmation_code=code,
            )


@pytest.mark.asyncio
async def test_expired_code_is_rejected() -> None:
    tenant_id, (alice, bob) = await _tenant_with_users(2)
    issuer = AdminPromotionService(time_provider=lambda: FIXED_NOW)
    async with SessionLocal() as session:
        await issuer.promote(session, tenant_id=tenant_id, target_user_id=alice)
    async with SessionLocal() as session:
        code, expires_at = await issuer.issue_confirmation(
            session, tenant_id=tenant_id, current_admin_id=alice, target_user_id=bob
        )
    assert expires_at > FIXED_NOW

    later = AdminPromotionService(time_provider=lambda: expires_at + timedelta(seconds=1))
    async with SessionLocal() as session:
        with pytest.raises(ConfirmationRequired) as excinfo:
            await later.promote(
                session,
                tenant_id=tenant_id,
                target_user_id=bob,
                force_transfer=True,
                confirmation_code=code,
            )
    assert excinfo.value.status_code == 400
    assert [row.user_id for row in await _active_admin_assignments(tenant_id)] == [alice]


@pytest.mark.asyncio
async def test_promoting_current_admin_or_inactive_user_is_invalid() -> None:
    tenant_id, (alice, bob) = await _tenant_with_users(2)
    service = AdminPromotionService(time_provider=lambda: FIXED_NOW)
    async with SessionLocal() as session:
        await service.promote(session, tenant_id=tenant_id, target_user_id=alice)
    async with SessionLocal() as session:
        with pytest.raises(InvalidRequest):
            await service.promote(session, tenant_id=tenant_id, target_user_id=alice)
    async with SessionLocal() as session:
        await service.deactivate_user(session, tenant_id=tenant_id, user_id=bob)
    async with SessionLocal() as session:
        with pytest.raises(InvalidRequest):
            await service.promote(session, tenant_id=tenant_id, target_user_id=bob, force_transfer=True)


@pytest.mark.asyncio
async def test_only_admin_cannot_be_deleted() -> None:
    tenant_id, (alice, bob) = await _tenant_with_users(2)
    service = AdminPromotionService(time_provider=lambda: FIXED_NOW)
    async with SessionLocal() as session:
        await service.promote(session, tenant_id=tenant_id, target_user_id=alice)

    async with SessionLocal() as session:
        blocked = await service.can_delete_user(session, tenant_id=tenant_id, user_id=alice)
        allowed = await service.can_delete_user(session, tenant_id=tenant_id, user_id=bob)
        eligible = await service.list_eligible_users(session, tenant_id=tenant_id)
        current = await service.get_current_system_admin(session, tenant_id=tenant_id)
    assert blocked.can_delete is False
    assert "Promote another user" in blocked.reason
    assert allowed.can_delete is True
    assert [user.id for user in eligible] == [bob]
    assert current.id == alice

    async with SessionLocal() as session:
        with pytest.raises(CannotDeleteOnlyAdmin):
            await service.deactivate_user(session, tenant_id=tenant_id, user_id=alice)


@pytest.mark.asyncio
async def test_preview_reports_changes_without_writing() -> None:
    tenant_id, (alice, bob) = await _tenant_with_users(2)
    service = AdminPromotionService(time_provider=lambda: FIXED_NOW)
    async with SessionLocal() as session:
        empty_preview = await service.preview_promotion(session, tenant_id=tenant_id, target_user_id=bob)
    assert empty_preview.requires_confirmation is False
    assert empty_preview.current_admin_id is None

    async with SessionLocal() as session:
        await service.promote(session, tenant_id=tenant_id, target_user_id=alice)
    async with SessionLocal() as session:
        impact = await service.preview_promotion(session, tenant_id=tenant_id, target_user_id=bob)
        assert not session.new and not session.dirty
    assert impact.requires_confirmation is True
    assert impact.current_admin_id == alice
    assert len(impact.changes) == 2
    assert impact.current_admin_activity == {"roles_created": 0, "roles_assigned": 0}
    assert [row.user_id for row in await _active_admin_assignments(tenant_id)] == [alice]


def test_confirmation_hash_ignores_case_and_whitespace() -> None:
    assert confirmation_hash(" ab12cd34 ") == confirmation_hash("AB12CD34")
    assert confirmation_hash("AB12CD34") != confirmation_hash("AB12CD35")
