from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from tenantgrid.persistence.db import SessionLocal
from tenantgrid.services.credit_expiry import expire_credits, list_expiring_credits
from tenantgrid.services.ledger import CreditEntity, LedgerService
from tenantgrid.tests.utils.auth import create_test_tenant, unique_tenant_id


@pytest.mark.asyncio
async def test_expired_pools_are_removed_with_one_transaction() -> None:
    tenant_id = unique_tenant_id("t-expiry")
    await create_test_tenant(tenant_id)
    ledger = LedgerService()
    entity = CreditEntity("tenant", tenant_id)
    now = datetime(2026, 6, 1, tzinfo=timezone.utc)
    async with SessionLocal() as session:
        await ledger.add_credits(
            session, tenant_id=tenant_id, entity=entity, amount=Decimal("30"), expires_at=now - timedelta(days=1)
        )
    async with SessionLocal() as session:
        await ledger.add_credits(
            session, tenant_id=tenant_id, entity=entity, amount=Decimal("20"), expires_at=now - timedelta(hours=1)
        )
    async with SessionLocal() as session:
        await ledger.add_credits(session, tenant_id=tenant_id, entity=entity, amount=Decimal("5"))

    async with SessionLocal() as session:
        records = await expire_credits(session, tenant_id=tenant_id, now=now)
    assert len(records) == 1
    assert records[0].transaction_type == "expiry"
    assert records[0].amount == Decimal("-50")
    assert records[0].new_balance == Decimal("5")

    async with SessionLocal() as session:
        view = await ledger.get_balance(session, tenant_id=tenant_id, entity=entity)
        again = await expire_credits(session, tenant_id=tenant_id, now=now)
    assert view.available_credits == Decimal("5")
    assert view.total_expired == Decimal("50")
    assert again == []


@pytest.mark.asyncio
async def test_expiring_report_uses_warning_window() -> None:
    tenant_id = unique_tenant_id("t-expiry")
    await create_test_tenant(tenant_id)
    ledger = LedgerService()
    entity = CreditEntity("tenant", tenant_id)
    now = datetime(2026, 6, 1, tzinfo=timezone.utc)
    soon = now + timedelta(days=3)
    async with SessionLocal() as session:
        await ledger.add_credits(session, tenant_id=tenant_id, entity=entity, amount=Decimal("7"), expires_at=soon)
    async with SessionLocal() as session:
        await ledger.add_credits(
            session, tenant_id=tenant_id, entity=entity, amount=Decimal("9"), expires_at=now + timedelta(days=90)
        )

    async with SessionLocal() as session:
        expiring = await list_expiring_credits(session, tenant_id=tenant_id, within_days=7, now=now)
    assert [(item.amount, item.expires_at) for item in expiring] == [(Decimal("7"), soon)]
