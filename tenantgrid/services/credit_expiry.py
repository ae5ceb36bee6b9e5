from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tenantgrid.core.clock import utc_now
from tenantgrid.core.config import get_settings
from tenantgrid.domain.models import CreditBalance
from tenantgrid.persistence.db import transaction
from tenantgrid.persistence.guards import tenant_predicate
from tenantgrid.services.ledger import (
    POOL_OVERAGE,
    TX_EXPIRY,
    TransactionRecord,
    pool_amount,
    pool_expiry,
    set_pools,
    to_record,
    write_transaction,
)


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExpiringPool:
    entity_type: str
    entity_id: str
    application_code: str
    pool_id: str
    amount: Decimal
    expires_at: datetime


def _is_expired(pool: dict, now: datetime) -> bool:
    expires_at = pool_expiry(pool)
    return (
        pool.get("source_type") != POOL_OVERAGE
        and expires_at is not None
        and expires_at <= now
        and pool_amount(pool) > 0
    )


async def expire_credits(
    session: AsyncSession,
    *,
    tenant_id: str | None = None,
    now: datetime | None = None,
) -> list[TransactionRecord]:
    """Drop expired pools and write one expiry transaction per affected balance.

    Without ``tenant_id`` every tenant is swept; that mode is for the operator
    job only.
    """
    resolved_now = now or utc_now()
    records: list[TransactionRecord] = []
    async with transaction(session):
        stmt = select(CreditBalance).where(CreditBalance.is_active.is_(True))
        if tenant_id is not None:
            stmt = stmt.where(tenant_predicate(CreditBalance, tenant_id))
        result = await session.execute(stmt.order_by(CreditBalance.id).with_for_update())
        for balance in result.scalars().all():
            pools = list(balance.credit_pools or [])
            expired = [pool for pool in pools if _is_expired(pool, resolved_now)]
            if not expired:
                continue
            expired_total = sum((pool_amount(pool) for pool in expired), Decimal("0"))
            previous = Decimal(balance.available_credits)
            expired_ids = {pool["pool_id"] for pool in expired}
            set_pools(balance, [pool for pool in pools if pool["pool_id"] not in expired_ids])
            balance.total_expired = Decimal(balance.total_expired) + expired_total
            row = write_transaction(
                session,
                balance,
                transaction_type=TX_EXPIRY,
                amount=-expired_total,
                previous_balance=previous,
                description="Credit pool expiry",
                metadata={"pool_ids": sorted(expired_ids)},
            )
            records.append(to_record(row))
    if records:
        logger.info("credits_expired tenant_id=%s balances=%s", tenant_id or "*", len(records))
    return records


async def list_expiring_credits(
    session: AsyncSession,
    *,
    tenant_id: str,
    within_days: int | None = None,
    now: datetime | None = None,
) -> list[ExpiringPool]:
    resolved_now = now or utc_now()
    days = within_days if within_days is not None else get_settings().credit_expiry_warning_days
    horizon = resolved_now + timedelta(days=days)
    result = await session.execute(
        select(CreditBalance).where(
            tenant_predicate(CreditBalance, tenant_id),
            CreditBalance.is_active.is_(True),
        )
    )
    expiring: list[ExpiringPool] = []
    for balance in result.scalars().all():
        for pool in balance.credit_pools or []:
            expires_at = pool_expiry(pool)
            if expires_at is None or pool.get("source_type") == POOL_OVERAGE or pool_amount(pool) <= 0:
                continue
            if resolved_now < expires_at <= horizon:
                expiring.append(
                    ExpiringPool(
                        entity_type=balance.entity_type,
                        entity_id=balance.entity_id,
                        application_code=balance.application_code,
                        pool_id=pool["pool_id"],
                        amount=pool_amount(pool),
                        expires_at=expires_at,
                    )
                )
    return sorted(expiring, key=lambda item: item.expires_at)
