from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import ROUND_DOWN, ROUND_HALF_UP, Decimal
import logging
from typing import Any, Callable
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tenantgrid.core.clock import as_utc, utc_now
from tenantgrid.core.errors import (
    CREDIT_QUANTUM,
    EntityNotFound,
    InsufficientCredits,
    InsufficientSourceBalance,
    InvalidRequest,
    SharingPercentagesInvalid,
)
from tenantgrid.domain.models import CreditBalance, CreditTransaction, CreditUsageCounter, Location
from tenantgrid.persistence.db import transaction
from tenantgrid.persistence.guards import tenant_predicate
from tenantgrid.persistence.repos.locations import list_active_assignments
from tenantgrid.services.audit import AuditActor, stage_event
from tenantgrid.services.credit_config import compute_charge, get_effective_cost
from tenantgrid.services.isolation import application_clause, ensure_entity_in_tenant, ensure_same_tenant
from tenantgrid.services.scope import ScopeChain


logger = logging.getLogger(__name__)

TX_ALLOCATION = "allocation"
TX_CONSUMPTION = "consumption"
TX_TRANSFER = "transfer"
TX_REFUND = "refund"
TX_EXPIRY = "expiry"

POOL_OVERAGE = "overage"
COUNTER_FREE_ALLOWANCE = "free_allowance"
COUNTER_OVERAGE = "overage"
DEFAULT_OVERAGE_PERIOD = "month"
SHARED_BALANCE = ""

_ZERO = Decimal("0")
_FAR_FUTURE = datetime.max.replace(tzinfo=timezone.utc)


@dataclass(frozen=True)
class CreditEntity:
    entity_type: str
    entity_id: str
    # Empty for the entity's shared balance, otherwise the application allocation.
    application_code: str = SHARED_BALANCE

    @property
    def sort_key(self) -> tuple[str, str, str]:
        return (self.entity_type, self.entity_id, self.application_code)


@dataclass(frozen=True)
class TransactionRecord:
    transaction_id: str
    entity_type: str
    entity_id: str
    application_code: str
    transaction_type: str
    amount: Decimal
    previous_balance: Decimal
    new_balance: Decimal
    operation_code: str | None
    description: str | None
    metadata: dict[str, Any]
    created_at: datetime


@dataclass(frozen=True)
class AllocationResult:
    source: TransactionRecord
    target: TransactionRecord


@dataclass(frozen=True)
class SharingResult:
    location_id: str
    shared_total: Decimal
    location_transaction: TransactionRecord | None
    shares: list[TransactionRecord]


@dataclass(frozen=True)
class BalanceView:
    entity_type: str
    entity_id: str
    application_code: str
    available_credits: Decimal
    total_credits: Decimal
    reserved_credits: Decimal
    total_consumed: Decimal
    total_expired: Decimal
    total_transferred: Decimal
    credit_pools: list[dict[str, Any]]
    is_active: bool
    is_frozen: bool


@dataclass(frozen=True)
class PoolSlice:
    amount: Decimal
    expires_at: datetime | None


def _quantize(value: Decimal) -> Decimal:
    return value.quantize(CREDIT_QUANTUM, rounding=ROUND_HALF_UP)


def _fmt(value: Decimal) -> str:
    return str(_quantize(value))


def pool_amount(pool: dict[str, Any]) -> Decimal:
    return Decimal(str(pool["amount"]))


def pool_expiry(pool: dict[str, Any]) -> datetime | None:
    raw = pool.get("expires_at")
    if not raw:
        return None
    return as_utc(datetime.fromisoformat(raw))


def sum_pools(pools: list[dict[str, Any]]) -> Decimal:
    return _quantize(sum((pool_amount(pool) for pool in pools), _ZERO))


def _new_pool(amount: Decimal, *, source_type: str, expires_at: datetime | None) -> dict[str, Any]:
    return {
        "pool_id": uuid4().hex,
        "amount": _fmt(amount),
        "source_type": source_type,
        "expires_at": expires_at.isoformat() if expires_at else None,
        "created_at": utc_now().isoformat(),
    }


def _debit_order(pool: dict[str, Any]) -> tuple[datetime, str]:
    # Soonest-expiring credits are spent first; undated pools last, oldest first.
    return (pool_expiry(pool) or _FAR_FUTURE, str(pool.get("created_at") or ""))


def debit_pools(
    pools: list[dict[str, Any]],
    amount: Decimal,
    *,
    allow_overage: bool = False,
) -> tuple[list[dict[str, Any]], list[PoolSlice], Decimal]:
    """Spend ``amount`` from funded pools.

    Returns the new pool list, the slices taken (with their expiry, so
    transfers can carry it over) and the part that went into overage.
    Overage lives in a single negative pool so the pool sum always equals
    the available balance.
    """
    funded = sorted(
        (p for p in pools if p.get("source_type") != POOL_OVERAGE and pool_amount(p) > 0),
        key=_debit_order,
    )
    overage_pool = next((p for p in pools if p.get("source_type") == POOL_OVERAGE), None)
    remaining = amount
    slices: list[PoolSlice] = []
    kept: list[dict[str, Any]] = []
    for pool in funded:
        available = pool_amount(pool)
        if remaining <= 0:
            kept.append(pool)
            continue
        take = min(available, remaining)
        remaining -= take
        slices.append(PoolSlice(amount=take, expires_at=pool_expiry(pool)))
        if available - take > 0:
            kept.append({**pool, "amount": _fmt(available - take)})
    overage = _ZERO
    if remaining > 0:
        if not allow_overage:
            raise ValueError("debit exceeds funded credit pools")
        overage = remaining
    owed = (-pool_amount(overage_pool) if overage_pool else _ZERO) + overage
    if owed > 0:
        base = overage_pool or _new_pool(_ZERO, source_type=POOL_OVERAGE, expires_at=None)
        kept.append({**base, "amount": _fmt(-owed)})
    return kept, slices, overage


def credit_pools(
    pools: list[dict[str, Any]],
    amount: Decimal,
    *,
    source_type: str,
    expires_at: datetime | None = None,
) -> list[dict[str, Any]]:
    # Incoming credits pay down outstanding overage before forming a new pool.
    remaining = amount
    updated: list[dict[str, Any]] = []
    for pool in pools:
        if pool.get("source_type") == POOL_OVERAGE and remaining > 0:
            owed = -pool_amount(pool)
            paid = min(owed, remaining)
            remaining -= paid
            if owed - paid > 0:
                updated.append({**pool, "amount": _fmt(-(owed - paid))})
            continue
        updated.append(pool)
    if remaining > 0:
        updated.append(_new_pool(remaining, source_type=source_type, expires_at=expires_at))
    return updated


def period_start(period_type: str, now: datetime) -> datetime:
    resolved = as_utc(now)
    if period_type == "day":
        return datetime(resolved.year, resolved.month, resolved.day, tzinfo=timezone.utc)
    if period_type == "month":
        return datetime(resolved.year, resolved.month, 1, tzinfo=timezone.utc)
    if period_type == "year":
        return datetime(resolved.year, 1, 1, tzinfo=timezone.utc)
    raise InvalidRequest(f"Unsupported period type: {period_type}")


def to_record(row: CreditTransaction) -> TransactionRecord:
    return TransactionRecord(
        transaction_id=row.id,
        entity_type=row.entity_type,
        entity_id=row.entity_id,
        application_code=row.application_code,
        transaction_type=row.transaction_type,
        amount=Decimal(row.amount),
        previous_balance=Decimal(row.previous_balance),
        new_balance=Decimal(row.new_balance),
        operation_code=row.operation_code,
        description=row.description,
        metadata=dict(row.metadata_json or {}),
        created_at=row.created_at,
    )


def _to_view(row: CreditBalance) -> BalanceView:
    return BalanceView(
        entity_type=row.entity_type,
        entity_id=row.entity_id,
        application_code=row.application_code,
        available_credits=Decimal(row.available_credits),
        total_credits=Decimal(row.total_credits),
        reserved_credits=Decimal(row.reserved_credits),
        total_consumed=Decimal(row.total_consumed),
        total_expired=Decimal(row.total_expired),
        total_transferred=Decimal(row.total_transferred),
        credit_pools=list(row.credit_pools or []),
        is_active=row.is_active,
        is_frozen=row.is_frozen,
    )


def _balance_predicate(tenant_id: str, entity: CreditEntity) -> list[object]:
    return [
        tenant_predicate(CreditBalance, tenant_id),
        CreditBalance.entity_type == entity.entity_type,
        CreditBalance.entity_id == entity.entity_id,
        CreditBalance.application_code == entity.application_code,
    ]


async def _lock_balance(
    session: AsyncSession,
    tenant_id: str,
    entity: CreditEntity,
    *,
    create: bool,
) -> CreditBalance | None:
    # Row lock serializes read-then-write on one balance across concurrent requests.
    result = await session.execute(
        select(CreditBalance).where(*_balance_predicate(tenant_id, entity)).with_for_update()
    )
    balance = result.scalar_one_or_none()
    if balance is None and create:
        balance = CreditBalance(
            id=uuid4().hex,
            tenant_id=tenant_id,
            entity_type=entity.entity_type,
            entity_id=entity.entity_id,
            application_code=entity.application_code,
            available_credits=_ZERO,
            reserved_credits=_ZERO,
            total_credits=_ZERO,
            credit_pools=[],
            total_consumed=_ZERO,
            total_expired=_ZERO,
            total_transferred=_ZERO,
            is_active=True,
            is_frozen=False,
        )
        session.add(balance)
        await session.flush()
    return balance


async def _ensure_owned(session: AsyncSession, tenant_id: str, entity: CreditEntity) -> None:
    await ensure_entity_in_tenant(session, tenant_id, entity_type=entity.entity_type, entity_id=entity.entity_id)


def _ensure_usable(balance: CreditBalance) -> None:
    if balance.is_frozen or not balance.is_active:
        raise InvalidRequest(
            "Credit balance is frozen or inactive",
            details={"entity_type": balance.entity_type, "entity_id": balance.entity_id},
        )


async def _lock_counter(
    session: AsyncSession,
    *,
    tenant_id: str,
    entity: CreditEntity,
    operation_code: str,
    counter_kind: str,
    period_type: str,
    now: datetime,
) -> CreditUsageCounter:
    start = period_start(period_type, now)
    result = await session.execute(
        select(CreditUsageCounter)
        .where(
            tenant_predicate(CreditUsageCounter, tenant_id),
            CreditUsageCounter.entity_type == entity.entity_type,
            CreditUsageCounter.entity_id == entity.entity_id,
            CreditUsageCounter.operation_code == operation_code,
            CreditUsageCounter.counter_kind == counter_kind,
            CreditUsageCounter.period_type == period_type,
            CreditUsageCounter.period_start == start,
        )
        .with_for_update()
    )
    counter = result.scalar_one_or_none()
    if counter is None:
        counter = CreditUsageCounter(
            id=uuid4().hex,
            tenant_id=tenant_id,
            entity_type=entity.entity_type,
            entity_id=entity.entity_id,
            operation_code=operation_code,
            counter_kind=counter_kind,
            period_type=period_type,
            period_start=start,
            used=_ZERO,
        )
        session.add(counter)
        await session.flush()
    return counter


def write_transaction(
    session: AsyncSession,
    balance: CreditBalance,
    *,
    transaction_type: str,
    amount: Decimal,
    previous_balance: Decimal,
    operation_code: str | None = None,
    related: CreditEntity | None = None,
    description: str | None = None,
    metadata: dict[str, Any] | None = None,
    initiated_by: str | None = None,
) -> CreditTransaction:
    row = CreditTransaction(
        id=uuid4().hex,
        tenant_id=balance.tenant_id,
        entity_type=balance.entity_type,
        entity_id=balance.entity_id,
        application_code=balance.application_code,
        transaction_type=transaction_type,
        amount=_quantize(amount),
        previous_balance=_quantize(previous_balance),
        new_balance=_quantize(Decimal(balance.available_credits)),
        operation_code=operation_code,
        related_entity_type=related.entity_type if related else None,
        related_entity_id=related.entity_id if related else None,
        description=description,
        metadata_json=metadata or {},
        initiated_by=initiated_by,
        created_at=utc_now(),
    )
    session.add(row)
    return row


def set_pools(balance: CreditBalance, pools: list[dict[str, Any]]) -> None:
    # Assign a new list so the JSON column is flagged dirty.
    balance.credit_pools = pools
    balance.available_credits = sum_pools(pools)


class LedgerService:
    """Balance mutations; every call is one transaction with one row per balance change."""

    def __init__(self, *, time_provider: Callable[[], datetime] | None = None) -> None:
        self._time_provider = time_provider or utc_now

    async def consume(
        self,
        session: AsyncSession,
        *,
        tenant_id: str,
        entity: CreditEntity,
        operation_code: str,
        quantity: Decimal,
        scope_chain: ScopeChain,
        actor: AuditActor | None = None,
    ) -> TransactionRecord:
        """Charge ``entity`` for ``quantity`` units of ``operation_code``.

        The cost comes from the effective configuration for ``scope_chain``.
        Free allowance for the current period is applied first. A charge that
        would overdraw the balance fails with ``InsufficientCredits`` unless
        the configuration allows overage and the period's overage limit has
        room; permitted overage is tracked in its own counter.
        """
        now = self._time_provider()
        quantity = Decimal(quantity)
        async with transaction(session):
            await _ensure_owned(session, tenant_id, entity)
            effective = await get_effective_cost(session, operation_code, scope_chain, now=now)
            config = effective.config
            balance = await _lock_balance(session, tenant_id, entity, create=True)
            _ensure_usable(balance)

            free_counter = None
            free_remaining = _ZERO
            if config.free_allowance and config.free_allowance_period:
                free_counter = await _lock_counter(
                    session,
                    tenant_id=tenant_id,
                    entity=entity,
                    operation_code=operation_code,
                    counter_kind=COUNTER_FREE_ALLOWANCE,
                    period_type=config.free_allowance_period,
                    now=now,
                )
                free_remaining = Decimal(config.free_allowance) - Decimal(free_counter.used)

            charge = compute_charge(config, quantity, free_units_remaining=free_remaining)
            previous = Decimal(balance.available_credits)
            covered = min(charge.cost, max(previous, _ZERO))
            uncovered = charge.cost - covered
            overage_amount = _ZERO
            if uncovered > 0:
                if not config.allow_overage:
                    raise InsufficientCredits(
                        f"Insufficient credits. Available: {previous}, Requested: {charge.cost}",
                        balance=previous,
                        requested=charge.cost,
                        details={"operation_code": operation_code},
                    )
                overage_amount = uncovered
                if config.overage_cost is not None and charge.unit_cost > 0:
                    overage_amount = _quantize(uncovered * Decimal(config.overage_cost) / charge.unit_cost)
                overage_counter = await _lock_counter(
                    session,
                    tenant_id=tenant_id,
                    entity=entity,
                    operation_code=operation_code,
                    counter_kind=COUNTER_OVERAGE,
                    period_type=config.overage_period or DEFAULT_OVERAGE_PERIOD,
                    now=now,
                )
                drawn = Decimal(overage_counter.used)
                if config.overage_limit is not None and drawn + overage_amount > Decimal(config.overage_limit):
                    raise InsufficientCredits(
                        "Overage limit exceeded",
                        balance=previous,
                        requested=covered + overage_amount,
                        details={
                            "operation_code": operation_code,
                            "overage_limit": str(config.overage_limit),
                            "overage_used": str(drawn),
                        },
                    )
                overage_counter.used = drawn + overage_amount

            total_debit = covered + overage_amount
            pools, _slices, _overage = debit_pools(
                list(balance.credit_pools or []), total_debit, allow_overage=overage_amount > 0
            )
            set_pools(balance, pools)
            balance.total_consumed = Decimal(balance.total_consumed) + total_debit
            if free_counter is not None:
                free_counter.used = Decimal(free_counter.used) + charge.free_units_applied

            row = write_transaction(
                session,
                balance,
                transaction_type=TX_CONSUMPTION,
                amount=-total_debit,
                previous_balance=previous,
                operation_code=operation_code,
                description=f"{operation_code} x{quantity}",
                metadata={
                    "quantity": str(quantity),
                    "unit_cost": str(charge.unit_cost),
                    "free_units_applied": str(charge.free_units_applied),
                    "overage_amount": _fmt(overage_amount),
                    "config_id": config.id,
                    "resolved_scope": effective.resolved_scope,
                },
                initiated_by=actor.actor_id if actor else None,
            )
            record = to_record(row)
        logger.info(
            "credits_consumed tenant_id=%s entity_id=%s operation_code=%s amount=%s",
            tenant_id,
            entity.entity_id,
            operation_code,
            total_debit,
        )
        return record

    async def allocate(
        self,
        session: AsyncSession,
        *,
        tenant_id: str,
        source: CreditEntity,
        target: CreditEntity,
        amount: Decimal,
        purpose: str | None = None,
        actor: AuditActor | None = None,
    ) -> AllocationResult:
        """Move ``amount`` from ``source`` to ``target`` atomically.

        Both balances are locked in a fixed order, both updates and both
        transaction rows commit together or not at all.
        """
        amount = _quantize(Decimal(amount))
        if amount <= 0:
            raise InvalidRequest("Allocation amount must be positive", details={"amount": str(amount)})
        if source == target:
            raise InvalidRequest("Source and target must differ")
        operation_code = (
            f"application_allocation:{target.application_code}"
            if target.application_code and target.entity_id == source.entity_id
            else "entity_allocation"
        )
        async with transaction(session):
            for entity in (source, target):
                await _ensure_owned(session, tenant_id, entity)
            locked: dict[CreditEntity, CreditBalance | None] = {}
            for entity in sorted((source, target), key=lambda item: item.sort_key):
                locked[entity] = await _lock_balance(session, tenant_id, entity, create=entity == target)
            source_balance = locked[source]
            target_balance = locked[target]
            available = Decimal(source_balance.available_credits) if source_balance else _ZERO
            if source_balance is None or amount > available:
                raise InsufficientSourceBalance(
                    f"Insufficient credits. Available: {available}, Requested: {amount}",
                    balance=available,
                    requested=amount,
                    details={"source_entity_id": source.entity_id},
                )
            _ensure_usable(source_balance)
            _ensure_usable(target_balance)

            source_previous = available
            pools, slices, _overage = debit_pools(list(source_balance.credit_pools or []), amount)
            set_pools(source_balance, pools)
            source_balance.total_transferred = Decimal(source_balance.total_transferred) + amount

            target_previous = Decimal(target_balance.available_credits)
            target_pools = list(target_balance.credit_pools or [])
            for piece in slices:
                target_pools = credit_pools(
                    target_pools, piece.amount, source_type=TX_ALLOCATION, expires_at=piece.expires_at
                )
            set_pools(target_balance, target_pools)
            target_balance.total_credits = Decimal(target_balance.total_credits) + amount

            initiated_by = actor.actor_id if actor else None
            source_row = write_transaction(
                session,
                source_balance,
                transaction_type=TX_ALLOCATION,
                amount=-amount,
                previous_balance=source_previous,
                operation_code=operation_code,
                related=target,
                description=purpose,
                metadata={"direction": "out", "target_application": target.application_code or None},
                initiated_by=initiated_by,
            )
            target_row = write_transaction(
                session,
                target_balance,
                transaction_type=TX_ALLOCATION,
                amount=amount,
                previous_balance=target_previous,
                operation_code=operation_code,
                related=source,
                description=purpose,
                metadata={"direction": "in", "source_transaction_id": source_row.id},
                initiated_by=initiated_by,
            )
            stage_event(
                session,
                tenant_id=tenant_id,
                actor=actor,
                event_type="credits.allocated",
                outcome="success",
                resource_type="credits",
                resource_id=source_row.id,
                metadata={
                    "source_entity_id": source.entity_id,
                    "target_entity_id": target.entity_id,
                    "target_application": target.application_code or None,
                    "amount": str(amount),
                },
            )
            result = AllocationResult(source=to_record(source_row), target=to_record(target_row))
        logger.info(
            "credits_allocated tenant_id=%s source=%s target=%s amount=%s",
            tenant_id,
            source.entity_id,
            target.entity_id,
            amount,
        )
        return result

    async def allocate_to_application(
        self,
        session: AsyncSession,
        *,
        tenant_id: str,
        source: CreditEntity,
        target_application: str,
        amount: Decimal,
        purpose: str | None = None,
        actor: AuditActor | None = None,
    ) -> AllocationResult:
        # Application allocations live in a separate balance row of the same entity.
        if not target_application:
            raise InvalidRequest("target_application is required")
        target = CreditEntity(
            entity_type=source.entity_type,
            entity_id=source.entity_id,
            application_code=target_application,
        )
        return await self.allocate(
            session,
            tenant_id=tenant_id,
            source=source,
            target=target,
            amount=amount,
            purpose=purpose,
            actor=actor,
        )

    async def transfer_with_sharing(
        self,
        session: AsyncSession,
        *,
        tenant_id: str,
        location_id: str,
        amount: Decimal,
        actor: AuditActor | None = None,
    ) -> SharingResult:
        """Split ``amount`` of a location's credits across its sharing assignments.

        Each active assignment with sharing enabled receives its percentage of
        ``amount``; the location balance is debited by the sum of the shares.
        Percentages summing over 100 are rejected before anything is written.
        """
        amount = _quantize(Decimal(amount))
        if amount <= 0:
            raise InvalidRequest("Transfer amount must be positive")
        async with transaction(session):
            location = await session.get(Location, location_id)
            if location is None:
                raise EntityNotFound("Location not found", details={"location_id": location_id})
            ensure_same_tenant(tenant_id, location.tenant_id, resource_type="location")
            assignments = [
                assignment
                for assignment in await list_active_assignments(session, location_id, for_update=True)
                if assignment.credit_sharing_enabled
            ]
            total_pct = sum((Decimal(a.credit_sharing_percentage) for a in assignments), _ZERO)
            if total_pct > 100:
                raise SharingPercentagesInvalid(
                    "Active credit sharing percentages exceed 100",
                    details={"location_id": location_id, "total_percentage": str(total_pct)},
                )
            shares: list[tuple[CreditEntity, Decimal]] = []
            for assignment in assignments:
                share = (amount * Decimal(assignment.credit_sharing_percentage) / 100).quantize(
                    CREDIT_QUANTUM, rounding=ROUND_DOWN
                )
                if share > 0:
                    shares.append((CreditEntity(assignment.entity_type, assignment.entity_id), share))
            shared_total = sum((share for _, share in shares), _ZERO)
            if shared_total == 0:
                return SharingResult(
                    location_id=location_id,
                    shared_total=_ZERO,
                    location_transaction=None,
                    shares=[],
                )

            location_entity = CreditEntity("location", location_id)
            balances: dict[CreditEntity, CreditBalance | None] = {}
            everyone = {location_entity, *(entity for entity, _ in shares)}
            for entity in sorted(everyone, key=lambda item: item.sort_key):
                balances[entity] = await _lock_balance(
                    session, tenant_id, entity, create=entity != location_entity
                )
            location_balance = balances[location_entity]
            available = Decimal(location_balance.available_credits) if location_balance else _ZERO
            if location_balance is None or shared_total > available:
                raise InsufficientSourceBalance(
                    f"Insufficient credits. Available: {available}, Requested: {shared_total}",
                    balance=available,
                    requested=shared_total,
                    details={"location_id": location_id},
                )
            _ensure_usable(location_balance)

            location_previous = available
            pools, slices, _overage = debit_pools(list(location_balance.credit_pools or []), shared_total)
            set_pools(location_balance, pools)
            location_balance.total_transferred = Decimal(location_balance.total_transferred) + shared_total
            initiated_by = actor.actor_id if actor else None
            location_row = write_transaction(
                session,
                location_balance,
                transaction_type=TX_TRANSFER,
                amount=-shared_total,
                previous_balance=location_previous,
                operation_code="location_credit_sharing",
                description="Location credit sharing",
                metadata={"recipients": len(shares)},
                initiated_by=initiated_by,
            )
            share_rows: list[CreditTransaction] = []
            for entity, share in shares:
                target_balance = balances[entity]
                _ensure_usable(target_balance)
                previous = Decimal(target_balance.available_credits)
                # Expiry of the spent pools is not split per recipient; shares arrive undated.
                set_pools(
                    target_balance,
                    credit_pools(list(target_balance.credit_pools or []), share, source_type=TX_TRANSFER),
                )
                target_balance.total_credits = Decimal(target_balance.total_credits) + share
                share_rows.append(
                    write_transaction(
                        session,
                        target_balance,
                        transaction_type=TX_TRANSFER,
                        amount=share,
                        previous_balance=previous,
                        operation_code="location_credit_sharing",
                        related=location_entity,
                        description="Location credit sharing",
                        metadata={"source_transaction_id": location_row.id},
                        initiated_by=initiated_by,
                    )
                )
            stage_event(
                session,
                tenant_id=tenant_id,
                actor=actor,
                event_type="credits.shared",
                outcome="success",
                resource_type="location",
                resource_id=location_id,
                metadata={"amount": str(amount), "shared_total": str(shared_total)},
            )
            result = SharingResult(
                location_id=location_id,
                shared_total=shared_total,
                location_transaction=to_record(location_row),
                shares=[to_record(row) for row in share_rows],
            )
        logger.info(
            "credits_shared tenant_id=%s location_id=%s shared_total=%s recipients=%s",
            tenant_id,
            location_id,
            shared_total,
            len(result.shares),
        )
        return result

    async def add_credits(
        self,
        session: AsyncSession,
        *,
        tenant_id: str,
        entity: CreditEntity,
        amount: Decimal,
        source_type: str = "purchase",
        expires_at: datetime | None = None,
        description: str | None = None,
        actor: AuditActor | None = None,
    ) -> TransactionRecord:
        # Grants, purchases and refunds all land as a new dated pool.
        amount = _quantize(Decimal(amount))
        if amount <= 0:
            raise InvalidRequest("Credit amount must be positive")
        async with transaction(session):
            await _ensure_owned(session, tenant_id, entity)
            balance = await _lock_balance(session, tenant_id, entity, create=True)
            previous = Decimal(balance.available_credits)
            set_pools(
                balance,
                credit_pools(
                    list(balance.credit_pools or []),
                    amount,
                    source_type=source_type,
                    expires_at=expires_at,
                ),
            )
            balance.total_credits = Decimal(balance.total_credits) + amount
            row = write_transaction(
                session,
                balance,
                transaction_type=TX_REFUND if source_type == TX_REFUND else TX_ALLOCATION,
                amount=amount,
                previous_balance=previous,
                description=description,
                metadata={"source_type": source_type, "expires_at": expires_at.isoformat() if expires_at else None},
                initiated_by=actor.actor_id if actor else None,
            )
            record = to_record(row)
        return record

    async def get_balance(
        self,
        session: AsyncSession,
        *,
        tenant_id: str,
        entity: CreditEntity,
    ) -> BalanceView | None:
        result = await session.execute(select(CreditBalance).where(*_balance_predicate(tenant_id, entity)))
        row = result.scalar_one_or_none()
        return _to_view(row) if row else None

    async def resolve_consumption_entity(
        self,
        session: AsyncSession,
        *,
        tenant_id: str,
        entity: CreditEntity,
        application_code: str | None,
    ) -> CreditEntity:
        # Prefer the caller application's allocation when the entity has one.
        if not application_code or entity.application_code:
            return entity
        candidate = CreditEntity(entity.entity_type, entity.entity_id, application_code)
        if await self.get_balance(session, tenant_id=tenant_id, entity=candidate) is not None:
            return candidate
        return entity

    async def list_transactions(
        self,
        session: AsyncSession,
        *,
        tenant_id: str,
        entity_type: str,
        entity_id: str,
        application_code: str | None = None,
        limit: int = 50,
    ) -> list[TransactionRecord]:
        # Newest first; the caller's application plus shared rows only.
        result = await session.execute(
            select(CreditTransaction)
            .where(
                tenant_predicate(CreditTransaction, tenant_id),
                CreditTransaction.entity_type == entity_type,
                CreditTransaction.entity_id == entity_id,
                application_clause(
                    CreditTransaction.application_code, application_code, shared_value=SHARED_BALANCE
                ),
            )
            .order_by(CreditTransaction.created_at.desc(), CreditTransaction.id.desc())
            .limit(max(1, min(limit, 500)))
        )
        return [to_record(row) for row in result.scalars().all()]


_ledger_service: LedgerService | None = None


def get_ledger_service() -> LedgerService:
    global _ledger_service
    if _ledger_service is None:
        _ledger_service = LedgerService()
    return _ledger_service


def reset_ledger_service() -> None:
    global _ledger_service
    _ledger_service = None
