from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
import logging
from typing import Any
from uuid import uuid4

from sqlalchemy import Select, delete, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from tenantgrid.core.clock import utc_now
from tenantgrid.core.config import (
    SCOPE_GLOBAL,
    SCOPE_LOCATION,
    SCOPE_ORGANIZATION,
    SCOPE_TENANT,
)
from tenantgrid.core.errors import CREDIT_QUANTUM, InvalidRequest, OperationCostNotConfigured
from tenantgrid.domain.models import CreditConfiguration
from tenantgrid.persistence.db import transaction
from tenantgrid.persistence.guards import require_tenant_id, tenant_predicate
from tenantgrid.services.audit import AuditActor, stage_event
from tenantgrid.services.isolation import application_clause
from tenantgrid.services.scope import ScopeChain


logger = logging.getLogger(__name__)

PERIOD_TYPES = ("day", "month", "year")
TENANT_OVERRIDE_PRIORITY = 100


@dataclass(frozen=True)
class EffectiveCost:
    config: CreditConfiguration
    is_customized: bool
    resolved_scope: str
    resolved_entity_id: str | None


@dataclass(frozen=True)
class ChargeBreakdown:
    unit_cost: Decimal
    quantity: Decimal
    free_units_applied: Decimal
    billable_units: Decimal
    cost: Decimal


@dataclass(frozen=True)
class ComprehensiveConfigurations:
    # Display-only view of every override layer; never used for billing.
    tenant_rows: list[CreditConfiguration]
    global_rows: list[CreditConfiguration]


@dataclass(frozen=True)
class CreditConfigValues:
    credit_cost: Decimal
    unit: str = "operation"
    unit_multiplier: Decimal = Decimal("1")
    free_allowance: int = 0
    free_allowance_period: str | None = None
    volume_tiers: list[dict[str, Any]] | None = None
    allow_overage: bool = False
    overage_limit: Decimal | None = None
    overage_period: str | None = None
    overage_cost: Decimal | None = None
    is_inherited: bool = True
    priority: int | None = None
    application_code: str | None = None
    expires_at: datetime | None = None


@dataclass(frozen=True)
class _LookupSource:
    """One step of the narrowest-scope-wins walk."""

    scope: str
    tenant_id: str | None
    entity_id: str | None
    # Only the requested entity itself may use non-inherited rows.
    direct: bool

    def apply(self, stmt: Select) -> Select:
        if self.scope == SCOPE_GLOBAL:
            return stmt.where(CreditConfiguration.tenant_id.is_(None))
        stmt = stmt.where(tenant_predicate(CreditConfiguration, self.tenant_id))
        if self.entity_id is not None and self.scope != SCOPE_TENANT:
            stmt = stmt.where(CreditConfiguration.entity_id == self.entity_id)
        if not self.direct:
            stmt = stmt.where(CreditConfiguration.is_inherited.is_(True))
        return stmt


def lookup_sources(chain: ScopeChain) -> list[_LookupSource]:
    # Chain levels in order, then the global default as the final fallback.
    sources: list[_LookupSource] = []
    for index, level in enumerate(chain):
        if level.scope == SCOPE_TENANT:
            sources.append(
                _LookupSource(scope=SCOPE_TENANT, tenant_id=chain.tenant_id, entity_id=None, direct=True)
            )
        else:
            sources.append(
                _LookupSource(
                    scope=level.scope,
                    tenant_id=chain.tenant_id,
                    entity_id=level.entity_id,
                    direct=index == 0,
                )
            )
    sources.append(_LookupSource(scope=SCOPE_GLOBAL, tenant_id=None, entity_id=None, direct=True))
    return sources


async def _best_row(
    session: AsyncSession,
    source: _LookupSource,
    *,
    operation_code: str,
    application_code: str | None,
    now: datetime,
) -> CreditConfiguration | None:
    stmt = select(CreditConfiguration).where(
        CreditConfiguration.operation_code == operation_code,
        CreditConfiguration.scope == source.scope,
        CreditConfiguration.is_active.is_(True),
        or_(CreditConfiguration.expires_at.is_(None), CreditConfiguration.expires_at > now),
        application_clause(CreditConfiguration.application_code, application_code),
    )
    stmt = source.apply(stmt).order_by(
        # Application-specific rows beat shared rows at the same level.
        CreditConfiguration.application_code.is_(None),
        CreditConfiguration.priority.desc(),
        CreditConfiguration.updated_at.desc(),
        CreditConfiguration.id.desc(),
    )
    result = await session.execute(stmt.limit(1))
    return result.scalar_one_or_none()


async def get_effective_cost(
    session: AsyncSession,
    operation_code: str,
    scope_chain: ScopeChain,
    *,
    now: datetime | None = None,
) -> EffectiveCost:
    """Walk the scope chain and return the first matching configuration.

    Raises ``OperationCostNotConfigured`` when neither the chain nor the
    global defaults define ``operation_code``; a missing cost is never
    treated as free.
    """
    resolved_now = now or utc_now()
    for source in lookup_sources(scope_chain):
        row = await _best_row(
            session,
            source,
            operation_code=operation_code,
            application_code=scope_chain.application_code,
            now=resolved_now,
        )
        if row is not None:
            return EffectiveCost(
                config=row,
                is_customized=source.scope != SCOPE_GLOBAL,
                resolved_scope=source.scope,
                resolved_entity_id=source.entity_id if source.scope != SCOPE_TENANT else source.tenant_id,
            )
    logger.warning(
        "operation_cost_not_configured tenant_id=%s operation_code=%s",
        scope_chain.tenant_id,
        operation_code,
    )
    raise OperationCostNotConfigured(
        f"No credit configuration for operation {operation_code}",
        details={"operation_code": operation_code},
    )


def unit_cost_for_quantity(config: CreditConfiguration, quantity: Decimal) -> Decimal:
    # Highest tier whose threshold the quantity reaches; base cost below the first tier.
    unit_cost = Decimal(config.credit_cost)
    for tier in sorted(config.volume_tiers or [], key=lambda item: Decimal(str(item["threshold"]))):
        if quantity >= Decimal(str(tier["threshold"])):
            unit_cost = Decimal(str(tier["cost"]))
    return unit_cost


def compute_charge(
    config: CreditConfiguration,
    quantity: Decimal,
    *,
    free_units_remaining: Decimal = Decimal("0"),
) -> ChargeBreakdown:
    if quantity <= 0:
        raise InvalidRequest("Quantity must be positive", details={"quantity": str(quantity)})
    unit_cost = unit_cost_for_quantity(config, quantity)
    free_applied = min(max(free_units_remaining, Decimal("0")), quantity)
    billable = quantity - free_applied
    cost = (unit_cost * billable * Decimal(config.unit_multiplier)).quantize(
        CREDIT_QUANTUM, rounding=ROUND_HALF_UP
    )
    return ChargeBreakdown(
        unit_cost=unit_cost,
        quantity=quantity,
        free_units_applied=free_applied,
        billable_units=billable,
        cost=cost,
    )


def _validate_values(values: CreditConfigValues) -> None:
    if values.credit_cost < 0:
        raise InvalidRequest("credit_cost must not be negative")
    if values.unit_multiplier <= 0:
        raise InvalidRequest("unit_multiplier must be positive")
    if values.free_allowance < 0:
        raise InvalidRequest("free_allowance must not be negative")
    if values.free_allowance and values.free_allowance_period not in PERIOD_TYPES:
        raise InvalidRequest(
            "free_allowance_period must be one of day, month, year",
            details={"free_allowance_period": values.free_allowance_period},
        )
    if values.overage_period is not None and values.overage_period not in PERIOD_TYPES:
        raise InvalidRequest("overage_period must be one of day, month, year")
    if values.overage_limit is not None and values.overage_limit < 0:
        raise InvalidRequest("overage_limit must not be negative")
    previous = None
    for tier in values.volume_tiers or []:
        try:
            threshold = Decimal(str(tier["threshold"]))
            cost = Decimal(str(tier["cost"]))
        except (KeyError, TypeError, ArithmeticError) as exc:
            raise InvalidRequest("volume_tiers entries need numeric threshold and cost") from exc
        if threshold < 0 or cost < 0 or (previous is not None and threshold <= previous):
            raise InvalidRequest("volume_tiers must have ascending, non-negative thresholds")
        previous = threshold


def _apply_values(row: CreditConfiguration, values: CreditConfigValues, *, default_priority: int) -> None:
    row.credit_cost = values.credit_cost
    row.unit = values.unit
    row.unit_multiplier = values.unit_multiplier
    row.free_allowance = values.free_allowance
    row.free_allowance_period = values.free_allowance_period
    row.volume_tiers = [
        {"threshold": str(tier["threshold"]), "cost": str(tier["cost"])}
        for tier in values.volume_tiers or []
    ]
    row.allow_overage = values.allow_overage
    row.overage_limit = values.overage_limit
    row.overage_period = values.overage_period
    row.overage_cost = values.overage_cost
    row.is_inherited = values.is_inherited
    row.priority = values.priority if values.priority is not None else default_priority
    row.application_code = values.application_code
    row.expires_at = values.expires_at
    row.is_active = True


async def _upsert(
    session: AsyncSession,
    *,
    scope: str,
    tenant_id: str | None,
    entity_type: str | None,
    entity_id: str | None,
    operation_code: str,
    values: CreditConfigValues,
    default_priority: int,
    actor: AuditActor | None,
) -> CreditConfiguration:
    _validate_values(values)
    if not operation_code:
        raise InvalidRequest("operation_code is required")
    async with transaction(session):
        stmt = select(CreditConfiguration).where(
            CreditConfiguration.scope == scope,
            CreditConfiguration.operation_code == operation_code,
        )
        if tenant_id is None:
            stmt = stmt.where(CreditConfiguration.tenant_id.is_(None))
        else:
            stmt = stmt.where(tenant_predicate(CreditConfiguration, tenant_id))
        if entity_id is not None:
            stmt = stmt.where(CreditConfiguration.entity_id == entity_id)
        if values.application_code is None:
            stmt = stmt.where(CreditConfiguration.application_code.is_(None))
        else:
            stmt = stmt.where(CreditConfiguration.application_code == values.application_code)
        row = (await session.execute(stmt.with_for_update().limit(1))).scalar_one_or_none()
        created = row is None
        if row is None:
            row = CreditConfiguration(
                id=uuid4().hex,
                scope=scope,
                tenant_id=tenant_id,
                entity_type=entity_type,
                entity_id=entity_id,
                operation_code=operation_code,
                is_customized=scope != SCOPE_GLOBAL,
                created_by=actor.actor_id if actor else None,
            )
            session.add(row)
        _apply_values(row, values, default_priority=default_priority)
        row.updated_by = actor.actor_id if actor else None
        row.updated_at = utc_now()
        stage_event(
            session,
            tenant_id=tenant_id,
            actor=actor,
            event_type="credit_config.created" if created else "credit_config.updated",
            outcome="success",
            resource_type="credit_configuration",
            resource_id=row.id,
            metadata={"scope": scope, "operation_code": operation_code, "entity_id": entity_id},
        )
    return row


async def upsert_global_configuration(
    session: AsyncSession,
    *,
    operation_code: str,
    values: CreditConfigValues,
    actor: AuditActor | None = None,
) -> CreditConfiguration:
    return await _upsert(
        session,
        scope=SCOPE_GLOBAL,
        tenant_id=None,
        entity_type=None,
        entity_id=None,
        operation_code=operation_code,
        values=values,
        default_priority=0,
        actor=actor,
    )


async def upsert_tenant_configuration(
    session: AsyncSession,
    *,
    tenant_id: str,
    operation_code: str,
    values: CreditConfigValues,
    actor: AuditActor | None = None,
) -> CreditConfiguration:
    require_tenant_id(tenant_id)
    return await _upsert(
        session,
        scope=SCOPE_TENANT,
        tenant_id=tenant_id,
        entity_type="tenant",
        entity_id=tenant_id,
        operation_code=operation_code,
        values=values,
        default_priority=TENANT_OVERRIDE_PRIORITY,
        actor=actor,
    )


async def upsert_entity_configuration(
    session: AsyncSession,
    *,
    tenant_id: str,
    scope: str,
    entity_id: str,
    operation_code: str,
    values: CreditConfigValues,
    actor: AuditActor | None = None,
) -> CreditConfiguration:
    if scope not in (SCOPE_ORGANIZATION, SCOPE_LOCATION):
        raise InvalidRequest("Entity overrides must target an organization or location")
    require_tenant_id(tenant_id)
    return await _upsert(
        session,
        scope=scope,
        tenant_id=tenant_id,
        entity_type=scope,
        entity_id=entity_id,
        operation_code=operation_code,
        values=values,
        default_priority=TENANT_OVERRIDE_PRIORITY,
        actor=actor,
    )


async def reset_tenant_configuration(
    session: AsyncSession,
    *,
    tenant_id: str,
    operation_code: str,
    application_code: str | None = None,
    actor: AuditActor | None = None,
) -> int:
    """Drop the tenant override so resolution falls back to the global default."""
    async with transaction(session):
        stmt = delete(CreditConfiguration).where(
            tenant_predicate(CreditConfiguration, tenant_id),
            CreditConfiguration.scope == SCOPE_TENANT,
            CreditConfiguration.operation_code == operation_code,
        )
        if application_code is None:
            stmt = stmt.where(CreditConfiguration.application_code.is_(None))
        else:
            stmt = stmt.where(CreditConfiguration.application_code == application_code)
        result = await session.execute(stmt)
        removed = int(result.rowcount or 0)
        stage_event(
            session,
            tenant_id=tenant_id,
            actor=actor,
            event_type="credit_config.reset",
            outcome="success",
            resource_type="credit_configuration",
            resource_id=operation_code,
            metadata={"removed": removed},
        )
    return removed


async def get_comprehensive_configurations(
    session: AsyncSession,
    *,
    tenant_id: str,
    application_code: str | None = None,
) -> ComprehensiveConfigurations:
    app_filter = application_clause(CreditConfiguration.application_code, application_code)
    tenant_rows = await session.execute(
        select(CreditConfiguration)
        .where(tenant_predicate(CreditConfiguration, tenant_id), app_filter)
        .order_by(
            CreditConfiguration.operation_code,
            CreditConfiguration.scope,
            CreditConfiguration.priority.desc(),
        )
    )
    global_rows = await session.execute(
        select(CreditConfiguration)
        .where(CreditConfiguration.tenant_id.is_(None), app_filter)
        .order_by(CreditConfiguration.operation_code, CreditConfiguration.priority.desc())
    )
    return ComprehensiveConfigurations(
        tenant_rows=list(tenant_rows.scalars().all()),
        global_rows=list(global_rows.scalars().all()),
    )
