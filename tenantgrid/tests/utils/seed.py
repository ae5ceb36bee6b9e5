from __future__ import annotations

from decimal import Decimal
from typing import Any
from uuid import uuid4

from tenantgrid.domain.models import CreditConfiguration, OrganizationMembership
from tenantgrid.persistence.db import SessionLocal
from tenantgrid.services.hierarchy import OrganizationAttributes, create_organization


def unique_operation_code(prefix: str = "op") -> str:
    # Global configurations are shared across tenants, so each test needs its own code.
    return f"{prefix}-{uuid4().hex[:12]}"


async def create_org(tenant_id: str, name: str, parent_id: str | None = None) -> str:
    async with SessionLocal() as session:
        organization = await create_organization(
            session,
            tenant_id=tenant_id,
            parent_organization_id=parent_id,
            attrs=OrganizationAttributes(name=name),
        )
        return organization.id


async def seed_configuration(
    *,
    operation_code: str,
    credit_cost: str,
    scope: str = "global",
    tenant_id: str | None = None,
    entity_id: str | None = None,
    **overrides: Any,
) -> str:
    # Insert rows directly so tests can shape priorities and flags the service would default.
    config_id = uuid4().hex
    async with SessionLocal() as session:
        session.add(
            CreditConfiguration(
                id=config_id,
                scope=scope,
                tenant_id=tenant_id,
                entity_type=scope if scope in ("organization", "location") else None,
                entity_id=entity_id,
                operation_code=operation_code,
                credit_cost=Decimal(credit_cost),
                is_customized=scope != "global",
                **overrides,
            )
        )
        await session.commit()
    return config_id


async def add_membership(
    *,
    tenant_id: str,
    user_id: str,
    organization_id: str,
    is_primary: bool = True,
    can_access_sub_entities: bool = False,
) -> None:
    async with SessionLocal() as session:
        session.add(
            OrganizationMembership(
                id=uuid4().hex,
                tenant_id=tenant_id,
                user_id=user_id,
                entity_type="organization",
                entity_id=organization_id,
                is_primary=is_primary,
                can_access_sub_entities=can_access_sub_entities,
            )
        )
        await session.commit()
