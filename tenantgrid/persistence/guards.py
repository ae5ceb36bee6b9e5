from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import Select, select

from tenantgrid.core.config import get_settings


@dataclass(frozen=True)
class TenantPredicateError(RuntimeError):
    # Raised when a tenant-owned query is about to run without its tenant filter.
    message: str


def require_tenant_id(tenant_id: str | None) -> None:
    if not get_settings().authz_require_tenant_predicate:
        return
    if not tenant_id:
        raise TenantPredicateError("Tenant predicate required but tenant_id is missing")


def tenant_predicate(model, tenant_id: str) -> object:
    # Every tenant-owned query builds its filter here so the guard cannot be skipped.
    require_tenant_id(tenant_id)
    return model.tenant_id == tenant_id


def tenant_select(model, tenant_id: str) -> Select:
    # Shorthand for the common "rows of this model owned by tenant" query.
    return select(model).where(tenant_predicate(model, tenant_id))
