from __future__ import annotations

import pytest
from sqlalchemy.dialects import sqlite

from tenantgrid.core.config import get_settings
from tenantgrid.domain.models import Organization
from tenantgrid.persistence.guards import TenantPredicateError, require_tenant_id, tenant_select


def test_missing_tenant_id_is_rejected() -> None:
    with pytest.raises(TenantPredicateError):
        require_tenant_id(None)
    with pytest.raises(TenantPredicateError):
        tenant_select(Organization, "")


def test_tenant_select_filters_on_tenant() -> None:
    stmt = tenant_select(Organization, "t-guard")
    sql = str(stmt.compile(dialect=sqlite.dialect(), compile_kwargs={"literal_binds": True}))
    assert "organizations.tenant_id = 't-guard'" in sql


def test_guard_can_be_disabled(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AUTHZ_REQUIRE_TENANT_PREDICATE", "false")
    get_settings.cache_clear()
    require_tenant_id(None)
