from __future__ import annotations

from decimal import Decimal

import pytest
from httpx import ASGITransport, AsyncClient

from tenantgrid.apps.api.main import create_app
from tenantgrid.tests.utils.auth import create_test_api_key, create_test_tenant, unique_tenant_id
from tenantgrid.tests.utils.seed import create_org, seed_configuration, unique_operation_code


@pytest.mark.asyncio
async def test_tenant_override_wins_until_reset() -> None:
    tenant_id = unique_tenant_id("t-credits")
    await create_test_tenant(tenant_id)
    operation_code = unique_operation_code("report")
    await seed_configuration(operation_code=operation_code, credit_cost="100")
    _raw_key, headers, _user_id, _key_id = await create_test_api_key(tenant_id=tenant_id, role="admin")

    app = create_app()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.get(f"/v1/credit-config/effective/{operation_code}", headers=headers)
        assert response.status_code == 200
        effective = response.json()["data"]
        assert effective["resolved_scope"] == "global"
        assert effective["is_customized"] is False
        assert Decimal(effective["credit_cost"]) == Decimal("100")

        response = await client.put(
            f"/v1/credit-config/tenant/{operation_code}",
            headers=headers,
            json={"credit_cost": "50"},
        )
        assert response.status_code == 200
        assert response.json()["data"]["scope"] == "tenant"

        response = await client.get(f"/v1/credit-config/effective/{operation_code}", headers=headers)
        effective = response.json()["data"]
        assert effective["resolved_scope"] == "tenant"
        assert effective["is_customized"] is True
        assert Decimal(effective["credit_cost"]) == Decimal("50")

        response = await client.delete(f"/v1/credit-config/tenant/{operation_code}", headers=headers)
        assert response.status_code == 200
        assert response.json()["data"]["removed"] == 1

        response = await client.get(f"/v1/credit-config/effective/{operation_code}", headers=headers)
        assert Decimal(response.json()["data"]["credit_cost"]) == Decimal("100")


@pytest.mark.asyncio
async def test_unconfigured_operation_reports_422() -> None:
    tenant_id = unique_tenant_id("t-credits")
    await create_test_tenant(tenant_id)
    _raw_key, headers, _user_id, _key_id = await create_test_api_key(tenant_id=tenant_id, role="reader")

    app = create_app()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.get(
            f"/v1/credit-config/effective/{unique_operation_code('missing')}", headers=headers
        )
    assert response.status_code == 422
    assert response.json()["error"]["code"] == "OPERATION_COST_NOT_CONFIGURED"


@pytest.mark.asyncio
async def test_grant_consume_and_insufficient_balance() -> None:
    tenant_id = unique_tenant_id("t-credits")
    await create_test_tenant(tenant_id)
    operation_code = unique_operation_code("export")
    await seed_configuration(operation_code=operation_code, credit_cost="4")
    _raw_key, headers, _user_id, _key_id = await create_test_api_key(tenant_id=tenant_id, role="admin")

    app = create_app()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.post(
            "/v1/credits/grant",
            headers=headers,
            json={"entity_type": "tenant", "entity_id": tenant_id, "amount": "10"},
        )
        assert response.status_code == 201
        granted = response.json()["data"]
        assert granted["transaction_type"] == "allocation"
        assert Decimal(granted["new_balance"]) == Decimal("10")

        response = await client.post(
            "/v1/credits/consume",
            headers=headers,
            json={"operation_code": operation_code, "quantity": "2"},
        )
        assert response.status_code == 200
        consumed = response.json()["data"]
        assert consumed["transaction_type"] == "consumption"
        assert Decimal(consumed["amount"]) == Decimal("-8")
        assert Decimal(consumed["new_balance"]) == Decimal("2")

        response = await client.post(
            "/v1/credits/consume",
            headers=headers,
            json={"operation_code": operation_code},
        )
        assert response.status_code == 402
        error = response.json()["error"]
        assert error["code"] == "INSUFFICIENT_CREDITS"
        assert Decimal(error["details"]["shortfall"]) == Decimal("2")

        response = await client.get(f"/v1/credits/balance/tenant/{tenant_id}", headers=headers)
        assert response.status_code == 200
        balance = response.json()["data"]
        assert Decimal(balance["available_credits"]) == Decimal("2")
        assert Decimal(balance["total_consumed"]) == Decimal("8")

        response = await client.get(f"/v1/credits/transactions/tenant/{tenant_id}", headers=headers)
        assert [row["transaction_type"] for row in response.json()["data"]] == ["consumption", "allocation"]


@pytest.mark.asyncio
async def test_consume_requires_editor() -> None:
    tenant_id = unique_tenant_id("t-credits")
    await create_test_tenant(tenant_id)
    _raw_key, headers, _user_id, _key_id = await create_test_api_key(tenant_id=tenant_id, role="reader")

    app = create_app()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.post("/v1/credits/consume", headers=headers, json={"operation_code": "anything"})
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_credit_writes_refuse_entities_of_another_tenant() -> None:
    tenant_id = unique_tenant_id("t-credits")
    other_tenant = unique_tenant_id("t-credits-other")
    await create_test_tenant(tenant_id)
    await create_test_tenant(other_tenant)
    foreign_org = await create_org(other_tenant, "Foreign")
    _raw_key, headers, _user_id, _key_id = await create_test_api_key(tenant_id=tenant_id, role="admin")

    app = create_app()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.post(
            "/v1/credits/grant",
            headers=headers,
            json={"entity_type": "tenant", "entity_id": tenant_id, "amount": "100"},
        )
        assert response.status_code == 201

        response = await client.post(
            "/v1/credits/allocate",
            headers=headers,
            json={
                "source_entity_type": "tenant",
                "source_entity_id": tenant_id,
                "target_entity_type": "organization",
                "target_entity_id": foreign_org,
                "amount": "40",
            },
        )
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "TENANT_MISMATCH"

        response = await client.post(
            "/v1/credits/grant",
            headers=headers,
            json={"entity_type": "organization", "entity_id": foreign_org, "amount": "5"},
        )
        assert response.status_code == 403

        response = await client.post(
            "/v1/credits/grant",
            headers=headers,
            json={"entity_type": "organization", "entity_id": "no-such-org", "amount": "5"},
        )
        assert response.status_code == 404

        response = await client.get(f"/v1/credits/balance/tenant/{tenant_id}", headers=headers)
        assert Decimal(response.json()["data"]["available_credits"]) == Decimal("100")
        response = await client.get(f"/v1/credits/transactions/tenant/{tenant_id}", headers=headers)
        assert [row["transaction_type"] for row in response.json()["data"]] == ["allocation"]


@pytest.mark.asyncio
async def test_application_allocation_respects_bound_application() -> None:
    tenant_id = unique_tenant_id("t-credits")
    await create_test_tenant(tenant_id)
    _raw_key, headers, _user_id, _key_id = await create_test_api_key(tenant_id=tenant_id, role="admin")
    crm_headers = {**headers, "X-Application-Code": "crm"}

    app = create_app()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.post(
            "/v1/credits/grant",
            headers=headers,
            json={"entity_type": "tenant", "entity_id": tenant_id, "amount": "50"},
        )
        assert response.status_code == 201

        payload = {"source_entity_type": "tenant", "source_entity_id": tenant_id, "amount": "10"}
        response = await client.post(
            "/v1/credits/allocate/application",
            headers=crm_headers,
            json={**payload, "target_application": "hr"},
        )
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "TENANT_MISMATCH"

        response = await client.post(
            "/v1/credits/allocate/application",
            headers=crm_headers,
            json={**payload, "target_application": "crm"},
        )
        assert response.status_code == 200
        assert response.json()["data"]["target"]["application_code"] == "crm"


@pytest.mark.asyncio
async def test_effective_cost_hides_organizations_outside_membership() -> None:
    tenant_id = unique_tenant_id("t-credits")
    await create_test_tenant(tenant_id)
    hidden_org = await create_org(tenant_id, "Hidden")
    operation_code = unique_operation_code("report")
    await seed_configuration(operation_code=operation_code, credit_cost="9")
    await seed_configuration(
        operation_code=operation_code,
        credit_cost="3",
        tenant_id=tenant_id,
        scope="organization",
        entity_id=hidden_org,
    )
    _raw_key, reader_headers, _user_id, _key_id = await create_test_api_key(tenant_id=tenant_id, role="reader")
    _raw_key, admin_headers, _user_id, _key_id = await create_test_api_key(tenant_id=tenant_id, role="admin")

    app = create_app()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        url = f"/v1/credit-config/effective/{operation_code}"
        response = await client.get(url, headers=reader_headers, params={"organization_id": hidden_org})
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "NOT_FOUND"

        response = await client.get(url, headers=admin_headers, params={"organization_id": hidden_org})
        assert response.status_code == 200
        assert Decimal(response.json()["data"]["credit_cost"]) == Decimal("3")
