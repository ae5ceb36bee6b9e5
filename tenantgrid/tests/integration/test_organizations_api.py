from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

from tenantgrid.apps.api.main import create_app
from tenantgrid.tests.utils.auth import create_test_api_key, create_test_tenant, unique_tenant_id


@pytest.mark.asyncio
async def test_protected_endpoint_requires_auth() -> None:
    app = create_app()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.get("/v1/organizations/hierarchy/anything")
    assert response.status_code == 401
    body = response.json()
    assert body["error"]["code"] == "AUTH_UNAUTHORIZED"
    assert body["meta"]["api_version"] == "v1"


@pytest.mark.asyncio
async def test_create_tree_read_hierarchy_and_reject_cycle() -> None:
    tenant_id = unique_tenant_id("t-orgs")
    await create_test_tenant(tenant_id)
    _raw_key, headers, _user_id, _key_id = await create_test_api_key(tenant_id=tenant_id, role="admin")

    app = create_app()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.post("/v1/organizations/parent", headers=headers, json={"name": "Holding"})
        assert response.status_code == 201
        parent = response.json()["data"]
        assert parent["organization_level"] == 0
        assert parent["tenant_id"] == tenant_id

        response = await client.post(
            "/v1/organizations/sub",
            headers=headers,
            json={"name": "Subsidiary", "parent_organization_id": parent["id"]},
        )
        assert response.status_code == 201
        child = response.json()["data"]
        assert child["organization_level"] == 1
        assert child["hierarchy_path"] == parent["id"]

        response = await client.get(f"/v1/organizations/hierarchy/{tenant_id}", headers=headers)
        assert response.status_code == 200
        view = response.json()["data"]
        assert view["total_organizations"] == 2
        assert [node["id"] for node in view["hierarchy"]] == [parent["id"]]
        assert [node["id"] for node in view["hierarchy"][0]["children"]] == [child["id"]]

        response = await client.put(
            f"/v1/organizations/move/{parent['id']}",
            headers=headers,
            json={"new_parent_id": child["id"]},
        )
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "CYCLE_DETECTED"

        response = await client.get("/v1/organizations/hierarchy/some-other-tenant", headers=headers)
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "TENANT_MISMATCH"


@pytest.mark.asyncio
async def test_reader_cannot_create_organizations() -> None:
    tenant_id = unique_tenant_id("t-orgs")
    await create_test_tenant(tenant_id)
    _raw_key, headers, _user_id, _key_id = await create_test_api_key(tenant_id=tenant_id, role="reader")

    app = create_app()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.post("/v1/organizations/parent", headers=headers, json={"name": "Blocked"})
    assert response.status_code == 403
    assert response.json()["error"]["code"] == "AUTH_FORBIDDEN"


@pytest.mark.asyncio
async def test_revoked_key_is_rejected() -> None:
    tenant_id = unique_tenant_id("t-orgs")
    await create_test_tenant(tenant_id)
    _raw_key, headers, _user_id, _key_id = await create_test_api_key(
        tenant_id=tenant_id, role="admin", key_revoked=True
    )

    app = create_app()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.get(f"/v1/organizations/hierarchy/{tenant_id}", headers=headers)
    assert response.status_code == 401
