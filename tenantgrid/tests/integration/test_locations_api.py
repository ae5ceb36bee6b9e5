from __future__ import annotations

from decimal import Decimal

import pytest
from httpx import ASGITransport, AsyncClient

from tenantgrid.apps.api.main import create_app
from tenantgrid.tests.utils.auth import create_test_api_key, create_test_tenant, unique_tenant_id
from tenantgrid.tests.utils.seed import create_org


@pytest.mark.asyncio
async def test_location_lifecycle_and_audit_trail() -> None:
    tenant_id = unique_tenant_id("t-loc-api")
    await create_test_tenant(tenant_id)
    owner = await create_org(tenant_id, "Owner")
    partner = await create_org(tenant_id, "Partner")
    _raw_key, headers, _user_id, _key_id = await create_test_api_key(tenant_id=tenant_id, role="admin")

    app = create_app()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.post(
            "/v1/locations",
            headers=headers,
            json={"name": "Warehouse", "location_type": "warehouse", "organization_id": owner},
        )
        assert response.status_code == 201
        location_id = response.json()["data"]["id"]

        response = await client.post(
            f"/v1/locations/{location_id}/assign/{partner}",
            headers=headers,
            json={"assignment_type": "secondary", "credit_sharing_enabled": True, "credit_sharing_percentage": "60"},
        )
        assert response.status_code == 201

        response = await client.post(
            f"/v1/locations/{location_id}/assign/{owner}",
            headers=headers,
            json={"assignment_type": "secondary", "credit_sharing_enabled": True, "credit_sharing_percentage": "50"},
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "SHARING_PERCENTAGES_INVALID"

        response = await client.get(f"/v1/locations/{location_id}", headers=headers)
        detail = response.json()["data"]
        assert sorted(row["assignment_type"] for row in detail["assignments"]) == ["primary", "secondary"]

        response = await client.put(
            f"/v1/locations/{location_id}/capacity",
            headers=headers,
            json={"max_occupancy": 10, "current_occupancy": 8},
        )
        assert response.status_code == 200

        response = await client.post(
            f"/v1/locations/{location_id}/resources",
            headers=headers,
            json={"name": "Forklift", "resource_type": "equipment", "credit_cost": "3"},
        )
        assert response.status_code == 201
        resource_id = response.json()["data"]["id"]

        response = await client.post(
            f"/v1/locations/{location_id}/usage",
            headers=headers,
            json={"usage_type": "equipment", "resource_id": resource_id, "credit_consumed": "3"},
        )
        assert response.status_code == 201

        response = await client.get(f"/v1/locations/{location_id}/analytics", headers=headers)
        analytics = response.json()["data"]
        assert Decimal(analytics["utilization_rate"]) == Decimal("80")
        assert analytics["utilization_trend"] == "high"
        assert analytics["active_resources"] == 1
        assert analytics["usage_events"] == 1

        response = await client.get("/v1/audit/events", headers=headers, params={"event_type": "location.created"})
        assert response.status_code == 200
        events = response.json()["data"]
        assert [event["resource_id"] for event in events] == [location_id]
        assert events[0]["tenant_id"] == tenant_id
