"""Tests for the /sync trigger endpoints.

WHAT: Internal-key guard, request parsing and error mapping of the router.
WHY: Routers only translate HTTP to service calls; the services have their own tests.
"""

from datetime import date
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient

from adsync.database import get_db
from adsync.main import create_app
from adsync.routers import sync as sync_router
from adsync.services.dispatch_service import DispatchResult, TenantDispatchResult

HEADERS = {"X-Internal-Key": "test-internal-key"}


@pytest.fixture
def client(test_db_session):
    app = create_app()

    def override_get_db():
        yield test_db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as c:
        yield c


class TestAuth:

    def test_health_is_public(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

    def test_missing_key(self, client):
        assert client.post("/sync/dispatch", json={}).status_code == 401

    def test_wrong_key(self, client):
        response = client.get("/sync/cron-settings", headers={"X-Internal-Key": "nope"})
        assert response.status_code == 401
        assert response.json()["detail"] == "Invalid internal key"


class TestDispatchEndpoint:

    def test_forwards_request(self, client, monkeypatch):
        seen = {}
        user_id = uuid4()

        def fake_dispatch(**kwargs):
            seen.update(kwargs)
            tenant = TenantDispatchResult(
                user_id=user_id, types=["full"], date_start=date(2025, 1, 14), date_end=date(2025, 1, 15),
                accounts=2, items=40,
            )
            return DispatchResult(hour=8, date_start=date(2025, 1, 14), date_end=date(2025, 1, 15),
                                  dispatched=1, tenants=[tenant])

        monkeypatch.setattr(sync_router, "dispatch", fake_dispatch)

        response = client.post(
            "/sync/dispatch",
            headers=HEADERS,
            json={"cron_type": "full", "user_id": str(user_id), "force": True},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["dispatched"] == 1
        assert body["tenants"][0]["items"] == 40
        assert seen["force"] is True
        assert seen["user_id"] == user_id
        assert seen["date_start"] is None


class TestAccountEndpoints:

    def test_entities_unknown_account(self, client):
        response = client.post(f"/sync/accounts/{uuid4()}/entities", headers=HEADERS)
        assert response.status_code == 404

    def test_insights_rejects_inverted_range(self, client, tenant):
        response = client.post(
            f"/sync/accounts/{tenant['account'].id}/insights",
            headers=HEADERS,
            json={"date_start": "2025-01-15", "date_end": "2025-01-10"},
        )
        assert response.status_code == 400

    def test_insights_rejects_unknown_breakdown(self, client, tenant):
        response = client.post(
            f"/sync/accounts/{tenant['account'].id}/insights",
            headers=HEADERS,
            json={"breakdown": "placement"},
        )
        assert response.status_code == 422


class TestCronSettings:

    def test_put_then_list(self, client, tenant):
        user_id = str(tenant["user"].id)

        put = client.put(
            "/sync/cron-settings",
            headers=HEADERS,
            json={"user_id": user_id, "cron_type": "insight", "allowed_hours": [20, 8]},
        )
        assert put.status_code == 200
        assert put.json()["allowed_hours"] == [8, 20]

        listed = client.get("/sync/cron-settings", headers=HEADERS, params={"user_id": user_id})
        assert [s["cron_type"] for s in listed.json()] == ["insight"]

    def test_put_validation(self, client, tenant):
        user_id = str(tenant["user"].id)

        bad_hour = client.put(
            "/sync/cron-settings",
            headers=HEADERS,
            json={"user_id": user_id, "cron_type": "insight", "allowed_hours": [25]},
        )
        bad_type = client.put(
            "/sync/cron-settings",
            headers=HEADERS,
            json={"user_id": user_id, "cron_type": "weekly", "allowed_hours": [1]},
        )

        assert bad_hour.status_code == 422
        assert bad_type.status_code == 422
