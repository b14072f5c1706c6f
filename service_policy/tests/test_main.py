"""
API tests for the policy service.
"""

import pytest
from fastapi.testclient import TestClient

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from service_policy.app.main import SERVICE_NAME, SERVICE_PORT, create_app
from shared.config import get_config


ADMIN = {"X-Admin-Id": "admin-7"}


@pytest.fixture
def client():
    """Create test client over in-memory stores."""
    config = get_config(SERVICE_NAME, SERVICE_PORT, version_poll_interval_seconds=0)
    with TestClient(create_app(config)) as test_client:
        yield test_client


class TestServiceRoutes:
    """Test cases for health and metrics."""

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["service"] == "policy"
        assert body["status"] == "ok"
        assert body["dependencies"] == {"rule_store": "ok", "counter_store": "ok"}

    def test_metrics(self, client):
        client.get("/health")

        response = client.get("/metrics")

        assert response.status_code == 200
        assert "http_requests_total" in response.text


class TestRateLimitRoutes:
    """Test cases for rate limit rule endpoints."""

    def test_crud(self, client):
        created = client.post("/rate-limits/rules", json={
            "name": "Bookings",
            "endpoint": "/api/bookings/:id",
            "method": "post",
            "limit": 5,
            "windowMs": 60000,
            "keyGenerator": "apiKey",
        }, headers=ADMIN)
        assert created.status_code == 201
        rule = created.json()
        assert rule["method"] == "POST"
        assert rule["keyGenerator"] == "apiKey"
        assert rule["createdBy"] == "admin-7"

        listed = client.get("/rate-limits/rules").json()
        assert listed["total"] == 1

        updated = client.put(f"/rate-limits/rules/{rule['id']}", json={"limit": 10}, headers=ADMIN)
        assert updated.json()["limit"] == 10
        assert updated.json()["name"] == "Bookings"

        toggled = client.post(f"/rate-limits/rules/{rule['id']}/toggle", headers=ADMIN)
        assert toggled.json()["enabled"] is False

        assert client.delete(f"/rate-limits/rules/{rule['id']}", headers=ADMIN).status_code == 200
        missing = client.get(f"/rate-limits/rules/{rule['id']}")
        assert missing.status_code == 404
        assert missing.json()["code"] == "NOT_FOUND"

    def test_validation_error_shape(self, client):
        response = client.post("/rate-limits/rules", json={
            "name": "Broken",
            "endpoint": "/api/bookings",
            "limit": 0,
            "windowMs": 1000,
        })

        assert response.status_code == 400
        body = response.json()
        assert body["code"] == "VALIDATION_ERROR"
        assert "limit" in [error["field"] for error in body["details"]["errors"]]

    @pytest.mark.parametrize("field,value", [
        ("method", "FETCH"),
        ("endpoint", "api/bookings"),
        ("keyGenerator", "cookie"),
    ])
    def test_rejects_invalid_fields(self, client, field, value):
        payload = {"name": "Bad", "endpoint": "/api/x", "limit": 1, "windowMs": 1000}
        payload[field] = value

        response = client.post("/rate-limits/rules", json=payload)

        assert response.status_code == 400

    def test_update_rejects_null_limit(self, client):
        rule = client.post("/rate-limits/rules", json={
            "name": "Bookings", "endpoint": "/api/*", "limit": 5, "windowMs": 1000
        }).json()

        response = client.put(f"/rate-limits/rules/{rule['id']}", json={"limit": None})

        assert response.status_code == 400

    def test_check_and_violations(self, client):
        client.post("/rate-limits/rules", json={
            "name": "Bookings", "endpoint": "/api/bookings", "limit": 1, "windowMs": 60000
        })

        check = {"endpoint": "/api/bookings", "method": "POST", "ip": "10.0.0.1"}
        first = client.post("/policy/rate-limit/check", json=check).json()
        second = client.post("/policy/rate-limit/check", json=check).json()

        assert first["allowed"] is True
        assert first["remaining"] == 0
        assert second["allowed"] is False
        assert second["matchedRule"]["name"] == "Bookings"
        assert second["retryAfterMs"] > 0

        violations = client.get("/api-usage/violations").json()
        assert violations["total"] == 1
        assert violations["violations"][0]["subjectKey"] == "ip:10.0.0.1"
        assert violations["violations"][0]["attempts"] == 2


class TestAccessControlRoutes:
    """Test cases for access control endpoints."""

    def test_rule_lifecycle_and_check(self, client):
        created = client.post("/access-control/rules", json={
            "name": "Scrapers",
            "type": "blacklist",
            "target": "user_agent",
            "values": ["BadBot/1.0"],
        }, headers=ADMIN)
        assert created.status_code == 201
        rule = created.json()
        assert rule["type"] == "blacklist"
        assert rule["target"] == "userAgent"
        assert rule["endpoints"] == ["*"]

        denied = client.post("/policy/access/check", json={
            "endpoint": "/api/search", "ip": "10.0.0.1", "userAgent": "BadBot/1.0"
        }).json()
        allowed = client.post("/policy/access/check", json={
            "endpoint": "/api/search", "ip": "10.0.0.1", "userAgent": "Mozilla/5.0"
        }).json()

        assert denied["allowed"] is False
        assert denied["matchedRule"] == {"id": rule["id"], "name": "Scrapers"}
        assert "BadBot" not in denied["reason"]
        assert allowed["allowed"] is True

        client.post(f"/access-control/rules/{rule['id']}/toggle", headers=ADMIN)
        after_toggle = client.post("/policy/access/check", json={
            "endpoint": "/api/search", "ip": "10.0.0.1", "userAgent": "BadBot/1.0"
        }).json()
        assert after_toggle["allowed"] is True

    def test_empty_values_rejected(self, client):
        response = client.post("/access-control/rules", json={
            "name": "Empty", "type": "whitelist", "target": "ip", "values": []
        })

        assert response.status_code == 400

    def test_audit_log(self, client):
        rule = client.post("/access-control/rules", json={
            "name": "Office", "type": "whitelist", "target": "ip", "values": ["192.0.2.0/24"],
            "endpoints": ["/api/admin/*"],
        }, headers=ADMIN).json()
        client.delete(f"/access-control/rules/{rule['id']}", headers=ADMIN)

        logs = client.get("/system/audit/logs", params={"adminId": "admin-7", "limit": 1}).json()

        assert logs["total"] == 2
        assert logs["hasMore"] is True
        assert logs["logs"][0]["action"] == "ACCESS_CONTROL_RULE_DELETED"
        assert logs["logs"][0]["entityType"] == "accessControlRule"


class TestPlatformConfigRoutes:
    """Test cases for platform config and region override endpoints."""

    def test_versions_and_rollback(self, client):
        initial = client.get("/platform-config").json()
        assert initial["version"] == 1

        updated = client.put("/platform-config", json={"features": {"instantBooking": True}}, headers=ADMIN).json()
        assert updated["version"] == 2
        assert updated["features"]["instantBooking"] is True
        assert updated["updatedBy"] == "admin-7"

        rolled_back = client.post("/platform-config/rollback/1", headers=ADMIN).json()
        assert rolled_back["version"] == 3
        assert rolled_back["features"]["instantBooking"] is False

        history = client.get("/platform-config/history").json()
        assert [entry["version"] for entry in history["history"]] == [3, 2, 1]

        assert client.post("/platform-config/rollback/99").status_code == 404

    def test_rollback_to_current_version_rejected(self, client):
        client.put("/platform-config", json={"features": {"instantBooking": True}}, headers=ADMIN)

        safety = client.get("/platform-config/rollback/2/safety").json()
        response = client.post("/platform-config/rollback/2", headers=ADMIN)

        assert safety["isSafe"] is False
        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"
        assert client.get("/platform-config").json()["version"] == 2

    def test_compare_versions(self, client):
        client.put("/platform-config", json={"features": {"instantBooking": True}}, headers=ADMIN)

        response = client.get("/platform-config/history/compare", params={"from": 1, "to": 2})

        assert response.status_code == 200
        body = response.json()
        assert body["changed"] == {"instantBooking": {"from": False, "to": True}}
        assert body["totalChanges"] == 1
        assert client.get("/platform-config/history/compare", params={"from": 1, "to": 7}).status_code == 404

    def test_effective_config_reports_resolved_version(self, client):
        client.put("/platform-config", json={"features": {"instantBooking": True}}, headers=ADMIN)

        body = client.get("/policy/effective-config", params={"region": "Bergen", "regionType": "kommune"}).json()

        assert body["configVersion"] == 2
        assert body["features"]["instantBooking"] is True

    def test_empty_update_rejected(self, client):
        assert client.put("/platform-config", json={"features": {}}).status_code == 400

    def test_region_override_resolution(self, client):
        created = client.post("/platform-config/region-overrides", json={
            "region": "oslo",
            "regionType": "fylke",
            "featureOverrides": {"instantBooking": True},
            "priority": 10,
            "reason": "Pilot",
        }, headers=ADMIN)
        assert created.status_code == 201
        assert created.json()["region"] == "Oslo"

        oslo = client.get("/policy/effective-config", params={"region": "Oslo", "regionType": "kommune"}).json()
        bergen = client.get("/policy/effective-config", params={"region": "Bergen", "regionType": "kommune"}).json()

        assert oslo["features"]["instantBooking"] is True
        assert oslo["sources"]["instantBooking"]["sourceRegion"] == "Oslo"
        assert oslo["sources"]["instantBooking"]["regionType"] == "fylke"
        assert oslo["configVersion"] == 1
        assert bergen["features"]["instantBooking"] is False
        assert bergen["sources"]["instantBooking"]["source"] == "global"

        feature = client.get("/policy/features/instantBooking", params={"region": "Oslo", "regionType": "kommune"})
        assert feature.json()["enabled"] is True

    def test_invalid_region(self, client):
        response = client.get("/policy/effective-config", params={"region": "Atlantis", "regionType": "kommune"})

        assert response.status_code == 400
        assert response.json()["code"] == "INVALID_REGION"

    def test_unknown_feature(self, client):
        response = client.get("/policy/features/teleportation", params={"region": "Oslo", "regionType": "fylke"})

        assert response.status_code == 404

    def test_bulk_is_all_or_nothing(self, client):
        response = client.post("/platform-config/region-overrides/bulk", json={"overrides": [
            {"region": "Oslo", "regionType": "fylke", "featureOverrides": {"instantBooking": True}},
            {"region": "Atlantis", "regionType": "fylke", "featureOverrides": {"instantBooking": True}},
        ]})

        assert response.status_code == 400
        assert client.get("/platform-config/region-overrides").json()["total"] == 0

    def test_override_update_delete_and_stats(self, client):
        bulk = client.post("/platform-config/region-overrides/bulk", json={"overrides": [
            {"region": "Oslo", "regionType": "fylke", "featureOverrides": {"instantBooking": True}},
            {"region": "Bergen", "regionType": "kommune", "featureOverrides": {"instantBooking": True}},
        ]}, headers=ADMIN).json()
        assert bulk["total"] == 2
        override_id = bulk["overrides"][0]["id"]

        updated = client.put(f"/platform-config/region-overrides/{override_id}", json={"priority": 50}, headers=ADMIN)
        assert updated.json()["priority"] == 50

        stats = client.get("/platform-config/region-overrides/stats").json()
        assert stats["totalOverrides"] == 2
        assert stats["mostOverriddenFeatures"] == [{"feature": "instantBooking", "count": 2}]

        listed = client.get("/platform-config/region-overrides", params={"regionType": "kommune"}).json()
        assert listed["total"] == 1

        assert client.delete(f"/platform-config/region-overrides/{override_id}", headers=ADMIN).status_code == 200
        assert client.get(f"/platform-config/region-overrides/{override_id}").status_code == 404

    def test_priority_out_of_range(self, client):
        response = client.post("/platform-config/region-overrides", json={
            "region": "Oslo", "regionType": "fylke", "featureOverrides": {"a": 1}, "priority": 101
        })

        assert response.status_code == 400

    def test_policy_stats(self, client):
        client.put("/platform-config", json={"features": {"instantBooking": True}}, headers=ADMIN)

        stats = client.get("/policy/stats").json()

        assert stats["auditEntries"] == 1
        assert stats["counters"]["backend"] == "memory"
