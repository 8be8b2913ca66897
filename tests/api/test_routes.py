"""HTTP-level tests for the verify, multi, device, session and health routes."""
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from order_gate.core.config import settings
from order_gate.db.session import get_db
from order_gate.main import app
from order_gate.services.devices.identity import is_valid_device_id
from order_gate.services.orders.service import OrderService
from order_gate.services.sessions.store import SessionStore, get_session_store
from order_gate.utils.time import utcnow
from tests.helpers import DEVICE_A, DEVICE_B, DEVICE_C, DEVICE_D, MULTI_ORDER, SINGLE_ORDER

INTERNAL = {"X-Internal-API-Key": settings.internal_api_key}
ADMIN = {"X-Admin-Key": settings.admin_api_key or ""}


@pytest.fixture
def api_store():
    return SessionStore(max_age_seconds=7200)


@pytest.fixture
def client(session_factory, api_store):
    def _get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_session_store] = lambda: api_store
    yield TestClient(app)
    app.dependency_overrides.clear()


def _verify(client, order_number, device_id=DEVICE_A, session_id=None):
    headers = {"X-Session-ID": session_id} if session_id else {}
    return client.post(
        "/api/verify",
        json={"orderNumber": order_number, "deviceId": device_id},
        headers=headers,
    )


class TestVerifyRoute:
    def test_grant_single(self, client):
        resp = _verify(client, SINGLE_ORDER)
        assert resp.status_code == 200
        body = resp.json()
        assert body["success"] is True
        assert body["granted"] is True
        assert body["orderType"] == "single"
        assert len(body["sessionId"]) == 64
        assert body["accessWindow"]["expiresAt"].endswith("Z")
        assert body["deviceInfo"] == {"isNewDevice": True, "remainingDevices": 2}
        assert "device_id" not in resp.cookies

    def test_invalid_format(self, client):
        body = _verify(client, "X1").json()
        assert body["success"] is False
        assert "reason" not in body
        assert body["message"] == "Verification failed, please try again later or contact support"

    def test_missing_body(self, client):
        body = client.post("/api/verify").json()
        assert body["success"] is False
        assert "reason" not in body

    def test_mints_device_cookie(self, client):
        resp = client.post("/api/verify", json={"orderNumber": SINGLE_ORDER})
        assert resp.json()["granted"] is True
        assert is_valid_device_id(resp.cookies.get(settings.device_cookie_name))

    def test_device_limit(self, client):
        for device in (DEVICE_A, DEVICE_B, DEVICE_C):
            assert _verify(client, SINGLE_ORDER, device).json()["granted"] is True
        body = _verify(client, SINGLE_ORDER, DEVICE_D).json()
        assert body["success"] is False
        assert body["reason"] == "device_limit_exceeded"
        assert body["deviceLimit"] == {"current": 3, "max": 3}

    def test_multi_quota(self, client):
        client.post("/api/multi/add", json={"orderNumber": MULTI_ORDER, "maxAccess": 2}, headers=INTERNAL)
        assert _verify(client, MULTI_ORDER).json()["remainingAccess"] == 1
        assert _verify(client, MULTI_ORDER).json()["remainingAccess"] == 0
        body = _verify(client, MULTI_ORDER).json()
        assert body["granted"] is False
        assert "reason" not in body

    def test_multi_unlimited(self, client):
        client.post("/api/multi/add", json={"orderNumber": MULTI_ORDER}, headers=INTERNAL)
        body = _verify(client, MULTI_ORDER).json()
        assert body["remainingAccess"] == "unlimited"
        assert body["sessionExpiresAt"].endswith("Z")

    def test_generic_denials_are_indistinguishable(self, client):
        client.post("/api/multi/add", json={"orderNumber": MULTI_ORDER, "maxAccess": 1}, headers=INTERNAL)
        assert _verify(client, MULTI_ORDER).json()["granted"] is True
        exhausted = _verify(client, MULTI_ORDER).json()
        malformed = _verify(client, "X1").json()
        assert exhausted == malformed
        assert exhausted == {
            "success": False,
            "granted": False,
            "message": "Verification failed, please try again later or contact support",
        }

    def test_expired_reason_is_visible(self, client, session_factory):
        db = session_factory()
        try:
            OrderService(db).claim_access_window(SINGLE_ORDER, now=utcnow() - timedelta(hours=25))
        finally:
            db.close()
        body = _verify(client, SINGLE_ORDER).json()
        assert body["granted"] is False
        assert body["reason"] == "expired_24h"


class TestSessionRoutes:
    def test_status_refresh_logout(self, client):
        sid = _verify(client, SINGLE_ORDER).json()["sessionId"]
        headers = {"X-Session-ID": sid}

        status = client.get("/api/verify/status", headers=headers).json()
        assert status["valid"] is True
        assert status["orderNumber"] == SINGLE_ORDER

        info = client.get("/api/verify/session", params={"sessionId": sid}).json()
        assert info["success"] is True
        assert info["session"]["orderNumber"] == SINGLE_ORDER

        refreshed = client.post("/api/verify/refresh", headers=headers).json()
        assert refreshed["success"] is True
        assert refreshed["sessionExpiresAt"] == status["sessionExpiresAt"]

        assert client.post("/api/verify/logout", headers=headers).json()["success"] is True
        assert client.get("/api/verify/status", headers=headers).json()["valid"] is False

    def test_no_session_id(self, client):
        assert client.get("/api/verify/status").json()["valid"] is False
        assert client.post("/api/verify/refresh").json()["success"] is False

    def test_session_short_circuit(self, client):
        client.post("/api/multi/add", json={"orderNumber": MULTI_ORDER, "maxAccess": 1}, headers=INTERNAL)
        sid = _verify(client, MULTI_ORDER).json()["sessionId"]
        again = _verify(client, MULTI_ORDER, session_id=sid).json()
        assert again["granted"] is True
        assert again["sessionId"] == sid

    def test_window_status(self, client):
        _verify(client, SINGLE_ORDER)
        body = client.get(f"/api/verify/window/{SINGLE_ORDER}").json()
        assert body["orderType"] == "single"
        assert body["windowStatus"]["hasWindow"] is True
        assert body["windowStatus"]["expired"] is False

    def test_admin_session_views(self, client):
        _verify(client, SINGLE_ORDER)
        assert client.get("/api/session/stats").status_code == 401
        stats = client.get("/api/session/stats", headers=ADMIN).json()
        assert stats["data"]["total_sessions"] == 1
        active = client.get("/api/session/active", headers=ADMIN).json()
        assert active["data"]["sessions"][0]["sessionId"].endswith("...")
        cleaned = client.post("/api/session/cleanup", headers=ADMIN).json()
        assert cleaned["data"]["cleanedCount"] == 0

    def test_cleanup_requires_admin(self, client):
        assert client.post("/api/verify/cleanup").status_code == 401
        body = client.post("/api/verify/cleanup", headers=ADMIN).json()
        assert body["success"] is True
        assert body["access_windows_removed"] == 0


class TestMultiRoutes:
    def test_requires_internal_key(self, client):
        resp = client.post("/api/multi/add", json={"orderNumber": MULTI_ORDER})
        assert resp.status_code == 403
        resp = client.post(
            "/api/multi/add", json={"orderNumber": MULTI_ORDER}, headers={"X-Internal-API-Key": "wrong"}
        )
        assert resp.status_code == 403

    def test_add_duplicate_and_bad_format(self, client):
        ok = client.post("/api/multi/add", json={"orderNumber": MULTI_ORDER, "maxAccess": 3}, headers=INTERNAL)
        assert ok.json()["success"] is True
        dup = client.post("/api/multi/add", json={"orderNumber": MULTI_ORDER}, headers=INTERNAL)
        assert dup.json()["success"] is False
        bad = client.post("/api/multi/add", json={"orderNumber": "nope"}, headers=INTERNAL)
        assert bad.status_code == 400
        zero = client.post("/api/multi/add", json={"orderNumber": SINGLE_ORDER, "maxAccess": 0}, headers=INTERNAL)
        assert zero.status_code == 422

    def test_batch_info_list_update_delete(self, client):
        resp = client.post(
            "/api/multi/batch-add",
            json={"orders": [{"orderNumber": MULTI_ORDER, "maxAccess": 2}, {"orderNumber": "bad"}]},
            headers=INTERNAL,
        ).json()
        assert resp["inserted"] == 1
        assert resp["failed"] == 1

        _verify(client, MULTI_ORDER)
        info = client.get(f"/api/multi/info/{MULTI_ORDER}", headers=INTERNAL).json()
        assert info["usageCount"] == 1
        assert info["remainingAccess"] == 1
        assert info["usageRecords"][0]["deviceId"] == DEVICE_A

        listing = client.get("/api/multi/list", params={"q": "M2024"}, headers=INTERNAL).json()
        assert listing["total"] == 1
        assert listing["orders"][0]["remainingAccess"] == 1

        updated = client.put(f"/api/multi/{MULTI_ORDER}", json={"maxAccess": 5}, headers=INTERNAL).json()
        assert updated["maxAccess"] == 5

        assert client.delete(f"/api/multi/{MULTI_ORDER}", headers=INTERNAL).status_code == 200
        assert client.delete(f"/api/multi/{MULTI_ORDER}", headers=INTERNAL).status_code == 404
        missing = client.get(f"/api/multi/info/{MULTI_ORDER}", headers=INTERNAL).json()
        assert missing["success"] is False


class TestDeviceRoutes:
    def test_current_mints_cookie(self, client):
        resp = client.get("/api/device/current")
        body = resp.json()
        assert body["isNew"] is True
        assert resp.cookies.get(settings.device_cookie_name) == body["deviceId"]

    def test_current_uses_header(self, client):
        body = client.get("/api/device/current", headers={"X-Device-ID": DEVICE_B}).json()
        assert body == {"success": True, "deviceId": DEVICE_B, "isNew": False}

    def test_bindings_and_history(self, client):
        _verify(client, SINGLE_ORDER, DEVICE_A)
        assert client.get(f"/api/device/bindings/{SINGLE_ORDER}").status_code == 401
        bindings = client.get(f"/api/device/bindings/{SINGLE_ORDER}", headers=ADMIN).json()
        assert bindings["maxDevices"] == 3
        assert [b["deviceId"] for b in bindings["bindings"]] == [DEVICE_A]

        history = client.get(f"/api/device/history/{DEVICE_A}", headers=ADMIN).json()
        assert history["orders"][0]["orderType"] == "single"

        removed = client.delete(f"/api/device/bindings/{SINGLE_ORDER}/{DEVICE_A}", headers=ADMIN)
        assert removed.status_code == 200
        again = client.delete(f"/api/device/bindings/{SINGLE_ORDER}/{DEVICE_A}", headers=ADMIN)
        assert again.status_code == 404

    def test_validate_dry_run(self, client):
        for device in (DEVICE_A, DEVICE_B, DEVICE_C):
            _verify(client, SINGLE_ORDER, device)
        known = client.post("/api/device/validate", json={"orderNumber": SINGLE_ORDER, "deviceId": DEVICE_A}).json()
        assert known["allowed"] is True
        assert known["reason"] == "existing_device"
        blocked = client.post("/api/device/validate", json={"orderNumber": SINGLE_ORDER, "deviceId": DEVICE_D}).json()
        assert blocked["allowed"] is False
        assert blocked["deviceLimit"] == {"current": 3, "max": 3}


class TestHealth:
    def test_health(self, client):
        assert client.get("/health").json() == {"status": "ok"}

    def test_metrics(self, client):
        _verify(client, SINGLE_ORDER)
        resp = client.get("/metrics")
        assert resp.status_code == 200
        assert "verifications_total" in resp.text

    def test_ready_checks_database(self, client):
        resp = client.get("/ready")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ready"}
