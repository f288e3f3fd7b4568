import sqlite3
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

import backend.config as config
import backend.main as main
import backend.routers.core as core
import backend.security as security
import backend.services.validator as validator
import database.db as db


@pytest.fixture()
def client(tmp_path, monkeypatch):
    test_db = tmp_path / "scanpass_test.db"

    # Point DB to a temp file for isolation.
    monkeypatch.setattr(config, "DB_PATH", test_db)
    monkeypatch.setattr(db, "DB_PATH", test_db)
    monkeypatch.setattr(core, "DB_PATH", test_db)

    db.create_tables()

    with TestClient(main.app) as c:
        yield c


@pytest.fixture()
def admin_headers(client):
    res = client.post(
        "/auth/login",
        json={
            "username": config.ADMIN_USERNAME,
            "password": config.ADMIN_PASSWORD,
        },
    )
    assert res.status_code == 200
    token = res.json()["access_token"]
    return {"Authorization": f"Bearer {token}"}


def _worker_headers(identity_id: str = "worker-1", name: str | None = None) -> dict:
    token, _ = security.issue_session_token(identity_id, role="worker", name=name)
    return {"Authorization": f"Bearer {token}"}


def _fresh_code(client, admin_headers) -> str:
    res = client.post("/tokens", headers=admin_headers)
    assert res.status_code == 200
    return res.json()["token"]


def _scan(client, code: str, device_id: str, headers: dict):
    return client.post(
        "/scan/validate",
        json={"code": code, "device_id": device_id},
        headers=headers,
    )


def test_health(client):
    res = client.get("/health")
    assert res.status_code == 200
    assert res.json() == {"status": "ok"}


def test_scan_config_reports_token_ttl(client):
    res = client.get("/config/scan")
    assert res.status_code == 200
    body = res.json()
    assert body["qr_token_ttl_seconds"] == 15
    assert body["event_kinds"] == ["arrival", "departure"]


def test_debug_dbpath_disabled_by_default(client, admin_headers):
    res = client.get("/debug/dbpath", headers=admin_headers)
    assert res.status_code == 404
    assert res.json()["detail"] == "Not found."


def test_debug_dbpath_requires_admin_when_enabled(client, monkeypatch, admin_headers):
    monkeypatch.setattr(core, "ENABLE_DEBUG_ENDPOINTS", True)

    res = client.get("/debug/dbpath")
    assert res.status_code == 401

    res = client.get("/debug/dbpath", headers=_worker_headers())
    assert res.status_code == 403

    res = client.get("/debug/dbpath", headers=admin_headers)
    assert res.status_code == 200
    assert res.json()["db_path"].endswith("scanpass_test.db")


def test_login_rejects_invalid_credentials(client):
    res = client.post(
        "/auth/login",
        json={"username": config.ADMIN_USERNAME, "password": "wrong-password"},
    )
    assert res.status_code == 401
    assert res.json()["detail"] == "Invalid admin credentials."


def test_login_requires_both_fields(client):
    res = client.post("/auth/login", json={"username": "  ", "password": "x"})
    assert res.status_code == 400
    assert res.json()["detail"] == "Username and password are required."


def test_created_admin_can_log_in(client):
    db.create_admin_user("Supervisor", "s3cret-pass")

    res = client.post("/auth/login", json={"username": "supervisor", "password": "s3cret-pass"})
    assert res.status_code == 200
    body = res.json()
    assert body["role"] == "admin"
    assert body["identity_id"] == "Supervisor"
    assert body["expires_in"] > 0


def test_auth_me_reports_worker_identity(client):
    res = client.get("/auth/me", headers=_worker_headers("worker-7", name="Rana"))
    assert res.status_code == 200
    body = res.json()
    assert body["identity_id"] == "worker-7"
    assert body["role"] == "worker"
    assert body["name"] == "Rana"


def test_issue_token_requires_admin(client, admin_headers):
    res = client.post("/tokens")
    assert res.status_code == 401
    assert res.json()["detail"] == "Missing bearer token."

    res = client.post("/tokens", headers=_worker_headers())
    assert res.status_code == 403

    res = client.post("/tokens", headers=admin_headers)
    assert res.status_code == 200
    body = res.json()
    assert body["expires_in"] == 15
    assert len(body["token"]) >= 32


def test_issue_token_accepts_custom_ttl_within_bounds(client, admin_headers):
    res = client.post("/tokens", json={"ttl_seconds": 60}, headers=admin_headers)
    assert res.status_code == 200
    assert res.json()["expires_in"] == 60

    res = client.post("/tokens", json={"ttl_seconds": 0}, headers=admin_headers)
    assert res.status_code == 400

    res = client.post(
        "/tokens",
        json={"ttl_seconds": config.QR_TOKEN_MAX_TTL_SECONDS + 1},
        headers=admin_headers,
    )
    assert res.status_code == 400


def test_issued_tokens_are_unique(client, admin_headers):
    codes = {_fresh_code(client, admin_headers) for _ in range(20)}
    assert len(codes) == 20


def test_scan_requires_authentication(client, admin_headers):
    code = _fresh_code(client, admin_headers)

    res = client.post("/scan/validate", json={"code": code, "device_id": "D1"})
    assert res.status_code == 401
    assert res.json() == {
        "accepted": False,
        "error_kind": "unauthenticated",
        "message": "Unauthorized. Please sign in again.",
    }

    res = _scan(client, code, "D1", {"Authorization": "Bearer not-a-session"})
    assert res.status_code == 401
    assert res.json()["error_kind"] == "unauthenticated"

    # Rejected before the token step, so the code still works.
    res = _scan(client, code, "D1", _worker_headers())
    assert res.status_code == 200


def test_scan_with_expired_session_is_unauthenticated(client, admin_headers):
    code = _fresh_code(client, admin_headers)
    token, _ = security.issue_session_token("worker-1", ttl_seconds=-10)

    res = _scan(client, code, "D1", {"Authorization": f"Bearer {token}"})
    assert res.status_code == 401
    assert res.json()["error_kind"] == "unauthenticated"


def test_scan_missing_fields_is_invalid_request(client, admin_headers):
    code = _fresh_code(client, admin_headers)
    headers = _worker_headers()

    res = client.post("/scan/validate", json={"code": code}, headers=headers)
    assert res.status_code == 400
    assert res.json()["error_kind"] == "invalid_request"

    res = client.post("/scan/validate", json={"code": "  ", "device_id": "D1"}, headers=headers)
    assert res.status_code == 400
    assert res.json()["error_kind"] == "invalid_request"

    res = _scan(client, code, "D1", headers)
    assert res.status_code == 200


def test_scan_without_body_or_session_is_unauthenticated(client):
    res = client.post("/scan/validate")
    assert res.status_code == 401
    assert res.json() == {
        "accepted": False,
        "error_kind": "unauthenticated",
        "message": "Unauthorized. Please sign in again.",
    }


def test_scan_with_malformed_body_is_invalid_request(client, admin_headers):
    code = _fresh_code(client, admin_headers)
    headers = _worker_headers()

    res = client.post("/scan/validate", json={"code": 123, "device_id": "D1"}, headers=headers)
    assert res.status_code == 400
    assert res.json() == {
        "accepted": False,
        "error_kind": "invalid_request",
        "message": "Missing code or device_id.",
    }

    res = client.post(
        "/scan/validate",
        content="not json",
        headers={**headers, "Content-Type": "application/json"},
    )
    assert res.status_code == 400
    assert res.json()["error_kind"] == "invalid_request"

    res = client.post("/scan/validate", headers=headers)
    assert res.status_code == 400
    assert res.json()["error_kind"] == "invalid_request"

    # Nothing was consumed.
    res = _scan(client, code, "D1", headers)
    assert res.status_code == 200


def test_other_routes_keep_default_validation_errors(client):
    res = client.post("/auth/login", json={"username": "admin"})
    assert res.status_code == 422
    assert "detail" in res.json()


def test_first_scan_records_arrival_and_binds_device(client, admin_headers):
    db.upsert_profile("worker-1", "Amina Yusuf")
    code = _fresh_code(client, admin_headers)

    res = _scan(client, code, "D1", _worker_headers("worker-1"))
    assert res.status_code == 200
    body = res.json()
    assert body["accepted"] is True
    assert body["kind"] == "arrival"
    assert body["sequence"] == 1
    assert body["display_message"] == "Welcome, Amina Yusuf! Arrival recorded."
    assert body["recorded_at"]

    assert db.get_device_binding("worker-1")["device_id"] == "D1"
    assert db.get_events_total(identity_id="worker-1") == 1


def test_second_scan_on_bound_device_records_departure(client, admin_headers):
    headers = _worker_headers("worker-1", name="Amina")
    _scan(client, _fresh_code(client, admin_headers), "D1", headers)

    res = _scan(client, _fresh_code(client, admin_headers), "D1", headers)
    assert res.status_code == 200
    body = res.json()
    assert body["kind"] == "departure"
    assert body["sequence"] == 2
    assert body["display_message"] == "Goodbye, Amina! Departure recorded."


def test_scan_from_other_device_is_rejected_and_burns_code(client, admin_headers):
    headers = _worker_headers("worker-1")
    _scan(client, _fresh_code(client, admin_headers), "D1", headers)

    code = _fresh_code(client, admin_headers)
    res = _scan(client, code, "D2", headers)
    assert res.status_code == 403
    assert res.json() == {
        "accepted": False,
        "error_kind": "device_conflict",
        "message": "Unauthorized device. Your account is bound to a different device.",
    }
    assert db.get_events_total(identity_id="worker-1") == 1
    assert db.get_device_binding("worker-1")["device_id"] == "D1"

    # Token check precedes the device check: the code was consumed.
    res = _scan(client, code, "D1", headers)
    assert res.status_code == 400
    assert res.json()["error_kind"] == "invalid_token"


def test_consumed_code_is_rejected(client, admin_headers):
    code = _fresh_code(client, admin_headers)
    assert _scan(client, code, "D9", _worker_headers("worker-9")).status_code == 200

    res = _scan(client, code, "D9", _worker_headers("worker-9"))
    assert res.status_code == 400
    assert res.json() == {
        "accepted": False,
        "error_kind": "invalid_token",
        "message": "Invalid or expired QR code. Please scan a fresh code.",
    }
    assert db.get_events_total(identity_id="worker-9") == 1


def test_expired_code_is_rejected(client):
    issued = db.issue_token(15, now=datetime.now(timezone.utc) - timedelta(seconds=30))

    res = _scan(client, issued["code"], "D1", _worker_headers())
    assert res.status_code == 400
    assert res.json()["error_kind"] == "invalid_token"
    assert db.get_events_total() == 0
    assert db.get_device_binding("worker-1") is None


def test_unknown_code_is_rejected(client):
    res = _scan(client, "never-issued", "D1", _worker_headers())
    assert res.status_code == 400
    assert res.json()["error_kind"] == "invalid_token"


def test_display_name_falls_back_to_worker(client, admin_headers):
    res = _scan(client, _fresh_code(client, admin_headers), "D1", _worker_headers("worker-2"))
    assert res.status_code == 200
    assert res.json()["display_message"] == "Welcome, Worker! Arrival recorded."


def test_profile_name_wins_over_credential_name(client, admin_headers):
    db.upsert_profile("worker-3", "Kofi Mensah")
    headers = _worker_headers("worker-3", name="kofi@example.com")

    res = _scan(client, _fresh_code(client, admin_headers), "D1", headers)
    assert res.json()["display_message"] == "Welcome, Kofi Mensah! Arrival recorded."


def test_ledger_failure_is_internal_error_and_code_stays_consumed(client, admin_headers, monkeypatch):
    def broken_append(identity_id, now=None):
        raise sqlite3.OperationalError("disk I/O error")

    code = _fresh_code(client, admin_headers)
    headers = _worker_headers("worker-4")

    with monkeypatch.context() as m:
        m.setattr(validator, "toggle_append_event", broken_append)
        res = _scan(client, code, "D1", headers)
    assert res.status_code == 500
    body = res.json()
    assert body["accepted"] is False
    assert body["error_kind"] == "internal_error"
    assert db.get_events_total(identity_id="worker-4") == 0

    res = _scan(client, code, "D1", headers)
    assert res.status_code == 400
    assert res.json()["error_kind"] == "invalid_token"


def test_profile_lookup_failure_does_not_fail_accepted_scan(client, admin_headers, monkeypatch):
    def broken_profile(identity_id):
        raise sqlite3.OperationalError("no such table: profiles")

    monkeypatch.setattr(validator, "get_profile_name", broken_profile)

    res = _scan(client, _fresh_code(client, admin_headers), "D1", _worker_headers("worker-5", name="Lena"))
    assert res.status_code == 200
    assert res.json()["display_message"] == "Welcome, Lena! Arrival recorded."


def test_admin_endpoints_require_admin(client):
    for method, path in [
        ("get", "/admin/events"),
        ("get", "/admin/devices/worker-1"),
        ("delete", "/admin/devices/worker-1"),
        ("post", "/admin/tokens/purge"),
    ]:
        res = getattr(client, method)(path)
        assert res.status_code == 401

        res = getattr(client, method)(path, headers=_worker_headers())
        assert res.status_code == 403


def test_admin_events_lists_newest_first_with_filter(client, admin_headers):
    db.upsert_profile("worker-1", "Amina Yusuf")
    first = _worker_headers("worker-1")
    second = _worker_headers("worker-2")
    _scan(client, _fresh_code(client, admin_headers), "D1", first)
    _scan(client, _fresh_code(client, admin_headers), "D2", second)
    _scan(client, _fresh_code(client, admin_headers), "D1", first)

    res = client.get("/admin/events", headers=admin_headers)
    assert res.status_code == 200
    body = res.json()
    assert body["total"] == 3
    assert [r["kind"] for r in body["rows"]] == ["departure", "arrival", "arrival"]
    assert body["rows"][0]["full_name"] == "Amina Yusuf"

    res = client.get("/admin/events", params={"identity_id": "worker-2"}, headers=admin_headers)
    body = res.json()
    assert body["total"] == 1
    assert body["rows"][0]["identity_id"] == "worker-2"
    assert body["rows"][0]["full_name"] is None


def test_admin_device_reset_allows_rebinding(client, admin_headers):
    headers = _worker_headers("worker-1")
    _scan(client, _fresh_code(client, admin_headers), "D1", headers)

    res = client.get("/admin/devices/worker-1", headers=admin_headers)
    assert res.status_code == 200
    assert res.json()["device_id"] == "D1"

    res = client.delete("/admin/devices/worker-1", headers=admin_headers)
    assert res.status_code == 200
    assert res.json()["ok"] is True

    res = client.delete("/admin/devices/worker-1", headers=admin_headers)
    assert res.status_code == 404

    res = _scan(client, _fresh_code(client, admin_headers), "D2", headers)
    assert res.status_code == 200
    # Alternation survives the rebinding.
    assert res.json()["kind"] == "departure"
    assert db.get_device_binding("worker-1")["device_id"] == "D2"


def test_admin_purge_removes_only_expired_codes(client, admin_headers):
    live = _fresh_code(client, admin_headers)
    past = datetime.now(timezone.utc) - timedelta(minutes=5)
    db.issue_token(15, now=past)
    db.issue_token(15, now=past)

    res = client.post("/admin/tokens/purge", headers=admin_headers)
    assert res.status_code == 200
    assert res.json() == {"ok": True, "purged": 2}

    assert _scan(client, live, "D1", _worker_headers()).status_code == 200
