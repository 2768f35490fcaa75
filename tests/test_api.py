"""HTTP surface tests through the FastAPI test client."""

import pytest
from fastapi.testclient import TestClient

from conftest import STRONG_PASSWORD
from gatewarden import app as app_module
from gatewarden.service.password_reset import RESET_REQUESTED_MESSAGE
from gatewarden.service.runtime import get_runtime


@pytest.fixture
def client():
    return TestClient(app_module.create_app())


def _create_account(email, role="user"):
    runtime = get_runtime()
    account = runtime.store.create_account(email, role=role)
    runtime.store.save_password(account.id, runtime.hashing.hash(STRONG_PASSWORD))
    return account


def _login(client, email, password=STRONG_PASSWORD):
    return client.post("/v1/auth/login", json={"email": email, "password": password})


def _auth(token):
    return {"Authorization": f"Bearer {token}"}


def _session_token(client, email):
    resp = _login(client, email)
    assert resp.status_code == 200, resp.text
    return resp.json()["data"]["session_token"]


class TestAuthRoutes:
    def test_signup_login_and_list_sessions(self, client):
        signup = client.post(
            "/v1/auth/signup", json={"email": "alice@example.com", "password": STRONG_PASSWORD}
        )
        assert signup.status_code == 201
        assert signup.json()["data"]["email"] == "alice@example.com"

        login = _login(client, "alice@example.com")
        body = login.json()
        assert body["status"] == "ok"
        assert body["data"]["two_factor_required"] is False
        token = body["data"]["session_token"]

        sessions = client.get("/v1/sessions", headers=_auth(token))
        assert sessions.status_code == 200
        data = sessions.json()["data"]
        assert len(data) == 1
        assert data[0]["current"] is True

    def test_weak_signup_password(self, client):
        resp = client.post("/v1/auth/signup", json={"email": "bob@example.com", "password": "weak"})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "validation_error"

    def test_bad_login_uses_error_envelope(self, client):
        _create_account("alice@example.com")

        resp = _login(client, "alice@example.com", "Wr0ng!Passw0rd")

        assert resp.status_code == 401
        body = resp.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "unauthorized"

    def test_malformed_email_is_rejected(self, client):
        resp = _login(client, "not-an-email")
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "validation_error"

    def test_lockout_then_rate_limit(self, client):
        _create_account("alice@example.com")

        statuses = [_login(client, "alice@example.com", "Wr0ng!Passw0rd").status_code for _ in range(5)]
        assert statuses == [401, 401, 401, 401, 423]

        limited = _login(client, "alice@example.com")
        assert limited.status_code == 429
        assert limited.json()["error"]["code"] == "rate_limited"
        assert int(limited.headers["Retry-After"]) > 0

    def test_logout(self, client):
        _create_account("alice@example.com")
        token = _session_token(client, "alice@example.com")

        assert client.post("/v1/auth/logout", headers=_auth(token)).status_code == 200
        assert client.get("/v1/sessions", headers=_auth(token)).status_code == 401

    def test_requests_need_credentials(self, client):
        resp = client.get("/v1/sessions")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthorized"

    def test_password_reset_request_is_uniform(self, client):
        _create_account("alice@example.com")

        known = client.post("/v1/auth/password/reset/request", json={"email": "alice@example.com"})
        unknown = client.post("/v1/auth/password/reset/request", json={"email": "ghost@example.com"})

        assert known.status_code == unknown.status_code == 200
        assert known.json()["data"] == unknown.json()["data"]
        assert known.json()["data"]["message"] == RESET_REQUESTED_MESSAGE


class TestAdminRoutes:
    def test_stats_require_admin(self, client):
        _create_account("alice@example.com")
        token = _session_token(client, "alice@example.com")

        resp = client.get("/v1/admin/stats", headers=_auth(token))

        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "forbidden"

    def test_admin_reads_stats(self, client):
        _create_account("root@example.com", role="admin")
        token = _session_token(client, "root@example.com")

        resp = client.get("/v1/admin/stats", headers=_auth(token))

        assert resp.status_code == 200
        assert "lockouts" in resp.json()["data"]

    def test_admin_lists_events(self, client):
        _create_account("root@example.com", role="admin")
        token = _session_token(client, "root@example.com")

        resp = client.get(
            "/v1/admin/security-events", params={"event_type": "LOGIN_SUCCESS"}, headers=_auth(token)
        )

        assert resp.status_code == 200
        assert [e["event_type"] for e in resp.json()["data"]] == ["LOGIN_SUCCESS"]


class TestApiKeyRoutes:
    def test_api_key_cannot_manage_credentials(self, client):
        _create_account("alice@example.com")
        token = _session_token(client, "alice@example.com")

        created = client.post(
            "/v1/api-keys", json={"name": "ci", "scopes": ["findings:read"]}, headers=_auth(token)
        )
        assert created.status_code == 201
        key = created.json()["data"]["key"]
        assert key.startswith("gwk_")

        listed = client.get("/v1/api-keys", headers={"X-API-Key": key})
        assert listed.status_code == 200
        assert "key" not in listed.json()["data"][0]

        forbidden = client.post(
            "/v1/api-keys", json={"name": "escalate"}, headers={"X-API-Key": key}
        )
        assert forbidden.status_code == 403

    def test_invalid_scope(self, client):
        _create_account("alice@example.com")
        token = _session_token(client, "alice@example.com")

        resp = client.post(
            "/v1/api-keys", json={"name": "ci", "scopes": ["billing:write"]}, headers=_auth(token)
        )

        assert resp.status_code == 400
        assert resp.json()["error"]["details"]["errors"] == ["Invalid scope: billing:write"]


class TestPlumbing:
    def test_healthz(self, client):
        resp = client.get("/healthz")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "ok"
        assert "expired_sessions" in body["sweeps"]

    def test_request_id_is_echoed(self, client):
        resp = client.get("/healthz", headers={"X-Request-ID": "req-123"})
        assert resp.headers["X-Request-ID"] == "req-123"
        assert resp.headers["X-Content-Type-Options"] == "nosniff"
