"""Integration tests for the HTTP authentication surface.

Covers:
- Registration and password login
- Session cookies, logout and logout-all
- Session listing and revocation
- API key issuance and bearer authentication
- Role checks on admin routes
- Password changes
- Login rate limiting
"""

import pytest
from fastapi.testclient import TestClient

from gatehouse import app as app_module
from gatehouse.service.runtime import get_runtime

PASSWORD = "correct-horse-battery-9"


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


@pytest.fixture
def registered(client):
    """Register a user; the client keeps the session cookie."""
    response = client.post(
        "/v1/auth/register",
        json={"email": "alice@example.com", "password": PASSWORD, "name": "Alice"},
    )
    assert response.status_code == 201
    return response.json()["data"]["user"]


def _issue_api_key(client, name="ci"):
    response = client.post("/v1/api-keys", json={"name": name})
    assert response.status_code == 201
    return response.json()["data"]


class TestRegisterAndLogin:
    def test_register_sets_cookie(self, client, registered):
        assert registered["email"] == "alice@example.com"
        assert registered["roles"] == ["GUEST"]
        assert client.cookies.get("template_session")

    def test_duplicate_email_conflicts(self, client, registered):
        response = client.post(
            "/v1/auth/register",
            json={"email": "alice@example.com", "password": PASSWORD},
        )
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    def test_short_password_rejected(self, client):
        response = client.post(
            "/v1/auth/register", json={"email": "bob@example.com", "password": "short"}
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    def test_login_with_password(self, client, registered):
        client.cookies.clear()
        response = client.post(
            "/v1/auth/login", json={"email": "alice@example.com", "password": PASSWORD}
        )
        assert response.status_code == 200
        assert response.json()["data"]["user"]["id"] == registered["id"]
        assert client.cookies.get("template_session")
        assert response.headers["X-RateLimit-Limit"] == "5"

    def test_wrong_password(self, client, registered):
        response = client.post(
            "/v1/auth/login", json={"email": "alice@example.com", "password": "wrong-password"}
        )
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_credentials"

    def test_disabled_account_cannot_log_in(self, client, registered):
        get_runtime().store.set_user_active(registered["id"], False)
        response = client.post(
            "/v1/auth/login", json={"email": "alice@example.com", "password": PASSWORD}
        )
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "account_disabled"

    def test_login_rate_limited(self, client, registered):
        for _ in range(5):
            response = client.post(
                "/v1/auth/login", json={"email": "alice@example.com", "password": "nope-nope"}
            )
            assert response.status_code == 401
        response = client.post(
            "/v1/auth/login", json={"email": "alice@example.com", "password": PASSWORD}
        )
        assert response.status_code == 429
        assert response.json()["error"]["code"] == "rate_limited"

    def test_providers(self, client):
        response = client.get("/v1/auth/providers")
        assert response.json()["data"] == {"providers": ["email_password"]}


class TestSessions:
    def test_me_without_credentials(self, client):
        response = client.get("/v1/me")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "authentication_required"

    def test_current_session(self, client, registered):
        response = client.get("/v1/auth/session")
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["user"]["id"] == registered["id"]
        assert data["user"]["auth_method"] == "session"

    def test_unknown_cookie_is_cleared(self, client):
        response = client.get("/v1/me", headers={"Cookie": "template_session=" + "f" * 64})
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_token"
        assert "template_session=" in response.headers.get("set-cookie", "")

    def test_logout(self, client, registered):
        response = client.post("/v1/auth/logout")
        assert response.status_code == 200
        assert response.json()["data"] == {"logged_out": True}
        assert client.get("/v1/auth/session").status_code == 401

    def test_list_and_revoke_other_session(self, client, registered):
        other = TestClient(app_module.app)
        login = other.post(
            "/v1/auth/login", json={"email": "alice@example.com", "password": PASSWORD}
        )
        assert login.status_code == 200

        items = client.get("/v1/auth/sessions").json()["data"]["items"]
        assert len(items) == 2
        assert sum(item["is_current"] for item in items) == 1
        other_id = next(item["id"] for item in items if not item["is_current"])

        response = client.delete(f"/v1/auth/sessions/{other_id}")
        assert response.status_code == 200
        assert other.get("/v1/me").status_code == 401
        assert client.get("/v1/me").status_code == 200

    def test_cannot_revoke_current_session(self, client, registered):
        current = client.cookies.get("template_session")
        response = client.delete(f"/v1/auth/sessions/{current}")
        assert response.status_code == 400

    def test_cannot_revoke_foreign_session(self, client, registered):
        response = client.delete("/v1/auth/sessions/" + "a" * 64)
        assert response.status_code == 404

    def test_logout_all(self, client, registered):
        other = TestClient(app_module.app)
        other.post("/v1/auth/login", json={"email": "alice@example.com", "password": PASSWORD})

        response = client.post("/v1/auth/logout-all")

        assert response.status_code == 200
        assert response.json()["data"] == {"sessions_removed": 2}
        assert other.get("/v1/me").status_code == 401


class TestChangePassword:
    def _change(self, client, current, new):
        return client.post(
            "/v1/auth/change-password",
            json={"current_password": current, "new_password": new},
        )

    def test_change_password(self, client, registered):
        response = self._change(client, PASSWORD, "brand-new-pass-7")
        assert response.status_code == 200
        assert response.json()["data"] == {"password_changed": True}
        assert client.get("/v1/me").status_code == 200

        fresh = TestClient(app_module.app)
        old = fresh.post(
            "/v1/auth/login", json={"email": "alice@example.com", "password": PASSWORD}
        )
        assert old.status_code == 401
        new = fresh.post(
            "/v1/auth/login",
            json={"email": "alice@example.com", "password": "brand-new-pass-7"},
        )
        assert new.status_code == 200

    def test_wrong_current_password(self, client, registered):
        response = self._change(client, "not-my-password-1", "brand-new-pass-7")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_credentials"

    def test_same_password(self, client, registered):
        response = self._change(client, PASSWORD, PASSWORD)
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    def test_weak_new_password(self, client, registered):
        response = self._change(client, PASSWORD, "no-digits-here")
        assert response.status_code == 400

    def test_requires_session(self, client):
        response = self._change(client, PASSWORD, "brand-new-pass-7")
        assert response.status_code == 401


class TestApiKeys:
    def test_issue_and_use_key(self, client, registered):
        created = _issue_api_key(client)
        assert created["key"].startswith("alice_")
        assert len(created["key_fingerprint"]) == 6

        client.cookies.clear()
        response = client.get("/v1/me", headers={"Authorization": f"Bearer {created['key']}"})

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["auth_method"] == "api_key"
        assert data["api_key_id"] == created["id"]
        assert response.headers["X-RateLimit-Limit"] == "1000"

    def test_list_never_exposes_key(self, client, registered):
        created = _issue_api_key(client)
        items = client.get("/v1/api-keys").json()["data"]["items"]
        assert [item["id"] for item in items] == [created["id"]]
        assert "key" not in items[0]
        assert "key_hash" not in items[0]

    def test_bad_key_does_not_fall_back_to_cookie(self, client, registered):
        response = client.get("/v1/me", headers={"Authorization": "Bearer " + "0" * 128})
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_token"

    def test_key_management_requires_session(self, client, registered):
        created = _issue_api_key(client)
        client.cookies.clear()
        response = client.get(
            "/v1/api-keys", headers={"Authorization": f"Bearer {created['key']}"}
        )
        assert response.status_code == 401

    def test_delete_key(self, client, registered):
        created = _issue_api_key(client)
        assert client.delete(f"/v1/api-keys/{created['id']}").status_code == 200
        assert client.delete(f"/v1/api-keys/{created['id']}").status_code == 404

        client.cookies.clear()
        response = client.get("/v1/me", headers={"Authorization": f"Bearer {created['key']}"})
        assert response.status_code == 401

    def test_past_expiry_rejected(self, client, registered):
        response = client.post(
            "/v1/api-keys", json={"name": "old", "expires_at": "2000-01-01T00:00:00+00:00"}
        )
        assert response.status_code == 400


class TestAdmin:
    def test_guest_is_forbidden(self, client, registered):
        response = client.get("/v1/admin/ping")
        assert response.status_code == 403
        body = response.json()
        assert body["error"]["code"] == "insufficient_permissions"
        assert body["error"]["details"] == {"required_roles": ["ADMIN"]}

    def test_admin_allowed(self, client, registered):
        get_runtime().store.update_user_roles(registered["id"], ["ADMIN"])
        response = client.get("/v1/admin/ping")
        assert response.status_code == 200
        assert response.json()["data"] == {"pong": True, "user_id": registered["id"]}


class TestHealth:
    def test_healthz_with_memory_backends(self, client):
        body = client.get("/healthz").json()
        assert body["status"] == "healthy"
        assert body["checks"]["database"]["type"] == "memory"
        assert body["checks"]["redis"]["type"] == "memory"

    def test_request_id_echoed(self, client):
        response = client.get("/healthz", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"
