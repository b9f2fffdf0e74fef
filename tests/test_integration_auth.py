"""Integration tests for the login flows over HTTP.

Covers:
- Local registration and password login
- Remember-me cookie minting and restoration
- Federated login through the OAuth callback
- Admin-only account authorization
"""

import pytest
from fastapi.testclient import TestClient

from foodhistory import app as app_module
from foodhistory.service.runtime import get_runtime, reset_runtime_for_tests

COOKIE = "food-history-remember-me"


@pytest.fixture
def client():
    return TestClient(app_module.app)


@pytest.fixture
def oauth_configured(monkeypatch):
    monkeypatch.setenv("OAUTH_GOOGLE_CLIENT_ID", "client-id")
    monkeypatch.setenv("OAUTH_GOOGLE_CLIENT_SECRET", "client-secret")
    monkeypatch.setenv(
        "OAUTH_REDIRECT_URI", "http://localhost:8000/v1/auth/oauth/google/callback"
    )
    return reset_runtime_for_tests()


def _register(client, username="alice", password="passw0rd", email=None):
    return client.post(
        "/v1/auth/register",
        json={
            "username": username,
            "password": password,
            "confirm_password": password,
            "email": email,
        },
    )


def _federated_login(client, email, *, name=None, remember_me=True, code="code-1"):
    runtime = get_runtime()
    payload = {"sub": f"sub-{code}", "email": email}
    if name:
        payload["name"] = name
    runtime.oauth.register_oauth_code("google", code, payload)
    state = client.get("/v1/auth/oauth/google/start").json()["data"]["state"]
    return client.get(
        "/v1/auth/oauth/google/callback",
        params={"code": code, "state": state, "remember_me": str(remember_me).lower()},
    )


class TestRegistration:
    def test_register_creates_account(self, client):
        response = _register(client, email="alice@example.com")
        assert response.status_code == 201
        data = response.json()["data"]
        assert data["username"] == "alice"
        assert data["roles"] == ["USER"]
        assert data["federation_authorized"] is False

    def test_duplicate_username_conflicts(self, client):
        _register(client)
        response = _register(client)
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    def test_weak_password_rejected(self, client):
        response = _register(client, password="letters")
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    def test_malformed_body_uses_error_envelope(self, client):
        response = client.post("/v1/auth/register", json={"username": "x"})
        assert response.status_code == 400
        assert response.json()["status"] == "error"


class TestPasswordLogin:
    def test_remember_me_cookie_attributes(self, client):
        _register(client)
        response = client.post(
            "/v1/auth/login",
            json={"username": "alice", "password": "passw0rd", "remember_me": True},
        )
        assert response.status_code == 200
        assert response.json()["data"]["remember_me"] is True
        set_cookie = response.headers["set-cookie"]
        assert set_cookie.startswith(f"{COOKIE}=")
        assert "HttpOnly" in set_cookie
        assert "Max-Age=2592000" in set_cookie
        assert "Path=/" in set_cookie
        assert "samesite=lax" in set_cookie.lower()

    def test_no_cookie_without_opt_in(self, client):
        _register(client)
        response = client.post(
            "/v1/auth/login", json={"username": "alice", "password": "passw0rd"}
        )
        assert response.status_code == 200
        assert "set-cookie" not in response.headers

    def test_bad_password(self, client):
        _register(client)
        response = client.post(
            "/v1/auth/login", json={"username": "alice", "password": "nope12345"}
        )
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"


class TestRememberMe:
    def test_cookie_restores_principal(self, client):
        _register(client)
        client.post(
            "/v1/auth/login",
            json={"username": "alice", "password": "passw0rd", "remember_me": True},
        )
        response = client.post("/v1/auth/remember-me")
        assert response.status_code == 200
        assert response.json()["data"]["effective_username"] == "alice"

    def test_missing_cookie_is_unauthorized(self, client):
        response = client.post("/v1/auth/remember-me")
        assert response.status_code == 401

    def test_garbage_cookie_is_treated_as_absent(self, client):
        client.cookies.set(COOKIE, "garbage!!")
        response = client.post("/v1/auth/remember-me")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"


class TestFederatedLogin:
    def test_callback_creates_account_and_sets_cookie(self, client, oauth_configured):
        response = _federated_login(client, "new@x.com", name="New Person")
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["effective_username"] == "new@x.com"
        assert data["username"] == "New Person"
        assert data["federation_authorized"] is True
        assert data["redirect_to"] == "/foods"
        assert response.headers["set-cookie"].startswith(f"{COOKIE}=")

        restored = client.post("/v1/auth/remember-me")
        assert restored.json()["data"]["account_id"] == data["account_id"]

    def test_callback_merges_with_local_account(self, client, oauth_configured):
        local = _register(client, email="a@x.com").json()["data"]
        response = _federated_login(client, "a@x.com", name="Remote Name")
        data = response.json()["data"]
        assert data["account_id"] == local["id"]
        assert data["username"] == "Remote Name"
        # password still works after the merge
        login = client.post(
            "/v1/auth/login", json={"username": "a@x.com", "password": "passw0rd"}
        )
        assert login.status_code == 200

    def test_missing_email_is_rejected(self, client, oauth_configured):
        runtime = get_runtime()
        runtime.oauth.register_oauth_code("google", "no-email", {"sub": "x"})
        state = client.get("/v1/auth/oauth/google/start").json()["data"]["state"]
        response = client.get(
            "/v1/auth/oauth/google/callback", params={"code": "no-email", "state": state}
        )
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "missing_email"
        assert "set-cookie" not in response.headers

    def test_admin_email_gets_admin_authority(self, client, oauth_configured):
        response = _federated_login(client, "Admin@X.com")
        assert "ADMIN" in response.json()["data"]["authorities"]


class TestAuthorizeAccount:
    def test_admin_can_authorize(self, client, oauth_configured):
        target = _register(client, username="bob").json()["data"]
        _federated_login(client, "admin@x.com")
        response = client.post(f"/v1/users/{target['id']}/authorize")
        assert response.status_code == 200
        assert response.json()["data"]["federation_authorized"] is True

    def test_non_admin_is_forbidden(self, client, oauth_configured):
        target = _register(client, username="bob").json()["data"]
        _federated_login(client, "someone@x.com")
        response = client.post(f"/v1/users/{target['id']}/authorize")
        assert response.status_code == 403

    def test_anonymous_is_unauthorized(self, client):
        target = _register(client, username="bob").json()["data"]
        response = client.post(f"/v1/users/{target['id']}/authorize")
        assert response.status_code == 401


class TestHealth:
    def test_healthz(self, client):
        response = client.get("/healthz")
        assert response.status_code == 200
        assert response.json()["remember_me_migration"] == "not_needed"

    def test_request_id_is_echoed(self, client):
        response = client.get("/healthz", headers={"X-Request-ID": "req-42"})
        assert response.headers["X-Request-ID"] == "req-42"
