"""Integration tests for the authentication flow over HTTP.

Covers:
- signup and login envelopes
- the refresh cookie and its attributes
- refresh rotation and replay rejection
- logout of every session
- password change
- admin-only endpoints
"""

import pytest
from fastapi.testclient import TestClient

from boilerhub import app as app_module
from boilerhub.service.runtime import get_runtime, reset_runtime_for_tests

COOKIE = "refreshToken"


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


@pytest.fixture
def test_user_email():
    return "testuser@example.com"


@pytest.fixture
def test_user_password():
    return "TestPassword123!"


def _signup(client, email, password, name=None):
    body = {"email": email, "password": password}
    if name:
        body["name"] = name
    return client.post("/v1/auth/signup", json=body)


def _bearer(response) -> dict:
    return {"Authorization": f"Bearer {response.json()['data']['access_token']}"}


class TestSignupFlow:
    """Tests for user registration."""

    def test_signup_creates_user(self, client, test_user_email, test_user_password):
        response = _signup(client, test_user_email, test_user_password, "Tester")

        assert response.status_code == 201
        data = response.json()
        assert data["status"] == "ok"
        assert data["request_id"]
        assert data["data"]["token_type"] == "Bearer"
        assert data["data"]["user"]["email"] == test_user_email
        assert data["data"]["user"]["role"] == "user"
        assert "session_id" in data["data"]

    def test_refresh_token_only_travels_in_cookie(
        self, client, test_user_email, test_user_password
    ):
        response = _signup(client, test_user_email, test_user_password)

        assert "refresh_token" not in response.json()["data"]
        assert response.cookies.get(COOKIE)

    def test_refresh_cookie_attributes(self, client, test_user_email, test_user_password):
        response = _signup(client, test_user_email, test_user_password)

        cookie = response.headers["set-cookie"].lower()
        assert cookie.startswith(f"{COOKIE.lower()}=")
        assert "httponly" in cookie
        assert "samesite=lax" in cookie
        assert "path=/" in cookie
        assert f"max-age={7 * 24 * 60 * 60}" in cookie
        # Plain HTTP outside production
        assert "secure" not in cookie

    def test_signup_rejects_duplicate_email(
        self, client, test_user_email, test_user_password
    ):
        _signup(client, test_user_email, test_user_password)
        response = _signup(client, test_user_email.upper(), test_user_password)

        assert response.status_code == 409
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "conflict"
        assert "already exists" in body["error"]["message"]

    def test_signup_validates_email_format(self, client, test_user_password):
        response = _signup(client, "invalid-email", test_user_password)
        assert response.status_code == 422

    def test_signup_validates_password_length(self, client, test_user_email):
        response = _signup(client, test_user_email, "short")
        assert response.status_code == 422

    def test_signup_can_be_disabled(self, monkeypatch, test_user_email, test_user_password):
        monkeypatch.setenv("ALLOW_SIGNUP", "false")
        reset_runtime_for_tests()
        client = TestClient(app_module.app)

        response = _signup(client, test_user_email, test_user_password)

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"


class TestLoginFlow:
    """Tests for login."""

    def test_login_with_valid_credentials(self, client, test_user_email, test_user_password):
        _signup(client, test_user_email, test_user_password)
        response = client.post(
            "/v1/auth/login", json={"email": test_user_email, "password": test_user_password}
        )

        assert response.status_code == 200
        assert response.json()["data"]["access_token"]
        assert response.cookies.get(COOKIE)

    def test_login_with_wrong_password(self, client, test_user_email, test_user_password):
        _signup(client, test_user_email, test_user_password)
        response = client.post(
            "/v1/auth/login", json={"email": test_user_email, "password": "WrongPassword1!"}
        )

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"
        assert response.json()["error"]["message"] == "invalid credentials"

    def test_unknown_email_looks_like_wrong_password(self, client, test_user_password):
        response = client.post(
            "/v1/auth/login", json={"email": "ghost@example.com", "password": test_user_password}
        )

        assert response.status_code == 401
        assert response.json()["error"]["message"] == "invalid credentials"


class TestTokenRefresh:
    """Tests for refresh rotation driven by the cookie."""

    def test_refresh_rotates_cookie(self, client, test_user_email, test_user_password):
        signup = _signup(client, test_user_email, test_user_password)
        old_cookie = signup.cookies.get(COOKIE)

        response = client.post("/v1/auth/refresh")

        assert response.status_code == 200
        new_cookie = response.cookies.get(COOKIE)
        assert new_cookie and new_cookie != old_cookie
        assert response.json()["data"]["session_id"] != signup.json()["data"]["session_id"]

    def test_replayed_refresh_cookie_is_rejected(
        self, client, test_user_email, test_user_password
    ):
        signup = _signup(client, test_user_email, test_user_password)
        old_cookie = signup.cookies.get(COOKIE)
        assert client.post("/v1/auth/refresh").status_code == 200

        replay = TestClient(app_module.app, cookies={COOKIE: old_cookie})
        response = replay.post("/v1/auth/refresh")

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_refresh_without_cookie(self):
        response = TestClient(app_module.app).post("/v1/auth/refresh")
        assert response.status_code == 401

    def test_rotated_access_token_replaces_the_old_one(
        self, client, test_user_email, test_user_password
    ):
        signup = _signup(client, test_user_email, test_user_password)
        refreshed = client.post("/v1/auth/refresh")

        assert client.get("/v1/me", headers=_bearer(refreshed)).status_code == 200
        assert client.get("/v1/me", headers=_bearer(signup)).status_code == 401


class TestLogout:
    def test_logout_revokes_all_sessions(self, client, test_user_email, test_user_password):
        signup = _signup(client, test_user_email, test_user_password)
        other_device = TestClient(app_module.app)
        login = other_device.post(
            "/v1/auth/login", json={"email": test_user_email, "password": test_user_password}
        )

        response = client.post("/v1/auth/logout", headers=_bearer(signup))

        assert response.status_code == 200
        assert response.json()["data"]["sessions_revoked"] == 2
        assert client.get("/v1/me", headers=_bearer(signup)).status_code == 401
        assert other_device.get("/v1/me", headers=_bearer(login)).status_code == 401
        assert other_device.post("/v1/auth/refresh").status_code == 401

    def test_logout_clears_cookie(self, client, test_user_email, test_user_password):
        signup = _signup(client, test_user_email, test_user_password)

        response = client.post("/v1/auth/logout", headers=_bearer(signup))

        cookie = response.headers["set-cookie"].lower()
        assert cookie.startswith(f"{COOKIE.lower()}=")
        assert "max-age=0" in cookie
        assert client.cookies.get(COOKIE) is None

    def test_logout_with_cookie_only(self, client, test_user_email, test_user_password):
        _signup(client, test_user_email, test_user_password)

        response = client.post("/v1/auth/logout")

        assert response.json()["data"]["sessions_revoked"] == 1

    def test_anonymous_logout_is_idempotent(self, client):
        response = client.post("/v1/auth/logout")
        assert response.status_code == 200
        assert response.json()["data"]["sessions_revoked"] == 0


class TestPasswordChange:
    def test_change_password_reissues_session(
        self, client, test_user_email, test_user_password
    ):
        signup = _signup(client, test_user_email, test_user_password)

        response = client.post(
            "/v1/auth/password/change",
            headers=_bearer(signup),
            json={"current_password": test_user_password, "new_password": "BrandNewPass789!"},
        )

        assert response.status_code == 200
        assert client.get("/v1/me", headers=_bearer(signup)).status_code == 401
        assert client.get("/v1/me", headers=_bearer(response)).status_code == 200
        login = client.post(
            "/v1/auth/login", json={"email": test_user_email, "password": "BrandNewPass789!"}
        )
        assert login.status_code == 200

    def test_change_password_requires_current(self, client, test_user_email, test_user_password):
        signup = _signup(client, test_user_email, test_user_password)
        response = client.post(
            "/v1/auth/password/change",
            headers=_bearer(signup),
            json={"current_password": "not-it-at-all", "new_password": "BrandNewPass789!"},
        )
        assert response.status_code == 401


class TestProfile:
    def test_me_requires_bearer(self, client):
        response = client.get("/v1/me")
        assert response.status_code == 401
        assert response.json()["status"] == "error"

    def test_update_profile(self, client, test_user_email, test_user_password):
        signup = _signup(client, test_user_email, test_user_password)
        response = client.patch(
            "/v1/me", headers=_bearer(signup), json={"name": "Renamed", "meta": {"theme": "dark"}}
        )
        assert response.status_code == 200
        assert response.json()["data"]["name"] == "Renamed"
        assert response.json()["data"]["meta"] == {"theme": "dark"}

    def test_public_profile_hides_email(self, client, test_user_email, test_user_password):
        signup = _signup(client, test_user_email, test_user_password, "Public")
        user_id = signup.json()["data"]["user"]["id"]

        response = client.get(f"/v1/users/{user_id}")

        assert response.status_code == 200
        assert response.json()["data"]["name"] == "Public"
        assert "email" not in response.json()["data"]

    @pytest.mark.parametrize("user_id", ["not-a-uuid", "00000000-0000-4000-8000-000000000000"])
    def test_unknown_profile(self, client, user_id):
        response = client.get(f"/v1/users/{user_id}")
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"


class TestAdminEndpoints:
    def _admin_headers(self, client):
        signup = _signup(client, "admin@example.com", "AdminPassword123!")
        get_runtime().store.update_user_role(signup.json()["data"]["user"]["id"], "admin")
        return _bearer(signup)

    def test_regular_user_is_forbidden(self, client, test_user_email, test_user_password):
        signup = _signup(client, test_user_email, test_user_password)

        response = client.get("/v1/users", headers=_bearer(signup))

        assert response.status_code == 403
        assert response.json()["error"]["message"] == "admin access required"

    def test_admin_lists_users_with_cursor(self, client):
        headers = self._admin_headers(client)
        for i in range(3):
            _signup(client, f"user{i}@example.com", "UserPassword123!")

        first = client.get("/v1/users", headers=headers, params={"limit": 2})
        assert first.status_code == 200
        page = first.json()["data"]
        assert len(page["items"]) == 2
        assert page["next_cursor"]

        second = client.get(
            "/v1/users", headers=headers, params={"limit": 2, "cursor": page["next_cursor"]}
        )
        rest = second.json()["data"]
        assert len(rest["items"]) == 2
        assert rest["next_cursor"] is None
        ids = [u["id"] for u in page["items"] + rest["items"]]
        assert len(set(ids)) == 4

    def test_invalid_user_cursor(self, client):
        headers = self._admin_headers(client)
        response = client.get("/v1/users", headers=headers, params={"cursor": "garbage"})
        assert response.status_code == 400

    def test_admin_sets_role(self, client, test_user_email, test_user_password):
        headers = self._admin_headers(client)
        target = _signup(client, test_user_email, test_user_password)
        user_id = target.json()["data"]["user"]["id"]

        response = client.post(
            f"/v1/admin/users/{user_id}/role", headers=headers, json={"role": "admin"}
        )

        assert response.status_code == 200
        assert response.json()["data"]["role"] == "admin"
        # Role is read from the store, so the existing token gains admin access
        assert client.get("/v1/users", headers=_bearer(target)).status_code == 200

    def test_unknown_role_is_rejected(self, client, test_user_email, test_user_password):
        headers = self._admin_headers(client)
        target = _signup(client, test_user_email, test_user_password)
        user_id = target.json()["data"]["user"]["id"]
        response = client.post(
            f"/v1/admin/users/{user_id}/role", headers=headers, json={"role": "root"}
        )
        assert response.status_code == 422
