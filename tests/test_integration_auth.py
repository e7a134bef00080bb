"""Integration tests for the auth endpoints.

Tests the complete flow through the app:
- Login sets cookies and the Authorization header
- Refresh re-validation ("refresh") and rotation ("token")
- Tampered cookies, unknown operations and wrong methods
- The current user (me)
- Logout
- Per-route rate limiting
"""

from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from sessiongate import app as app_module
from sessiongate.service.runtime import get_runtime

PASSWORD = "TestPassword123!"
EMAIL = "testuser@example.com"


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


@pytest.fixture
def test_user(registered_user):
    return registered_user(EMAIL, PASSWORD, roles=["member"], name="Test User")


def _login(client, fingerprint="fp-browser-1", password=PASSWORD, email=EMAIL):
    return client.post(
        "/api/auth/login",
        json={"email": email, "password": password, "fingerprint": fingerprint},
    )


def _cleared(response, name):
    return any(
        c.startswith(f"{name}=") and "Max-Age=0" in c
        for c in response.headers.get_list("set-cookie")
    )


class TestLogin:
    def test_login_sets_cookies_and_header(self, client, test_user):
        response = _login(client)

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["message"] == "loginSuccess"
        data = body["data"]
        assert data["user"]["email"] == EMAIL
        assert data["user"]["roles"] == ["member"]
        assert data["fingerprint"] == "fp-browser-1"
        assert response.headers["Authorization"] == f"Bearer {data['token']}"
        assert response.cookies["token"] == data["refreshToken"]
        assert response.cookies["fp"] == "fp-browser-1"
        assert response.cookies["auth"] == "login"

    def test_session_is_active_for_seven_days(self, client, test_user):
        data = _login(client).json()["data"]

        session = get_runtime().store.get_session(data["sessionId"])
        remaining = session.expires_at - datetime.now(timezone.utc)
        assert session.active
        assert timedelta(days=6, hours=23) < remaining <= timedelta(days=7)

    def test_wrong_password(self, client, test_user):
        response = _login(client, password="wrong-password")

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "AuthError"

    def test_unknown_email(self, client):
        response = _login(client, email="nobody@example.com")

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "AuthError"

    def test_unverified_email(self, client):
        runtime = get_runtime()
        user = runtime.store.create_user("pending@example.com")
        runtime.login.save_password(user.id, PASSWORD)

        response = _login(client, email="pending@example.com")

        assert response.status_code == 401
        error = response.json()["error"]
        assert error["code"] == "emailVerification"
        assert error["details"] == {"emailVerification": True}

    def test_suspended_account(self, client, test_user):
        get_runtime().store.set_user_status(test_user.id, "suspended")

        response = _login(client)

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "AccountSuspended"

    def test_invalid_payload(self, client):
        response = client.post("/api/auth/login", json={"email": "not-an-email", "password": ""})

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "InvalidField"
        assert set(error["details"]["fields"]) == {"email", "password"}


class TestRefresh:
    def test_rotation_issues_new_pair(self, client, test_user):
        login = _login(client).json()["data"]

        response = client.post("/api/auth/refresh", json={"type": "token"})

        assert response.status_code == 200
        body = response.json()
        assert body["message"] == "refreshSuccess"
        data = body["data"]
        assert data["refreshToken"] != login["refreshToken"]
        assert response.headers["Authorization"] == f"Bearer {data['token']}"
        assert response.cookies["token"] == data["refreshToken"]
        session = get_runtime().store.get_session(login["sessionId"])
        assert session.refresh_token == data["refreshToken"]
        assert session.expires_at - datetime.now(timezone.utc) > timedelta(days=13)

    def test_old_refresh_token_is_rejected_after_rotation(self, client, test_user):
        login = _login(client).json()["data"]
        client.post("/api/auth/refresh", json={"type": "token"})

        replay = TestClient(app_module.app)
        replay.cookies.set("token", login["refreshToken"])
        replay.cookies.set("fp", "fp-browser-1")
        response = replay.post("/api/auth/refresh", json={"type": "token"})

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "TokenExpired"
        assert _cleared(response, "token")

    def test_revalidation_returns_same_token(self, client, test_user):
        login = _login(client).json()["data"]

        response = client.post(
            "/api/auth/refresh",
            json={"type": "refresh"},
            headers={"Authorization": f"Bearer {login['token']}"},
        )

        assert response.status_code == 200
        assert response.json()["data"] == {"refreshToken": login["refreshToken"]}

    def test_revalidation_with_foreign_access_token_revokes(self, client, test_user):
        first = _login(client).json()["data"]
        other = _login(TestClient(app_module.app), fingerprint="fp-other").json()["data"]

        response = client.post(
            "/api/auth/refresh",
            json={"type": "refresh"},
            headers={"Authorization": f"Bearer {other['token']}"},
        )

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "TokenDenied"
        assert not get_runtime().store.get_session(first["sessionId"]).active

    def test_tampered_cookie_is_invalid_token(self, test_user):
        login = _login(TestClient(app_module.app)).json()["data"]
        nonce, cipher, tag = login["refreshToken"].split(":")

        attacker = TestClient(app_module.app)
        attacker.cookies.set("token", f"{nonce}:{cipher}:{'f' * len(tag)}")
        attacker.cookies.set("fp", "fp-browser-1")
        response = attacker.post("/api/auth/refresh", json={"type": "token"})

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "InvalidToken"
        for name in ("token", "fp", "auth"):
            assert _cleared(response, name)
        session = get_runtime().store.get_session(login["sessionId"])
        assert session.active
        assert session.refresh_token == login["refreshToken"]

    def test_missing_cookies_denied(self, client):
        response = client.post("/api/auth/refresh", json={"type": "token"})

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "TokenDenied"

    def test_unknown_operation(self, client, test_user):
        _login(client)

        response = client.post("/api/auth/refresh", json={"type": "rotate-everything"})

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "InvalidType"


class TestRouting:
    def test_wrong_method_is_invalid_type(self, client):
        response = client.get("/api/auth/login")

        assert response.status_code == 405
        assert response.json()["error"]["code"] == "InvalidType"

    def test_unknown_action_is_invalid_type(self, client):
        response = client.post("/api/auth/teleport")

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "InvalidType"

    def test_healthz(self, client):
        response = client.get("/healthz")

        assert response.status_code == 200
        assert response.json()["status"] == "ok"
        assert response.json()["store"] == "MemoryStore"

    def test_request_id_is_echoed(self, client):
        response = client.get("/healthz", headers={"X-Request-ID": "req-123"})

        assert response.headers["X-Request-ID"] == "req-123"


class TestMe:
    def test_returns_user_behind_access_token(self, client, test_user):
        login = _login(client).json()["data"]

        response = client.get("/api/auth/me", headers={"Authorization": f"Bearer {login['token']}"})

        assert response.status_code == 200
        assert response.json()["data"] == {
            "user": {
                "id": test_user.id,
                "email": EMAIL,
                "name": "Test User",
                "imageUrl": None,
                "roles": ["member"],
            }
        }

    def test_missing_bearer_is_token_denied(self, client):
        response = client.get("/api/auth/me")

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "TokenDenied"

    def test_bad_token_is_unauthorized(self, client):
        response = client.get("/api/auth/me", headers={"Authorization": "Bearer not-a-jwt"})

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "Unauthorized"

    def test_refresh_token_is_not_accepted(self, client, test_user):
        login = _login(client).json()["data"]

        response = client.get(
            "/api/auth/me", headers={"Authorization": f"Bearer {login['refreshToken']}"}
        )

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "Unauthorized"

    def test_deleted_user_is_not_found(self, client, test_user):
        login = _login(client).json()["data"]
        del get_runtime().store.users[test_user.id]

        response = client.get("/api/auth/me", headers={"Authorization": f"Bearer {login['token']}"})

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "NotFound"

    def test_wrong_method_is_invalid_type(self, client):
        response = client.post("/api/auth/me")

        assert response.status_code == 405
        assert response.json()["error"]["code"] == "InvalidType"


class TestLogout:
    def test_logout_twice_succeeds(self, client, test_user):
        login = _login(client).json()["data"]

        first = client.post("/api/auth/logout")
        second = client.post("/api/auth/logout")

        assert first.status_code == second.status_code == 200
        assert first.json()["message"] == "Logout"
        assert _cleared(first, "token")
        assert not get_runtime().store.get_session(login["sessionId"]).active

    def test_logout_then_rotation_fails(self, test_user):
        login = _login(TestClient(app_module.app)).json()["data"]
        holder = TestClient(app_module.app)
        holder.cookies.set("token", login["refreshToken"])
        holder.cookies.set("fp", "fp-browser-1")

        holder.post("/api/auth/logout")
        # logout cleared the jar, replay the stolen pair
        replay = TestClient(app_module.app)
        replay.cookies.set("token", login["refreshToken"])
        replay.cookies.set("fp", "fp-browser-1")
        response = replay.post("/api/auth/refresh", json={"type": "token"})

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "TokenExpired"


class TestAuthRateLimit:
    def test_login_is_rate_limited(self, client, test_user):
        get_runtime().settings.auth_rate_limit_requests = 2

        statuses = [_login(client, password="wrong").status_code for _ in range(3)]

        assert statuses == [401, 401, 429]
        blocked = _login(client, password="wrong")
        assert blocked.json()["error"]["code"] == "APILimit"
        assert "retryAfter" in blocked.json()["error"]["details"]
