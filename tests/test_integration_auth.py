"""Integration tests for the auth HTTP API.

Tests the complete flow including:
- Registration and login
- Token refresh from body and cookie
- Logout
- Current-user lookup
"""

import threading

import pytest
from fastapi.testclient import TestClient

from wordnest.app import app
from wordnest.service.runtime import get_runtime

EMAIL = "alice@example.com"
PASSWORD = "Passw0rd!"


@pytest.fixture
def client():
    return TestClient(app)


def _register(client, email=EMAIL, password=PASSWORD, **extra):
    payload = {"email": email, "password": password, "confirmPassword": password, **extra}
    return client.post("/api/auth/register", json=payload)


def _login(client, email=EMAIL, password=PASSWORD, **kwargs):
    return client.post("/api/auth/login", json={"email": email, "password": password}, **kwargs)


class TestRegister:
    def test_register_returns_user_and_tokens(self, client):
        response = _register(client, username="alice", displayName="Alice")

        assert response.status_code == 201
        body = response.json()
        assert body["user"]["email"] == EMAIL
        assert body["user"]["username"] == "alice"
        assert body["user"]["displayName"] == "Alice"
        assert "passwordHash" not in body["user"]
        assert "deletedAt" not in body["user"]
        assert set(body["tokens"]) == {"accessToken", "refreshToken"}
        assert client.cookies.get("accessToken") == body["tokens"]["accessToken"]
        assert client.cookies.get("refreshToken") == body["tokens"]["refreshToken"]

    def test_cookies_are_http_only(self, client):
        response = _register(client)

        set_cookie = ";".join(response.headers.get_list("set-cookie")).lower()
        assert "httponly" in set_cookie
        assert "samesite=lax" in set_cookie

    def test_duplicate_email_conflict(self, client):
        _register(client)

        response = _register(client)
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "EMAIL_ALREADY_EXISTS"

    def test_duplicate_username_conflict(self, client):
        _register(client, username="alice")

        response = _register(client, email="other@example.com", username="alice")
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "USERNAME_ALREADY_EXISTS"

    def test_password_mismatch_rejected(self, client):
        response = client.post(
            "/api/auth/register",
            json={"email": EMAIL, "password": PASSWORD, "confirmPassword": "Different1!"},
        )

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "VALIDATION_ERROR"
        messages = [m for field in error["details"].values() for m in field]
        assert "Passwords do not match" in messages

    def test_weak_password_rejected(self, client):
        response = _register(client, password="alllowercase")

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "VALIDATION_ERROR"
        assert len(error["details"]["password"]) == 2

    def test_invalid_email_rejected(self, client):
        response = _register(client, email="not-an-email")

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"


class TestLogin:
    def test_login_scenario(self, client):
        _register(client)
        client.cookies.clear()

        response = _login(client)

        assert response.status_code == 200
        body = response.json()
        assert body["user"]["email"] == EMAIL
        assert body["user"]["lastLoginAt"] is not None
        me = client.get(
            "/api/auth/me",
            headers={"Authorization": f"Bearer {body['tokens']['accessToken']}"},
        )
        assert me.status_code == 200
        assert me.json()["user"]["email"] == EMAIL

    def test_wrong_password_and_unknown_email_match(self, client):
        _register(client)

        wrong = _login(client, password="Wrong-passw0rd")
        unknown = _login(client, email="nobody@example.com")

        assert wrong.status_code == unknown.status_code == 401
        assert wrong.json()["error"]["code"] == unknown.json()["error"]["code"] == "INVALID_CREDENTIALS"
        assert wrong.json()["error"]["message"] == unknown.json()["error"]["message"]

    def test_five_failures_then_success(self, client):
        _register(client)
        for _ in range(5):
            assert _login(client, password="Wrong-passw0rd").status_code == 401

        assert _login(client).status_code == 200

    def test_throttle_ceiling(self, client):
        _register(client)
        for i in range(15):
            response = _login(
                client,
                password="Wrong-passw0rd",
                headers={"X-Forwarded-For": f"203.0.113.{i}"},
            )
            assert response.status_code == 401

        blocked = _login(client, headers={"X-Forwarded-For": "198.51.100.1"})
        assert blocked.status_code == 429
        assert blocked.json()["error"]["code"] == "TOO_MANY_ATTEMPTS"

    def test_banned_user(self, client):
        _register(client)
        store = get_runtime().store
        user = store.get_user_by_email(EMAIL)
        store.update_user(user.id, is_banned=True, ban_reason="spam")

        response = _login(client)

        assert response.status_code == 403
        error = response.json()["error"]
        assert error["code"] == "USER_BANNED"
        assert error["details"]["reason"] == "spam"

    def test_client_ip_from_forwarded_header(self, client):
        _register(client)

        response = _login(
            client,
            headers={"X-Forwarded-For": "203.0.113.7, 10.0.0.1", "User-Agent": "pytest-agent"},
        )
        sessions = get_runtime().store.list_user_sessions(response.json()["user"]["id"])
        latest = [s for s in sessions if s.user_agent == "pytest-agent"]
        assert len(latest) == 1
        assert latest[0].ip_addr == "203.0.113.7"

    def test_malformed_body(self, client):
        response = client.post(
            "/api/auth/login", content="{not json", headers={"Content-Type": "application/json"}
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"


class TestRefresh:
    def test_refresh_from_body(self, client):
        tokens = _register(client).json()["tokens"]
        client.cookies.clear()

        response = client.post("/api/auth/refresh", json={"refreshToken": tokens["refreshToken"]})

        assert response.status_code == 200
        assert response.json()["tokens"]["refreshToken"] != tokens["refreshToken"]
        assert client.cookies.get("refreshToken") == response.json()["tokens"]["refreshToken"]

    def test_refresh_from_cookie(self, client):
        _register(client)

        response = client.post("/api/auth/refresh")

        assert response.status_code == 200

    def test_malformed_body_falls_back_to_cookie(self, client):
        _register(client)

        response = client.post(
            "/api/auth/refresh", content="{oops", headers={"Content-Type": "application/json"}
        )

        assert response.status_code == 200

    def test_replayed_refresh_token_rejected(self, client):
        tokens = _register(client).json()["tokens"]
        first = client.post("/api/auth/refresh", json={"refreshToken": tokens["refreshToken"]})
        second = client.post("/api/auth/refresh", json={"refreshToken": tokens["refreshToken"]})

        assert first.status_code == 200
        assert second.status_code == 401
        assert second.json()["error"]["code"] == "SESSION_NOT_FOUND"

    def test_login_on_same_device_supersedes_old_refresh_token(self, client):
        first = _register(client).json()["tokens"]
        client.cookies.clear()
        assert _login(client).status_code == 200
        client.cookies.clear()

        response = client.post("/api/auth/refresh", json={"refreshToken": first["refreshToken"]})

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "SESSION_NOT_FOUND"

    def test_concurrent_refresh_single_winner(self, client):
        tokens = _register(client).json()["tokens"]
        responses = []
        barrier = threading.Barrier(2)

        def worker():
            own_client = TestClient(app)
            barrier.wait()
            responses.append(
                own_client.post("/api/auth/refresh", json={"refreshToken": tokens["refreshToken"]})
            )

        threads = [threading.Thread(target=worker) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        statuses = sorted(r.status_code for r in responses)
        assert statuses == [200, 401]
        loser = next(r for r in responses if r.status_code == 401)
        assert loser.json()["error"]["code"] == "SESSION_NOT_FOUND"

    def test_missing_token(self, client):
        response = client.post("/api/auth/refresh")

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "INVALID_TOKEN"

    def test_access_token_not_accepted(self, client):
        tokens = _register(client).json()["tokens"]

        response = client.post("/api/auth/refresh", json={"refreshToken": tokens["accessToken"]})
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "INVALID_TOKEN"


class TestLogout:
    def test_logout_revokes_and_clears_cookies(self, client):
        tokens = _register(client).json()["tokens"]

        response = client.post("/api/auth/logout")

        assert response.status_code == 200
        assert response.json() == {"message": "Logged out successfully"}
        assert client.cookies.get("refreshToken") is None
        assert client.cookies.get("accessToken") is None
        retry = client.post("/api/auth/refresh", json={"refreshToken": tokens["refreshToken"]})
        assert retry.status_code == 401

    def test_logout_with_garbage_cookies(self, client):
        client.cookies.set("refreshToken", "garbage")
        client.cookies.set("accessToken", "also-garbage")

        response = client.post("/api/auth/logout")

        assert response.status_code == 200
        assert response.json() == {"message": "Logged out successfully"}

    def test_logout_without_cookies(self, client):
        assert client.post("/api/auth/logout").status_code == 200


class TestMe:
    def test_me_from_cookie(self, client):
        _register(client)

        response = client.get("/api/auth/me")
        assert response.status_code == 200
        assert response.json()["user"]["email"] == EMAIL

    def test_header_wins_over_cookie(self, client):
        _register(client)
        other = TestClient(app)
        bob_token = _register(other, email="bob@example.com").json()["tokens"]["accessToken"]

        response = client.get("/api/auth/me", headers={"Authorization": f"Bearer {bob_token}"})
        assert response.json()["user"]["email"] == "bob@example.com"

    def test_me_without_token(self, client):
        response = client.get("/api/auth/me")

        assert response.status_code == 401
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "INVALID_TOKEN"
        assert body["request_id"]

    def test_me_for_inactive_user(self, client):
        _register(client)
        store = get_runtime().store
        store.update_user(store.get_user_by_email(EMAIL).id, is_active=False)

        response = client.get("/api/auth/me")
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "USER_INACTIVE"


def test_healthz(client):
    response = client.get("/healthz")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "store": "memory"}
    assert response.headers["X-Request-ID"]
