"""Tests for Google sign-in and the OAuth session cookie."""

from urllib.parse import parse_qs, urlparse

import httpx
import pytest
from fastapi.testclient import TestClient

from wordnest.app import app
from wordnest.service.errors import UserBannedError
from wordnest.service.oauth import GOOGLE_PROVIDER, OAuthError, OAuthProfile, OAuthService
from wordnest.service.runtime import reset_runtime_for_tests

PROFILE = {
    "id": "google-uid-1",
    "email": "Gina@Example.com",
    "name": "Gina",
    "picture": "https://example.com/gina.png",
}


def _provider(token_status=200, profile=None):
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        if str(request.url) == GOOGLE_PROVIDER["token_url"]:
            if token_status != 200:
                return httpx.Response(token_status, json={"error": "invalid_grant"})
            return httpx.Response(200, json={"access_token": "provider-access-token"})
        if str(request.url) == GOOGLE_PROVIDER["userinfo_url"]:
            assert request.headers["Authorization"] == "Bearer provider-access-token"
            return httpx.Response(200, json=profile or PROFILE)
        return httpx.Response(404)

    return httpx.MockTransport(handler), calls


@pytest.fixture
def configured_runtime(monkeypatch):
    monkeypatch.setenv("OAUTH_GOOGLE_CLIENT_ID", "client-id")
    monkeypatch.setenv("OAUTH_GOOGLE_CLIENT_SECRET", "client-secret")
    monkeypatch.setenv("OAUTH_REDIRECT_URI", "http://testserver/api/auth/oauth/google/callback")
    return reset_runtime_for_tests()


def _install(runtime, transport):
    runtime.oauth = OAuthService(
        runtime.store, runtime.oauth_sessions, runtime.settings, transport=transport
    )
    return runtime.oauth


@pytest.fixture
def client():
    return TestClient(app)


def _start(client, return_to="/lists"):
    response = client.get(
        "/api/auth/oauth/google/start", params={"from": return_to}, follow_redirects=False
    )
    assert response.status_code == 307
    location = urlparse(response.headers["location"])
    return parse_qs(location.query)["state"][0], location


class TestGoogleSignIn:
    def test_start_redirects_to_google(self, configured_runtime, client):
        state, location = _start(client)

        assert f"{location.scheme}://{location.netloc}{location.path}" == GOOGLE_PROVIDER["auth_url"]
        query = parse_qs(location.query)
        assert query["client_id"] == ["client-id"]
        assert query["response_type"] == ["code"]
        assert client.cookies.get("oauth_state") == state

    def test_callback_sets_session_and_creates_user(self, configured_runtime, client):
        transport, calls = _provider()
        _install(configured_runtime, transport)
        state, _ = _start(client)

        response = client.get(
            "/api/auth/oauth/google/callback",
            params={"code": "auth-code", "state": state},
            follow_redirects=False,
        )

        assert response.status_code == 303
        assert response.headers["location"] == "/lists"
        assert len(calls) == 2
        user = configured_runtime.store.get_user_by_email("gina@example.com")
        assert user.email_verified is True
        assert user.password_hash is None
        assert user.display_name == "Gina"

        identity = client.get("/api/user/identity")
        assert identity.status_code == 200
        assert identity.json() == {"userId": user.id, "email": "gina@example.com"}

    def test_state_mismatch_rejected(self, configured_runtime, client):
        transport, calls = _provider()
        _install(configured_runtime, transport)
        _start(client)

        response = client.get(
            "/api/auth/oauth/google/callback",
            params={"code": "auth-code", "state": "forged"},
            follow_redirects=False,
        )

        assert response.status_code == 303
        assert response.headers["location"] == "/login?error=OAuthCallback"
        assert calls == []

    def test_provider_failure_denies_access(self, configured_runtime, client):
        transport, _ = _provider(token_status=400)
        _install(configured_runtime, transport)
        state, _ = _start(client)

        response = client.get(
            "/api/auth/oauth/google/callback",
            params={"code": "bad-code", "state": state},
            follow_redirects=False,
        )

        assert response.headers["location"] == "/login?error=AccessDenied"

    def test_banned_user_denied(self, configured_runtime, client):
        transport, _ = _provider()
        _install(configured_runtime, transport)
        user = configured_runtime.store.create_user("gina@example.com")
        configured_runtime.store.update_user(user.id, is_banned=True)
        state, _ = _start(client)

        response = client.get(
            "/api/auth/oauth/google/callback",
            params={"code": "auth-code", "state": state},
            follow_redirects=False,
        )

        assert response.headers["location"] == "/login?error=AccessDenied"

    def test_open_redirect_rejected(self, configured_runtime, client):
        transport, _ = _provider()
        _install(configured_runtime, transport)
        state, _ = _start(client, return_to="//evil.example.com")

        response = client.get(
            "/api/auth/oauth/google/callback",
            params={"code": "auth-code", "state": state},
            follow_redirects=False,
        )

        assert response.headers["location"] == "/dashboard"

    def test_signout_clears_session(self, configured_runtime, client):
        transport, _ = _provider()
        _install(configured_runtime, transport)
        state, _ = _start(client)
        client.get(
            "/api/auth/oauth/google/callback",
            params={"code": "auth-code", "state": state},
            follow_redirects=False,
        )

        response = client.post("/api/auth/oauth/signout")

        assert response.status_code == 200
        assert client.get("/api/user/identity").status_code == 401

    def test_start_unconfigured(self, client):
        response = client.get("/api/auth/oauth/google/start", follow_redirects=False)

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "OAUTH_FAILED"


class TestOAuthService:
    def test_existing_password_account_keeps_password(self, configured_runtime):
        store = configured_runtime.store
        store.create_user("gina@example.com", password_hash="existing-hash")
        service = configured_runtime.oauth

        user, token = service.sign_in(OAuthProfile(provider_uid="g", email="gina@example.com"))

        assert store.get_user(user.id).password_hash == "existing-hash"
        assert configured_runtime.oauth_sessions.decode(token)["sub"] == user.id

    def test_banned_account_refused(self, configured_runtime):
        store = configured_runtime.store
        user = store.create_user("gina@example.com")
        store.update_user(user.id, is_banned=True)

        with pytest.raises(UserBannedError):
            configured_runtime.oauth.sign_in(OAuthProfile(provider_uid="g", email="gina@example.com"))

    @pytest.mark.asyncio
    async def test_profile_without_email_rejected(self, configured_runtime):
        transport, _ = _provider(profile={"id": "g"})
        service = _install(configured_runtime, transport)

        with pytest.raises(OAuthError):
            await service.exchange_code("auth-code")
