import pytest
from fastapi.testclient import TestClient
from pydantic import ValidationError

from wordnest import app as app_module
from wordnest.api import schemas
from wordnest.config import Settings
from wordnest.storage.models import User


def test_security_headers_and_health():
    client = TestClient(app_module.app)
    response = client.get("/healthz", headers={"Origin": "http://localhost:3000"})

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "store": "memory"}
    assert response.headers["X-Frame-Options"] == "DENY"
    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert response.headers["Cache-Control"].startswith("no-store")
    assert "Strict-Transport-Security" not in response.headers
    assert response.headers["access-control-allow-origin"] == "http://localhost:3000"
    assert response.headers["access-control-allow-credentials"] == "true"


def test_request_id_echoed():
    client = TestClient(app_module.app)

    supplied = client.get("/healthz", headers={"X-Request-ID": "req-123"})
    generated = client.get("/healthz")

    assert supplied.headers["X-Request-ID"] == "req-123"
    assert generated.headers["X-Request-ID"]


def test_allowed_origins_default(monkeypatch):
    monkeypatch.setattr(app_module, "_settings", Settings())
    origins = app_module._allowed_origins()
    assert "http://localhost:3000" in origins
    assert "*" not in origins


def test_allowed_origins_override(monkeypatch):
    monkeypatch.setattr(
        app_module,
        "_settings",
        Settings(cors_allow_origins="https://example.com, https://demo.local"),
    )
    origins = app_module._allowed_origins()
    assert origins == ["https://example.com", "https://demo.local"]


class TestRegisterRequest:
    def test_camel_case_fields(self):
        req = schemas.RegisterRequest.model_validate(
            {
                "email": "  Alice@Example.COM ",
                "password": "Passw0rd!",
                "confirmPassword": "Passw0rd!",
                "displayName": "  Alice  ",
            }
        )
        assert req.email == "alice@example.com"
        assert req.display_name == "Alice"
        assert req.username is None

    def test_password_mismatch_rejected(self):
        with pytest.raises(ValidationError) as exc_info:
            schemas.RegisterRequest(
                email="a@example.com", password="Passw0rd!", confirm_password="other-pass"
            )
        assert "Passwords do not match" in str(exc_info.value)

    def test_short_password_rejected(self):
        with pytest.raises(ValidationError):
            schemas.RegisterRequest(email="a@example.com", password="short", confirm_password="short")

    @pytest.mark.parametrize("username", ["ab", "a" * 31, "bad name", "naïve!"])
    def test_invalid_usernames(self, username):
        with pytest.raises(ValidationError):
            schemas.RegisterRequest(
                email="a@example.com",
                password="Passw0rd!",
                confirm_password="Passw0rd!",
                username=username,
            )

    def test_blank_username_means_none(self):
        req = schemas.RegisterRequest(
            email="a@example.com", password="Passw0rd!", confirm_password="Passw0rd!", username="   "
        )
        assert req.username is None


@pytest.mark.parametrize(
    "email",
    ["not-an-email", "a@b", "@example.com", "a b@example.com", "x" * 65 + "@example.com"],
)
def test_invalid_emails_rejected(email):
    with pytest.raises(ValidationError):
        schemas.LoginRequest(email=email, password="x")


def test_zero_width_characters_stripped_from_email():
    req = schemas.LoginRequest(email="ali\u200bce@example.com", password="x")
    assert req.email == "alice@example.com"


def test_user_response_is_sanitized():
    user = User.new("alice@example.com", password_hash="$argon2id$secret", username="alice")
    payload = schemas.UserResponse.from_user(user).model_dump(by_alias=True)

    assert "passwordHash" not in payload
    assert "password_hash" not in payload
    assert "deletedAt" not in payload
    assert payload["username"] == "alice"
    assert payload["isActive"] is True
    assert payload["metadata"] == {}


def test_error_body_rejects_unknown_codes():
    assert schemas.ErrorBody(code="INVALID_TOKEN", message="x").code == "INVALID_TOKEN"
    with pytest.raises(ValidationError):
        schemas.ErrorBody(code="made_up", message="x")


def test_refresh_request_requires_token():
    assert schemas.TokenRefreshRequest.model_validate({"refreshToken": "abc"}).refresh_token == "abc"
    with pytest.raises(ValidationError):
        schemas.TokenRefreshRequest.model_validate({"refreshToken": ""})
