"""Tests for the error envelope format and error handling.

Error responses have the shape:
{
    "status": "error",
    "error": {
        "code": "<stable_code>",
        "message": "<human_readable>",
        "details": <object|array|null>
    },
    "request_id": "<uuid>"
}
"""

import json

import pytest
from fastapi.testclient import TestClient
from pydantic import ValidationError

from wordnest.api.error_handling import _error_code_for_status, _error_response, _validation_details
from wordnest.api.schemas import Envelope, ErrorBody
from wordnest.app import app
from wordnest.logging import set_correlation_id
from wordnest.service.errors import AuthErrorCode


class TestErrorBody:
    """Tests for the ErrorBody model."""

    def test_error_body_required_fields(self):
        error = ErrorBody(code="INVALID_CREDENTIALS", message="Invalid email or password")
        assert error.code == "INVALID_CREDENTIALS"
        assert error.details is None

    def test_every_auth_code_accepted(self):
        for code in AuthErrorCode:
            assert ErrorBody(code=code.value, message="x").code == code.value

    def test_unknown_code_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="made_up", message="x")


class TestEnvelope:
    def test_request_id_auto_generated(self):
        first = Envelope(status="error")
        second = Envelope(status="error")

        assert first.request_id and first.request_id != second.request_id

    def test_invalid_status_rejected(self):
        with pytest.raises(ValidationError):
            Envelope(status="failed")


class TestErrorCodeMapping:
    @pytest.mark.parametrize(
        "status,code",
        [
            (400, "VALIDATION_ERROR"),
            (401, "UNAUTHORIZED"),
            (403, "FORBIDDEN"),
            (404, "NOT_FOUND"),
            (409, "CONFLICT"),
            (429, "TOO_MANY_ATTEMPTS"),
            (500, "SERVER_ERROR"),
        ],
    )
    def test_status_maps_to_code(self, status, code):
        assert _error_code_for_status(status) == code

    def test_unknown_status_defaults_to_server_error(self):
        assert _error_code_for_status(418) == "SERVER_ERROR"


class TestErrorResponseFactory:
    def test_explicit_code_and_details(self):
        response = _error_response(
            403, "banned", {"reason": "spam"}, code=AuthErrorCode.USER_BANNED.value
        )
        body = json.loads(response.body)

        assert response.status_code == 403
        assert body["status"] == "error"
        assert body["error"] == {"code": "USER_BANNED", "message": "banned", "details": {"reason": "spam"}}

    def test_uses_correlation_id(self):
        set_correlation_id("req-123")

        body = json.loads(_error_response(404, "missing").body)
        assert body["request_id"] == "req-123"
        assert body["error"]["code"] == "NOT_FOUND"

    def test_validation_details_grouped_by_field(self):
        details = _validation_details(
            [
                {"loc": ("body", "email"), "msg": "Value error, invalid email address"},
                {"loc": ("body", "email"), "msg": "too long"},
                {"loc": ("body",), "msg": "Field required"},
            ]
        )

        assert details == {"email": ["invalid email address", "too long"], "body": ["Field required"]}


class TestHttpErrors:
    @pytest.fixture
    def client(self):
        return TestClient(app)

    def test_unknown_route_uses_envelope(self, client):
        response = client.get("/api/auth/nope")

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "NOT_FOUND"

    def test_wrong_method_uses_envelope(self, client):
        response = client.get("/api/auth/login")

        assert response.status_code == 405
        assert response.json()["error"]["code"] == "METHOD_NOT_ALLOWED"

    def test_request_id_round_trip(self, client):
        response = client.post(
            "/api/auth/login",
            json={"email": "nobody@example.com", "password": "x"},
            headers={"X-Request-ID": "trace-abc"},
        )

        assert response.status_code == 401
        assert response.headers["X-Request-ID"] == "trace-abc"
        assert response.json()["request_id"] == "trace-abc"

    def test_missing_fields(self, client):
        response = client.post("/api/auth/login", json={})

        assert response.status_code == 400
        details = response.json()["error"]["details"]
        assert "email" in details and "password" in details
