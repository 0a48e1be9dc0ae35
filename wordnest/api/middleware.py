from __future__ import annotations

from typing import Iterable
from urllib.parse import urlencode

from fastapi import Request
from fastapi.responses import JSONResponse, RedirectResponse

from wordnest.api.routes import USER_EMAIL_HEADER, USER_ID_HEADER
from wordnest.logging import get_correlation_id, get_logger
from wordnest.service.errors import AuthErrorCode
from wordnest.service.runtime import get_runtime

logger = get_logger(__name__)

AUTH_API_PREFIX = "/api/auth"
API_PREFIX = "/api"
PUBLIC_PATHS = ("/login", "/register")
INFRASTRUCTURE_PATHS = ("/healthz", "/docs", "/redoc", "/openapi.json", "/static", "/favicon.ico")

_INJECTED_HEADERS = {USER_ID_HEADER.encode("latin-1"), USER_EMAIL_HEADER.encode("latin-1")}


def _matches(path: str, prefixes: Iterable[str]) -> bool:
    """Exact match or a subpath of one of ``prefixes``."""
    for prefix in prefixes:
        if path == prefix or path.startswith(prefix + "/"):
            return True
    return False


def is_auth_api(path: str) -> bool:
    return _matches(path, (AUTH_API_PREFIX,))


def is_public(path: str) -> bool:
    return path == "/" or _matches(path, PUBLIC_PATHS) or _matches(path, INFRASTRUCTURE_PATHS)


def is_protected_api(path: str) -> bool:
    return _matches(path, (API_PREFIX,)) and not is_auth_api(path)


def _strip_identity_headers(request: Request) -> None:
    headers = [
        (name, value)
        for name, value in request.scope["headers"]
        if name.lower() not in _INJECTED_HEADERS
    ]
    request.scope["headers"] = headers


def _inject_identity_headers(request: Request, user_id: str, email: str) -> None:
    request.scope["headers"] = list(request.scope["headers"]) + [
        (USER_ID_HEADER.encode("latin-1"), user_id.encode("utf-8")),
        (USER_EMAIL_HEADER.encode("latin-1"), email.encode("utf-8")),
    ]


def _unauthorized() -> JSONResponse:
    return JSONResponse(
        status_code=401,
        content={
            "status": "error",
            "error": {
                "code": AuthErrorCode.INVALID_TOKEN.value,
                "message": "authentication required",
            },
            "request_id": get_correlation_id(),
        },
    )


def _login_redirect(request: Request, login_path: str) -> RedirectResponse:
    target = request.url.path
    if request.url.query:
        target = f"{target}?{request.url.query}"
    return RedirectResponse(f"{login_path}?{urlencode({'from': target})}", status_code=307)


async def resolve_identity(request: Request, call_next):
    """Resolve the caller and forward ``x-user-id``/``x-user-email`` downstream.

    Client-supplied identity headers are always dropped first, so anything a
    downstream handler reads from them was put there by this middleware.
    Auth API routes are skipped; public and infrastructure paths pass through.
    Unresolved API calls get a 401 envelope, unresolved pages a redirect to
    the login page carrying the original path in ``from``.
    """
    _strip_identity_headers(request)
    path = request.url.path
    if is_auth_api(path) or is_public(path):
        return await call_next(request)

    runtime = get_runtime()
    identity = runtime.identity.resolve(request)
    if identity is None:
        if is_protected_api(path):
            logger.info("identity_unresolved", path=path, kind="api")
            return _unauthorized()
        logger.info("identity_unresolved", path=path, kind="page")
        return _login_redirect(request, runtime.settings.login_path)

    _inject_identity_headers(request, identity.user_id, identity.email)
    return await call_next(request)
