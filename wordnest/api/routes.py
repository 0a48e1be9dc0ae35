from __future__ import annotations

import secrets
from typing import Optional

from fastapi import APIRouter, Header, HTTPException, Query, Request, Response
from fastapi.responses import RedirectResponse
from pydantic import ValidationError as PydanticValidationError

from wordnest.api.schemas import (
    AuthResponse,
    IdentityResponse,
    LoginRequest,
    MeResponse,
    MessageResponse,
    RegisterRequest,
    TokenRefreshRequest,
    TokensResponse,
    UserResponse,
)
from wordnest.config import Settings
from wordnest.logging import get_logger
from wordnest.service.auth import AuthResult, ClientInfo
from wordnest.service.errors import ServiceError
from wordnest.service.identity import (
    ACCESS_TOKEN_COOKIE,
    REFRESH_TOKEN_COOKIE,
    extract_bearer,
)
from wordnest.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])
user_router = APIRouter(prefix="/api/user", tags=["user"])

USER_ID_HEADER = "x-user-id"
USER_EMAIL_HEADER = "x-user-email"
OAUTH_STATE_COOKIE = "oauth_state"
OAUTH_RETURN_COOKIE = "oauth_return_to"
DEFAULT_RETURN_PATH = "/dashboard"


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def client_info(request: Request) -> ClientInfo:
    """Client IP from X-Forwarded-For, then X-Real-IP, then the socket peer."""
    forwarded = request.headers.get("x-forwarded-for")
    ip_addr = forwarded.split(",")[0].strip() if forwarded else None
    if not ip_addr:
        ip_addr = request.headers.get("x-real-ip") or None
    if not ip_addr and request.client:
        ip_addr = request.client.host
    return ClientInfo(ip_addr=ip_addr, user_agent=request.headers.get("user-agent"))


def safe_return_path(value: Optional[str], default: str = DEFAULT_RETURN_PATH) -> str:
    """Accept only same-origin absolute paths as redirect targets."""
    if not value or not value.startswith("/") or value.startswith("//") or "\\" in value:
        return default
    return value


def _apply_auth_cookies(response: Response, result: AuthResult, settings: Settings) -> None:
    secure = settings.is_production
    response.set_cookie(
        ACCESS_TOKEN_COOKIE,
        result.tokens.access_token,
        httponly=True,
        secure=secure,
        samesite="lax",
        max_age=int(settings.access_token_lifetime.total_seconds()),
        path="/",
    )
    response.set_cookie(
        REFRESH_TOKEN_COOKIE,
        result.tokens.refresh_token,
        httponly=True,
        secure=secure,
        samesite="lax",
        max_age=int(settings.refresh_token_lifetime.total_seconds()),
        path="/",
    )


def _clear_auth_cookies(response: Response, settings: Optional[Settings] = None) -> None:
    secure = bool(settings and settings.is_production)
    for name in (REFRESH_TOKEN_COOKIE, ACCESS_TOKEN_COOKIE):
        response.delete_cookie(name, path="/", secure=secure, httponly=True, samesite="lax")


def _auth_response(result: AuthResult) -> AuthResponse:
    return AuthResponse(
        user=UserResponse.from_user(result.user),
        tokens=TokensResponse(
            access_token=result.tokens.access_token,
            refresh_token=result.tokens.refresh_token,
        ),
    )


@router.post("/login", response_model=AuthResponse)
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with email and password.

    Revokes the caller's previous session on the same device, opens a new
    one and sets the ``accessToken``/``refreshToken`` cookies.

    Raises:
        400: If the body is malformed
        401: If credentials are invalid (unknown emails included)
        403: If the account is banned or inactive
        429: If too many failed attempts were made for this email or IP
    """
    runtime = get_runtime()
    result = await runtime.auth.login(body.email, body.password, client_info(request))
    _apply_auth_cookies(response, result, runtime.settings)
    return _auth_response(result)


@router.post("/register", response_model=AuthResponse, status_code=201)
async def register(body: RegisterRequest, request: Request, response: Response):
    """Create a password account and sign it in.

    Raises:
        400: If the body is malformed or the password is too weak
        409: If the email or username is already taken
    """
    runtime = get_runtime()
    result = await runtime.auth.register(
        body.email,
        body.password,
        client_info(request),
        username=body.username,
        display_name=body.display_name,
    )
    _apply_auth_cookies(response, result, runtime.settings)
    return _auth_response(result)


@router.post("/refresh", response_model=AuthResponse)
async def refresh_tokens(request: Request, response: Response):
    """Rotate the refresh token and mint a new access token.

    The token is read from the JSON body (``refreshToken``) when present and
    well-formed, otherwise from the ``refreshToken`` cookie.

    Raises:
        401: If the token is missing, invalid, or no longer current for its session
        403: If the account is banned or inactive
    """
    runtime = get_runtime()
    token: Optional[str] = None
    raw = await request.body()
    if raw:
        try:
            token = TokenRefreshRequest.model_validate_json(raw).refresh_token
        except PydanticValidationError:
            token = None
    token = token or request.cookies.get(REFRESH_TOKEN_COOKIE)
    result = await runtime.auth.refresh(token)
    _apply_auth_cookies(response, result, runtime.settings)
    return _auth_response(result)


@router.post("/logout", response_model=MessageResponse)
async def logout(request: Request, response: Response):
    """Revoke the current session. Always succeeds and always clears the cookies."""
    message = "Logged out successfully"
    settings = None
    try:
        runtime = get_runtime()
        settings = runtime.settings
        await runtime.auth.logout(request.cookies.get(REFRESH_TOKEN_COOKIE))
    except Exception as exc:
        logger.error("logout_failed", error=str(exc))
        message = "Logged out"
    _clear_auth_cookies(response, settings)
    return MessageResponse(message=message)


@router.get("/me", response_model=MeResponse)
async def me(request: Request, authorization: Optional[str] = Header(None)):
    """Return the signed-in user. The bearer header wins over the cookie.

    Raises:
        401: If the access token is missing or invalid
        403: If the account is banned or inactive
        404: If the user no longer exists
    """
    runtime = get_runtime()
    token = extract_bearer(authorization) or request.cookies.get(ACCESS_TOKEN_COOKIE)
    user = await runtime.auth.me(token)
    return MeResponse(user=UserResponse.from_user(user))


@router.get("/oauth/google/start")
async def oauth_start(
    return_to: Optional[str] = Query(None, alias="from", max_length=2048),
):
    """Redirect the browser to Google's consent screen."""
    runtime = get_runtime()
    state = secrets.token_urlsafe(32)
    url = runtime.oauth.authorization_url(state)
    redirect = RedirectResponse(url, status_code=307)
    secure = runtime.settings.is_production
    redirect.set_cookie(
        OAUTH_STATE_COOKIE, state, httponly=True, secure=secure, samesite="lax", max_age=600, path="/"
    )
    redirect.set_cookie(
        OAUTH_RETURN_COOKIE,
        safe_return_path(return_to),
        httponly=True,
        secure=secure,
        samesite="lax",
        max_age=600,
        path="/",
    )
    return redirect


@router.get("/oauth/google/callback")
async def oauth_callback(
    request: Request,
    code: Optional[str] = Query(None, max_length=2048),
    state: Optional[str] = Query(None, max_length=256),
    error: Optional[str] = Query(None, max_length=256),
):
    """Finish Google sign-in and set the OAuth session cookie.

    Failures never surface as JSON: the browser is sent back to the login
    page with an ``error`` query parameter.
    """
    runtime = get_runtime()
    settings = runtime.settings
    login_url = f"{settings.login_path}?error="
    expected_state = request.cookies.get(OAUTH_STATE_COOKIE)

    if error or not code or not state or not expected_state:
        target = login_url + "OAuthCallback"
    elif not secrets.compare_digest(state, expected_state):
        logger.warning("oauth_state_mismatch")
        target = login_url + "OAuthCallback"
    else:
        try:
            _, session_token = await runtime.oauth.complete(code)
        except ServiceError as exc:
            logger.warning("oauth_sign_in_refused", error_code=exc.error_code)
            target = login_url + "AccessDenied"
        else:
            target = safe_return_path(request.cookies.get(OAUTH_RETURN_COOKIE))
            redirect = RedirectResponse(target, status_code=303)
            redirect.set_cookie(
                settings.oauth_session_cookie,
                session_token,
                httponly=True,
                secure=settings.is_production,
                samesite="lax",
                max_age=settings.oauth_session_max_age_days * 24 * 60 * 60,
                path="/",
            )
            redirect.delete_cookie(OAUTH_STATE_COOKIE, path="/")
            redirect.delete_cookie(OAUTH_RETURN_COOKIE, path="/")
            return redirect

    redirect = RedirectResponse(target, status_code=303)
    redirect.delete_cookie(OAUTH_STATE_COOKIE, path="/")
    redirect.delete_cookie(OAUTH_RETURN_COOKIE, path="/")
    return redirect


@router.post("/oauth/signout", response_model=MessageResponse)
async def oauth_signout(response: Response):
    """Drop the OAuth session cookie."""
    settings = get_runtime().settings
    response.delete_cookie(settings.oauth_session_cookie, path="/")
    response.delete_cookie(f"__Secure-{settings.oauth_session_cookie}", path="/", secure=True)
    return MessageResponse(message="Signed out")


def _identity_header(request: Request, name: str) -> Optional[str]:
    # Starlette decodes header bytes as latin-1; the middleware writes UTF-8
    value = request.headers.get(name)
    if value is None:
        return None
    return value.encode("latin-1").decode("utf-8", "replace")


def get_identity(request: Request) -> IdentityResponse:
    """Identity injected by the identity middleware for downstream routes."""
    user_id = _identity_header(request, USER_ID_HEADER)
    email = _identity_header(request, USER_EMAIL_HEADER)
    if not user_id or not email:
        raise _http_error("INVALID_TOKEN", "authentication required", status_code=401)
    return IdentityResponse(user_id=user_id, email=email)


@user_router.get("/identity", response_model=IdentityResponse)
async def identity(request: Request):
    """Echo the identity the middleware resolved for this request."""
    return get_identity(request)
