from __future__ import annotations

import asyncio
import inspect
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, Optional, Union

import httpx

from wordnest.client.errors import AuthClientError
from wordnest.client.state import AuthState, AuthStateContainer
from wordnest.config import parse_duration
from wordnest.logging import get_logger
from wordnest.service.errors import AuthErrorCode

logger = get_logger(__name__)

LOGIN_URL = "/auth/login"
REGISTER_URL = "/auth/register"
REFRESH_URL = "/auth/refresh"
LOGOUT_URL = "/auth/logout"
ME_URL = "/auth/me"

DEFAULT_REFRESH_INTERVAL = timedelta(minutes=14)
REFRESH_MARGIN = timedelta(minutes=1)

UnauthenticatedHook = Callable[[str], Union[None, Awaitable[None]]]


def refresh_interval(access_lifetime: Union[str, timedelta, None]) -> float:
    """Seconds between silent refreshes: one minute before expiry, at least one minute apart."""
    if isinstance(access_lifetime, timedelta):
        lifetime: Optional[timedelta] = access_lifetime
    else:
        lifetime = parse_duration(access_lifetime, None)  # type: ignore[arg-type]
    if lifetime is None:
        return DEFAULT_REFRESH_INTERVAL.total_seconds()
    return max(lifetime - REFRESH_MARGIN, REFRESH_MARGIN).total_seconds()


def _consume_result(task: asyncio.Task) -> None:
    # Every waiter may have been cancelled; mark the outcome as retrieved
    if not task.cancelled():
        task.exception()


def _error_from_response(response: httpx.Response, default_code: str) -> AuthClientError:
    code, message = default_code, None
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict) and isinstance(body.get("error"), dict):
        code = body["error"].get("code") or default_code
        message = body["error"].get("message")
    return AuthClientError(code, message, status_code=response.status_code)


class AuthClient:
    """Client-side auth store bound to the wordnest HTTP API.

    Keeps ``container`` in sync with the server: login and register adopt
    the returned user and tokens, logout always clears, and concurrent
    refreshes share a single in-flight request. :meth:`request` retries a
    401 once after refreshing; if the refresh fails the state is cleared and
    ``on_unauthenticated`` is called with the login path.
    """

    def __init__(
        self,
        base_url: str = "http://localhost:3000/api",
        *,
        container: Optional[AuthStateContainer] = None,
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        access_lifetime: Union[str, timedelta, None] = "15m",
        on_unauthenticated: Optional[UnauthenticatedHook] = None,
        login_path: str = "/login",
    ) -> None:
        self.container = container or AuthStateContainer()
        self.login_path = login_path
        self.on_unauthenticated = on_unauthenticated
        self.refresh_interval = refresh_interval(access_lifetime)
        self._http = httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(timeout),
            transport=transport,
        )
        self._refresh_task: Optional[asyncio.Task] = None
        self._timer_task: Optional[asyncio.Task] = None
        self._unsubscribe = self.container.subscribe(self._sync_authorization_header)
        self._sync_authorization_header(self.container.state, AuthState())

    async def __aenter__(self) -> "AuthClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self.stop_refresh_timer()
        if self._refresh_task is not None:
            # Let an in-flight rotation land before the transport goes away
            await asyncio.gather(self._refresh_task, return_exceptions=True)
        self._unsubscribe()
        await self._http.aclose()

    @property
    def state(self) -> AuthState:
        return self.container.state

    def _sync_authorization_header(self, current: AuthState, previous: AuthState) -> None:
        if current.access_token:
            self._http.headers["Authorization"] = f"Bearer {current.access_token}"
        else:
            self._http.headers.pop("Authorization", None)

    def _adopt(self, body: Dict[str, Any]) -> None:
        self.container.set_authenticated(body["user"], body["tokens"])

    async def _submit(self, url: str, payload: Dict[str, Any], default_code: str) -> None:
        self.container.set_loading(True, clear_error=True)
        try:
            try:
                response = await self._http.post(url, json=payload)
            except httpx.HTTPError as exc:
                logger.warning("auth_request_failed", url=url, error=str(exc))
                error = AuthClientError(default_code)
            else:
                if response.is_success:
                    self._adopt(response.json())
                    return
                error = _error_from_response(response, default_code)
            self.container.set_error(error.code, error.message)
            raise error
        finally:
            self.container.set_loading(False)

    async def login(self, email: str, password: str) -> AuthState:
        await self._submit(
            LOGIN_URL,
            {"email": email, "password": password},
            AuthErrorCode.INVALID_CREDENTIALS.value,
        )
        return self.state

    async def register(
        self,
        email: str,
        password: str,
        confirm_password: str,
        *,
        username: Optional[str] = None,
        display_name: Optional[str] = None,
    ) -> AuthState:
        payload: Dict[str, Any] = {
            "email": email,
            "password": password,
            "confirmPassword": confirm_password,
        }
        if username is not None:
            payload["username"] = username
        if display_name is not None:
            payload["displayName"] = display_name
        await self._submit(REGISTER_URL, payload, AuthErrorCode.VALIDATION_ERROR.value)
        return self.state

    async def logout(self) -> None:
        self.container.set_loading(True)
        try:
            await self._http.post(LOGOUT_URL)
        except httpx.HTTPError as exc:
            logger.warning("logout_request_failed", error=str(exc))
        finally:
            self.container.clear()
            self.container.set_loading(False)

    async def refresh_token(self) -> None:
        """Rotate tokens; callers arriving mid-refresh await the same request."""
        if self._refresh_task is None:
            self._refresh_task = asyncio.create_task(self._do_refresh())
            self._refresh_task.add_done_callback(_consume_result)
        # A cancelled waiter must not cancel the refresh other callers share
        await asyncio.shield(self._refresh_task)

    async def _do_refresh(self) -> None:
        try:
            refresh = self.state.refresh_token
            if not refresh:
                self.container.clear()
                raise AuthClientError(
                    AuthErrorCode.INVALID_TOKEN.value, "No refresh token available"
                )
            self.container.set_refreshing(True)
            try:
                response = await self._http.post(REFRESH_URL, json={"refreshToken": refresh})
            except httpx.HTTPError as exc:
                logger.warning("token_refresh_request_failed", error=str(exc))
                error = AuthClientError(AuthErrorCode.INVALID_TOKEN.value)
            else:
                if response.is_success:
                    self._adopt(response.json())
                    return
                error = _error_from_response(response, AuthErrorCode.INVALID_TOKEN.value)
            self.container.clear()
            self.container.set_error(error.code)
            raise error
        finally:
            self.container.set_refreshing(False)
            self._refresh_task = None

    async def check_auth(self) -> None:
        """Confirm the stored access token with the server, refreshing once on 401."""
        if not self.state.access_token:
            self.container.clear()
            return
        self.container.set_loading(True)
        try:
            response = await self._http.get(ME_URL)
            if response.is_success:
                # A refresh may have rotated the tokens while /me was in flight
                if self.state.access_token:
                    self.container.confirm_user(response.json()["user"])
            elif response.status_code == 401 and self.state.refresh_token:
                try:
                    await self.refresh_token()
                except AuthClientError:
                    self.container.clear()
            else:
                self.container.clear()
        except httpx.HTTPError as exc:
            logger.warning("auth_check_failed", error=str(exc))
            self.container.clear()
        finally:
            self.container.set_loading(False)

    async def request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Send an API request, retrying once after a refresh when it returns 401."""
        response = await self._http.request(method, url, **kwargs)
        if response.status_code != 401 or url == REFRESH_URL:
            return response
        try:
            await self.refresh_token()
        except AuthClientError:
            self.container.clear()
            await self._notify_unauthenticated()
            return response
        access = self.state.access_token
        if not access:
            return response
        headers = dict(kwargs.pop("headers", None) or {})
        headers["Authorization"] = f"Bearer {access}"
        return await self._http.request(method, url, headers=headers, **kwargs)

    async def _notify_unauthenticated(self) -> None:
        if self.on_unauthenticated is None:
            return
        try:
            result = self.on_unauthenticated(self.login_path)
            if inspect.isawaitable(result):
                await result
        except Exception as exc:
            logger.error("unauthenticated_hook_failed", error=str(exc))

    def start_refresh_timer(self) -> None:
        """Refresh silently every ``refresh_interval`` seconds while signed in."""
        if self._timer_task is not None and not self._timer_task.done():
            self._timer_task.cancel()
        self._timer_task = asyncio.create_task(self._refresh_loop())

    async def stop_refresh_timer(self) -> None:
        task, self._timer_task = self._timer_task, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _refresh_loop(self) -> None:
        while self.state.is_authenticated:
            await asyncio.sleep(self.refresh_interval)
            if not self.state.is_authenticated:
                break
            try:
                await self.refresh_token()
            except AuthClientError as exc:
                logger.warning("scheduled_refresh_failed", error_code=exc.code)

    async def on_visibility_change(self, visible: bool) -> None:
        if visible and self.state.is_authenticated:
            await self.check_auth()
