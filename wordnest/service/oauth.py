from __future__ import annotations

from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlencode

import httpx

from wordnest.config import Settings
from wordnest.logging import get_logger
from wordnest.service.errors import (
    AuthErrorCode,
    ServiceError,
    UserBannedError,
    UserInactiveError,
)
from wordnest.service.oauth_session import OAuthSessionCodec
from wordnest.storage.errors import ConstraintViolation
from wordnest.storage.models import User, utcnow

logger = get_logger(__name__)

GOOGLE_PROVIDER = {
    "auth_url": "https://accounts.google.com/o/oauth2/v2/auth",
    "token_url": "https://oauth2.googleapis.com/token",
    "userinfo_url": "https://www.googleapis.com/oauth2/v2/userinfo",
    "scope": "openid email profile",
}


class OAuthError(ServiceError):
    """The provider round-trip failed or returned an unusable identity."""
    status_code = 401
    error_code = AuthErrorCode.OAUTH_FAILED.value


@dataclass(frozen=True)
class OAuthProfile:
    provider_uid: str
    email: str
    name: Optional[str] = None
    picture: Optional[str] = None


class OAuthService:
    """Google sign-in that ends in an encrypted OAuth session cookie."""

    def __init__(
        self,
        store,
        codec: OAuthSessionCodec,
        settings: Settings,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.store = store
        self.codec = codec
        self.settings = settings
        self._transport = transport
        self.logger = logger

    @property
    def configured(self) -> bool:
        return bool(
            self.settings.oauth_google_client_id
            and self.settings.oauth_google_client_secret
            and self.settings.oauth_redirect_uri
        )

    def authorization_url(self, state: str) -> str:
        if not self.configured:
            self.logger.warning("oauth_not_configured", provider="google")
            raise OAuthError("Google sign-in is not configured")
        params = {
            "client_id": self.settings.oauth_google_client_id,
            "redirect_uri": self.settings.oauth_redirect_uri,
            "response_type": "code",
            "scope": GOOGLE_PROVIDER["scope"],
            "state": state,
            "prompt": "select_account",
        }
        return f"{GOOGLE_PROVIDER['auth_url']}?{urlencode(params)}"

    async def exchange_code(self, code: str) -> OAuthProfile:
        """Swap an authorization code for the caller's Google profile."""
        if not self.configured:
            raise OAuthError("Google sign-in is not configured")
        try:
            async with httpx.AsyncClient(
                timeout=self.settings.client_timeout_seconds,
                follow_redirects=False,
                transport=self._transport,
            ) as client:
                token_response = await client.post(
                    GOOGLE_PROVIDER["token_url"],
                    data={
                        "client_id": self.settings.oauth_google_client_id,
                        "client_secret": self.settings.oauth_google_client_secret,
                        "code": code,
                        "redirect_uri": self.settings.oauth_redirect_uri,
                        "grant_type": "authorization_code",
                    },
                    headers={"Accept": "application/json"},
                )
                token_response.raise_for_status()
                access_token = token_response.json().get("access_token")
                if not access_token:
                    self.logger.error("oauth_no_access_token", provider="google")
                    raise OAuthError("OAuth provider returned no access token")

                userinfo_response = await client.get(
                    GOOGLE_PROVIDER["userinfo_url"],
                    headers={"Authorization": f"Bearer {access_token}"},
                )
                userinfo_response.raise_for_status()
                userinfo = userinfo_response.json()
        except httpx.HTTPStatusError as exc:
            self.logger.error(
                "oauth_exchange_http_error",
                provider="google",
                status_code=exc.response.status_code,
            )
            raise OAuthError("OAuth code exchange failed") from exc
        except httpx.HTTPError as exc:
            self.logger.error("oauth_exchange_error", provider="google", error=str(exc))
            raise OAuthError("OAuth provider unreachable") from exc
        except ValueError as exc:
            self.logger.error("oauth_response_parse_error", provider="google", error=str(exc))
            raise OAuthError("OAuth provider returned invalid JSON") from exc

        if not isinstance(userinfo, dict) or not userinfo.get("email"):
            self.logger.error("oauth_identity_missing_email", provider="google")
            raise OAuthError("OAuth provider returned no email")
        return OAuthProfile(
            provider_uid=str(userinfo.get("id") or ""),
            email=str(userinfo["email"]).strip().lower(),
            name=userinfo.get("name"),
            picture=userinfo.get("picture"),
        )

    def sign_in(self, profile: OAuthProfile) -> tuple[User, str]:
        """Find or create the account for ``profile`` and mint its session token.

        Banned and inactive accounts are refused. New accounts have no
        password hash, so they can never use the password login path.
        """
        user = self.store.get_user_by_email(profile.email)
        if user is None:
            try:
                user = self.store.create_user(
                    profile.email,
                    display_name=profile.name,
                    avatar_url=profile.picture,
                    email_verified=True,
                )
            except ConstraintViolation:
                user = self.store.get_user_by_email(profile.email)
                if user is None:
                    raise
            self.logger.info("oauth_user_created", user_id=user.id, provider="google")
        now = utcnow()
        if user.ban_in_force(now):
            raise UserBannedError("Your account has been banned")
        if not user.is_active or user.deleted_at is not None:
            raise UserInactiveError("Your account is inactive")

        self.store.touch_last_login(user.id, now)
        token = self.codec.encode(
            subject=user.id,
            email=user.email,
            name=user.display_name or profile.name,
            picture=user.avatar_url or profile.picture,
        )
        self.logger.info("oauth_sign_in_success", user_id=user.id, provider="google")
        return user, token

    async def complete(self, code: str) -> tuple[User, str]:
        profile = await self.exchange_code(code)
        return self.sign_in(profile)
