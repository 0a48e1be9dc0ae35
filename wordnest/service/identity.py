from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, List, Mapping, Optional, Protocol

from wordnest.logging import get_logger
from wordnest.service.errors import InvalidTokenError
from wordnest.service.oauth_session import OAuthSessionCodec
from wordnest.service.tokens import TokenService

logger = get_logger(__name__)

ACCESS_TOKEN_COOKIE = "accessToken"
REFRESH_TOKEN_COOKIE = "refreshToken"


@dataclass(frozen=True)
class Identity:
    user_id: str
    email: str
    source: str


class CredentialCarrier(Protocol):
    """Anything exposing request headers and cookies (e.g. a Starlette Request)."""

    @property
    def headers(self) -> Mapping[str, str]:
        ...

    @property
    def cookies(self) -> Mapping[str, str]:
        ...


class IdentityResolver(Protocol):
    name: str

    def try_resolve(self, request: CredentialCarrier) -> Optional[Identity]:
        ...


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    lower = header.lower()
    if not lower.startswith("bearer "):
        return None
    token = header.split(" ", 1)[1].strip()
    return token or None


class OAuthSessionResolver:
    """Resolves identity from the encrypted OAuth session cookie."""

    name = "oauth_session"

    def __init__(self, codec: OAuthSessionCodec, cookie_name: str) -> None:
        self.codec = codec
        self.cookie_names = (cookie_name, f"__Secure-{cookie_name}")

    def try_resolve(self, request: CredentialCarrier) -> Optional[Identity]:
        for cookie_name in self.cookie_names:
            token = request.cookies.get(cookie_name)
            if not token:
                continue
            claims = self.codec.decode(token)
            if not claims:
                continue
            subject, email = claims.get("sub"), claims.get("email")
            if isinstance(subject, str) and subject and isinstance(email, str) and email:
                return Identity(user_id=subject, email=email, source=self.name)
        return None


class AccessTokenResolver:
    """Resolves identity from a self-issued access token; the header wins over the cookie."""

    name = "access_token"

    def __init__(self, tokens: TokenService, cookie_name: str = ACCESS_TOKEN_COOKIE) -> None:
        self.tokens = tokens
        self.cookie_name = cookie_name

    def try_resolve(self, request: CredentialCarrier) -> Optional[Identity]:
        token = extract_bearer(request.headers.get("authorization")) or request.cookies.get(
            self.cookie_name
        )
        if not token:
            return None
        try:
            claims = self.tokens.verify_access(token)
        except InvalidTokenError:
            return None
        return Identity(user_id=claims.user_id, email=claims.email, source=self.name)


class IdentityResolverChain:
    """Tries each resolver in order and returns the first identity found."""

    def __init__(self, resolvers: Iterable[IdentityResolver]) -> None:
        self.resolvers: List[IdentityResolver] = list(resolvers)

    def resolve(self, request: CredentialCarrier) -> Optional[Identity]:
        for resolver in self.resolvers:
            try:
                identity = resolver.try_resolve(request)
            except Exception as exc:
                logger.error(
                    "identity_resolver_failed", resolver=resolver.name, error=str(exc)
                )
                continue
            if identity:
                return identity
        return None
