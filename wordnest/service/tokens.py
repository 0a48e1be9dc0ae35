from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from wordnest.config import Settings
from wordnest.logging import get_logger
from wordnest.service.errors import InvalidTokenError

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"

_INVALID_MESSAGE = "invalid or expired token"


@dataclass(frozen=True)
class TokenClaims:
    user_id: str
    email: str
    issued_at: datetime
    expires_at: datetime
    token_id: str
    session_id: Optional[str] = None


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str

    def as_dict(self) -> dict[str, str]:
        return {"accessToken": self.access_token, "refreshToken": self.refresh_token}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class TokenService:
    """Issues and verifies HS256 access and refresh tokens.

    The two token types are signed with separate secrets and carry a
    ``token_type`` claim, so neither verifier accepts the other's tokens.
    Every verification failure raises the same :class:`InvalidTokenError`;
    the cause is only logged.
    """

    def __init__(
        self,
        *,
        access_secret: str,
        refresh_secret: str,
        access_lifetime: timedelta,
        refresh_lifetime: timedelta,
        issuer: str = "wordnest",
        audience: str = "wordnest-clients",
        leeway_seconds: int = 0,
        clock: Callable[[], datetime] = _now,
    ) -> None:
        if not access_secret or not refresh_secret:
            raise ValueError("token secrets must be non-empty")
        self._secrets = {ACCESS: access_secret, REFRESH: refresh_secret}
        self._lifetimes = {ACCESS: access_lifetime, REFRESH: refresh_lifetime}
        self.issuer = issuer
        self.audience = audience
        self.leeway_seconds = leeway_seconds
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs) -> "TokenService":
        return cls(
            access_secret=settings.jwt_secret,
            refresh_secret=settings.jwt_refresh_secret,
            access_lifetime=settings.access_token_lifetime,
            refresh_lifetime=settings.refresh_token_lifetime,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            leeway_seconds=settings.jwt_leeway_seconds,
            **kwargs,
        )

    @property
    def access_lifetime(self) -> timedelta:
        return self._lifetimes[ACCESS]

    @property
    def refresh_lifetime(self) -> timedelta:
        return self._lifetimes[REFRESH]

    def now(self) -> datetime:
        return self._clock()

    def _expiry(self, token_type: str, now: Optional[datetime]) -> datetime:
        issued = now or self._clock()
        # Whole seconds, matching the integer exp claim
        exp_ts = int((issued + self._lifetimes[token_type]).timestamp())
        return datetime.fromtimestamp(exp_ts, tz=timezone.utc)

    def refresh_expiry(self, now: Optional[datetime] = None) -> datetime:
        """Absolute expiry stamped on a Session row; equals the exp of a refresh token issued at ``now``."""
        return self._expiry(REFRESH, now)

    def access_expiry(self, now: Optional[datetime] = None) -> datetime:
        return self._expiry(ACCESS, now)

    def issue_access(
        self, user_id: str, email: str, *, now: Optional[datetime] = None
    ) -> str:
        return self._issue(ACCESS, {"sub": user_id, "email": email}, now)

    def issue_refresh(
        self,
        user_id: str,
        email: str,
        session_id: str,
        *,
        now: Optional[datetime] = None,
    ) -> str:
        return self._issue(
            REFRESH, {"sub": user_id, "email": email, "sid": session_id}, now
        )

    def issue_pair(
        self,
        user_id: str,
        email: str,
        session_id: str,
        *,
        now: Optional[datetime] = None,
    ) -> TokenPair:
        now = now or self._clock()
        return TokenPair(
            access_token=self.issue_access(user_id, email, now=now),
            refresh_token=self.issue_refresh(user_id, email, session_id, now=now),
        )

    def verify_access(self, token: Optional[str]) -> TokenClaims:
        return self._verify(ACCESS, token)

    def verify_refresh(self, token: Optional[str]) -> TokenClaims:
        claims = self._verify(REFRESH, token)
        if not claims.session_id:
            logger.warning("jwt_missing_session_claim")
            raise InvalidTokenError(_INVALID_MESSAGE)
        return claims

    def _issue(self, token_type: str, claims: dict[str, Any], now: Optional[datetime]) -> str:
        now = now or self._clock()
        payload = {
            "iss": self.issuer,
            "aud": self.audience,
            **claims,
            "token_type": token_type,
            "jti": str(uuid.uuid4()),
            "iat": int(now.timestamp()),
            "exp": int(self._expiry(token_type, now).timestamp()),
        }
        return self._encode_jwt(payload, self._secrets[token_type])

    def _encode_jwt(self, payload: dict[str, Any], secret: str) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        signature = hmac.new(
            secret.encode(), signing_input.encode(), hashlib.sha256
        ).digest()
        return f"{signing_input}.{_encode_segment(signature)}"

    def _verify(self, token_type: str, token: Optional[str]) -> TokenClaims:
        payload = self._decode_jwt(token, token_type)
        if payload is None:
            raise InvalidTokenError(_INVALID_MESSAGE)
        return TokenClaims(
            user_id=payload["sub"],
            email=payload["email"],
            session_id=payload.get("sid"),
            token_id=payload.get("jti", ""),
            issued_at=datetime.fromtimestamp(payload.get("iat", 0), tz=timezone.utc),
            expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
        )

    def _decode_jwt(self, token: Optional[str], token_type: str) -> Optional[dict[str, Any]]:
        if not token or not isinstance(token, str):
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            logger.info("jwt_malformed", token_type=token_type)
            return None

        try:
            header = json.loads(_decode_segment(header_b64))
            if not isinstance(header, dict) or header.get("alg") != "HS256":
                logger.warning("jwt_invalid_algorithm", token_type=token_type)
                return None
        except Exception:
            logger.warning("jwt_header_decode_failed", token_type=token_type)
            return None

        signing_input = f"{header_b64}.{payload_b64}"
        expected_sig = _encode_segment(
            hmac.new(
                self._secrets[token_type].encode(),
                signing_input.encode(),
                hashlib.sha256,
            ).digest()
        )
        if not hmac.compare_digest(expected_sig, sig_b64):
            logger.info("jwt_bad_signature", token_type=token_type)
            return None
        try:
            payload = json.loads(_decode_segment(payload_b64))
        except Exception as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("token_type") != token_type:
            return None
        if payload.get("iss") != self.issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            return None
        if not isinstance(payload.get("sub"), str) or not isinstance(payload.get("email"), str):
            return None
        try:
            exp_ts = float(payload["exp"])
            float(payload.get("iat", 0))
        except (KeyError, TypeError, ValueError):
            return None
        if exp_ts <= self._clock().timestamp() - self.leeway_seconds:
            logger.info("jwt_expired", token_type=token_type)
            return None
        return payload
