from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RevokeReason(str, Enum):
    NEW_LOGIN = "NEW_LOGIN"
    LOGOUT = "LOGOUT"


class FailureReason(str, Enum):
    TOO_MANY_ATTEMPTS = "TOO_MANY_ATTEMPTS"
    USER_NOT_FOUND = "USER_NOT_FOUND"
    NO_PASSWORD = "NO_PASSWORD"
    INVALID_CREDENTIALS = "INVALID_CREDENTIALS"
    USER_BANNED = "USER_BANNED"
    USER_INACTIVE = "USER_INACTIVE"


@dataclass
class User:
    id: str
    email: str
    username: Optional[str] = None
    password_hash: Optional[str] = None
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None
    email_verified: bool = False
    is_active: bool = True
    is_banned: bool = False
    ban_reason: Optional[str] = None
    banned_until: Optional[datetime] = None
    metadata: Dict | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    last_login_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None

    @classmethod
    def new(cls, email: str, **fields) -> "User":
        return cls(id=str(uuid.uuid4()), email=email, **fields)

    def ban_in_force(self, now: Optional[datetime] = None) -> bool:
        """A ban without an expiry is permanent; an expired ban no longer applies."""
        if not self.is_banned:
            return False
        if self.banned_until is None:
            return True
        return self.banned_until > (now or utcnow())

    @property
    def has_password(self) -> bool:
        return bool(self.password_hash)


@dataclass
class Session:
    id: str
    user_id: str
    refresh_token: str
    created_at: datetime
    expires_at: datetime
    last_activity_at: datetime
    user_agent: Optional[str] = None
    ip_addr: Optional[str] = None
    revoked_at: Optional[datetime] = None
    revoked_reason: Optional[str] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        refresh_token: str,
        expires_at: datetime,
        user_agent: str | None = None,
        ip_addr: str | None = None,
        *,
        session_id: str | None = None,
    ) -> "Session":
        now = utcnow()
        return cls(
            id=session_id or str(uuid.uuid4()),
            user_id=user_id,
            refresh_token=refresh_token,
            created_at=now,
            expires_at=expires_at,
            last_activity_at=now,
            user_agent=user_agent,
            ip_addr=ip_addr,
        )

    def is_active(self, now: Optional[datetime] = None) -> bool:
        return self.revoked_at is None and self.expires_at > (now or utcnow())


@dataclass
class AuthAttempt:
    id: str
    email: str
    success: bool
    created_at: datetime = field(default_factory=utcnow)
    user_id: Optional[str] = None
    failure_reason: Optional[str] = None
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None

    @classmethod
    def new(
        cls,
        email: str,
        success: bool,
        *,
        user_id: str | None = None,
        failure_reason: FailureReason | str | None = None,
        ip_addr: str | None = None,
        user_agent: str | None = None,
    ) -> "AuthAttempt":
        if isinstance(failure_reason, FailureReason):
            failure_reason = failure_reason.value
        return cls(
            id=str(uuid.uuid4()),
            email=email,
            success=success,
            user_id=user_id,
            failure_reason=failure_reason,
            ip_addr=ip_addr,
            user_agent=user_agent,
        )
