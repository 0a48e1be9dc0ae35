"""Serialization helpers shared by the storage backends."""

from __future__ import annotations

from dataclasses import asdict
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from wordnest.storage.models import AuthAttempt, Session, User

_USER_DATETIMES = ("banned_until", "created_at", "updated_at", "last_login_at", "deleted_at")
_SESSION_DATETIMES = ("created_at", "expires_at", "last_activity_at", "revoked_at")
_ATTEMPT_DATETIMES = ("created_at",)


def serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    return ensure_utc(dt).isoformat()


def deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
    if raw is None:
        return None
    return ensure_utc(datetime.fromisoformat(raw))


def ensure_utc(dt: datetime) -> datetime:
    """Treat naive timestamps (e.g. from TIMESTAMP columns) as UTC."""
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def _dump(obj: Any, datetime_fields: tuple[str, ...]) -> Dict[str, Any]:
    data = asdict(obj)
    for key in datetime_fields:
        data[key] = serialize_datetime(data.get(key))
    return data


def _load(data: Dict[str, Any], datetime_fields: tuple[str, ...]) -> Dict[str, Any]:
    values = dict(data)
    for key in datetime_fields:
        if key in values:
            values[key] = deserialize_datetime(values[key])
    return values


def user_to_dict(user: User) -> Dict[str, Any]:
    return _dump(user, _USER_DATETIMES)


def user_from_dict(data: Dict[str, Any]) -> User:
    return User(**_load(data, _USER_DATETIMES))


def session_to_dict(session: Session) -> Dict[str, Any]:
    return _dump(session, _SESSION_DATETIMES)


def session_from_dict(data: Dict[str, Any]) -> Session:
    return Session(**_load(data, _SESSION_DATETIMES))


def attempt_to_dict(attempt: AuthAttempt) -> Dict[str, Any]:
    return _dump(attempt, _ATTEMPT_DATETIMES)


def attempt_from_dict(data: Dict[str, Any]) -> AuthAttempt:
    return AuthAttempt(**_load(data, _ATTEMPT_DATETIMES))
