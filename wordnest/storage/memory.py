from __future__ import annotations

import contextlib
import copy
import json
import threading
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterator, List, Optional

from wordnest.logging import get_logger
from wordnest.storage.common import (
    attempt_from_dict,
    attempt_to_dict,
    session_from_dict,
    session_to_dict,
    user_from_dict,
    user_to_dict,
)
from wordnest.storage.errors import ConstraintViolation
from wordnest.storage.models import AuthAttempt, Session, User, utcnow

_MUTABLE_USER_FIELDS = frozenset(
    {
        "username",
        "password_hash",
        "display_name",
        "avatar_url",
        "email_verified",
        "is_active",
        "is_banned",
        "ban_reason",
        "banned_until",
        "metadata",
        "last_login_at",
        "deleted_at",
    }
)


class MemoryStore:
    """In-process store for development and tests.

    Every read and write runs under one re-entrant lock, so a compare-and-swap
    such as :meth:`rotate_session_token` is atomic across threads. Records are
    handed out as copies; callers change state only through store methods.
    """

    def __init__(self, fs_root: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.sessions: Dict[str, Session] = {}
        self.auth_attempts: List[AuthAttempt] = []
        # RLock so transaction() can wrap calls that take the lock again
        self._data_lock = threading.RLock()
        self._tx_depth = 0
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    # -- transactions -----------------------------------------------------

    @contextlib.contextmanager
    def transaction(self) -> Iterator["MemoryStore"]:
        """Apply the enclosed writes atomically; roll all of them back on error."""
        with self._data_lock:
            snapshot = (
                copy.deepcopy(self.users),
                copy.deepcopy(self.sessions),
                list(self.auth_attempts),
            )
            self._tx_depth += 1
            try:
                yield self
            except BaseException:
                self.users, self.sessions, self.auth_attempts = snapshot
                raise
            finally:
                self._tx_depth -= 1
            self._persist_state()

    # -- users ------------------------------------------------------------

    def create_user(
        self,
        email: str,
        *,
        username: Optional[str] = None,
        password_hash: Optional[str] = None,
        display_name: Optional[str] = None,
        avatar_url: Optional[str] = None,
        email_verified: bool = False,
        is_active: bool = True,
        metadata: Optional[Dict] = None,
    ) -> User:
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if username and any(
                existing.username == username for existing in self.users.values()
            ):
                raise ConstraintViolation(
                    "username already exists", {"field": "username"}
                )
            user = User.new(
                email,
                username=username,
                password_hash=password_hash,
                display_name=display_name,
                avatar_url=avatar_url,
                email_verified=email_verified,
                is_active=is_active,
                metadata=dict(metadata) if metadata else {},
            )
            self.users[user.id] = user
            self._persist_state()
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            for user in self.users.values():
                if user.email == email:
                    return replace(user)
            return None

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._data_lock:
            for user in self.users.values():
                if user.username and user.username == username:
                    return replace(user)
            return None

    def update_user(self, user_id: str, **fields) -> Optional[User]:
        unknown = set(fields) - _MUTABLE_USER_FIELDS
        if unknown:
            raise ValueError(f"cannot update user fields: {sorted(unknown)}")
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            username = fields.get("username")
            if username and any(
                other.username == username and other.id != user_id
                for other in self.users.values()
            ):
                raise ConstraintViolation(
                    "username already exists", {"field": "username"}
                )
            updated = replace(user, **fields, updated_at=utcnow())
            self.users[user_id] = updated
            self._persist_state()
            return replace(updated)

    def touch_last_login(self, user_id: str, at: Optional[datetime] = None) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return
            user.last_login_at = at or utcnow()
            self._persist_state()

    # -- sessions ---------------------------------------------------------

    def create_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.user_id not in self.users:
                raise ConstraintViolation(
                    "user does not exist", {"user_id": session.user_id}
                )
            if session.id in self.sessions:
                raise ConstraintViolation("session already exists", {"field": "id"})
            self.sessions[session.id] = replace(session)
            self._persist_state()
            return replace(session)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            return replace(sess) if sess else None

    def list_user_sessions(self, user_id: str) -> List[Session]:
        with self._data_lock:
            return [
                replace(sess)
                for sess in sorted(self.sessions.values(), key=lambda s: s.created_at)
                if sess.user_id == user_id
            ]

    def find_active_session(
        self, user_id: str, refresh_token: str, now: Optional[datetime] = None
    ) -> Optional[Session]:
        now = now or utcnow()
        with self._data_lock:
            for sess in self.sessions.values():
                if (
                    sess.user_id == user_id
                    and sess.refresh_token == refresh_token
                    and sess.is_active(now)
                ):
                    return replace(sess)
            return None

    def rotate_session_token(
        self,
        session_id: str,
        expected_token: str,
        new_token: str,
        expires_at: datetime,
        now: Optional[datetime] = None,
    ) -> bool:
        now = now or utcnow()
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or not sess.is_active(now) or sess.refresh_token != expected_token:
                return False
            sess.refresh_token = new_token
            sess.expires_at = expires_at
            sess.last_activity_at = now
            self._persist_state()
            return True

    def revoke_session(self, session_id: str, reason: str) -> bool:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or sess.revoked_at is not None:
                return False
            sess.revoked_at = utcnow()
            sess.revoked_reason = reason
            self._persist_state()
            return True

    def revoke_device_sessions(
        self, user_id: str, user_agent: Optional[str], reason: str
    ) -> int:
        with self._data_lock:
            now = utcnow()
            revoked = 0
            for sess in self.sessions.values():
                if (
                    sess.user_id == user_id
                    and sess.user_agent == user_agent
                    and sess.revoked_at is None
                ):
                    sess.revoked_at = now
                    sess.revoked_reason = reason
                    revoked += 1
            if revoked:
                self._persist_state()
            return revoked

    # -- auth attempts ----------------------------------------------------

    def record_auth_attempt(self, attempt: AuthAttempt) -> AuthAttempt:
        with self._data_lock:
            self.auth_attempts.append(replace(attempt))
            self._persist_state()
            return attempt

    def count_failed_attempts(
        self, email: str, ip_addr: Optional[str], since: datetime
    ) -> int:
        with self._data_lock:
            return sum(
                1
                for attempt in self.auth_attempts
                if not attempt.success
                and attempt.created_at >= since
                and (
                    attempt.email == email
                    or (ip_addr is not None and attempt.ip_addr == ip_addr)
                )
            )

    def list_auth_attempts(self, email: Optional[str] = None) -> List[AuthAttempt]:
        with self._data_lock:
            return [
                replace(attempt)
                for attempt in self.auth_attempts
                if email is None or attempt.email == email
            ]

    # -- persistence ------------------------------------------------------

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "auth_store.json"

    def _persist_state(self) -> None:
        if self.fs_root is None or self._tx_depth:
            return
        state = {
            "users": [user_to_dict(u) for u in self.users.values()],
            "sessions": [session_to_dict(s) for s in self.sessions.values()],
            "auth_attempts": [attempt_to_dict(a) for a in self.auth_attempts],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except Exception as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}")

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: user_from_dict(u) for u in data.get("users", [])}
        self.sessions = {
            s["id"]: session_from_dict(s) for s in data.get("sessions", [])
        }
        self.auth_attempts = [
            attempt_from_dict(a) for a in data.get("auth_attempts", [])
        ]
        self.logger.info(
            "memory_store_loaded",
            users=len(self.users),
            sessions=len(self.sessions),
        )
        return True
