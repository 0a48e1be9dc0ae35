from __future__ import annotations

import contextlib
import json
import threading
import uuid
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from wordnest.logging import get_logger
from wordnest.storage.common import ensure_utc
from wordnest.storage.errors import ConstraintViolation
from wordnest.storage.models import AuthAttempt, Session, User, utcnow

_USER_COLUMNS = (
    "id, email, username, password_hash, display_name, avatar_url, email_verified, "
    "is_active, is_banned, ban_reason, banned_until, metadata, created_at, updated_at, "
    "last_login_at, deleted_at"
)
_SESSION_COLUMNS = (
    "id, user_id, refresh_token, created_at, expires_at, last_activity_at, user_agent, "
    "ip_addr, revoked_at, revoked_reason"
)
_UPDATABLE_USER_COLUMNS = frozenset(
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

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL,
        username TEXT,
        password_hash TEXT,
        display_name TEXT,
        avatar_url TEXT,
        email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        is_banned BOOLEAN NOT NULL DEFAULT FALSE,
        ban_reason TEXT,
        banned_until TIMESTAMPTZ,
        metadata JSONB,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_login_at TIMESTAMPTZ,
        deleted_at TIMESTAMPTZ,
        CONSTRAINT app_user_email_key UNIQUE (email),
        CONSTRAINT app_user_username_key UNIQUE (username)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        refresh_token TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        expires_at TIMESTAMPTZ NOT NULL,
        last_activity_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        user_agent TEXT,
        ip_addr TEXT,
        revoked_at TIMESTAMPTZ,
        revoked_reason TEXT
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS auth_session_refresh_token_idx ON auth_session (refresh_token)",
    "CREATE INDEX IF NOT EXISTS auth_session_user_idx ON auth_session (user_id, user_agent)",
    """
    CREATE TABLE IF NOT EXISTS auth_attempt (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL,
        user_id TEXT,
        success BOOLEAN NOT NULL,
        failure_reason TEXT,
        ip_addr TEXT,
        user_agent TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_attempt_email_idx ON auth_attempt (email, created_at)",
    "CREATE INDEX IF NOT EXISTS auth_attempt_ip_idx ON auth_attempt (ip_addr, created_at)",
)


def _constraint_field(exc: errors.UniqueViolation) -> str:
    diag = getattr(exc, "diag", None)
    name = getattr(diag, "constraint_name", None) or str(exc)
    if "username" in name:
        return "username"
    if "email" in name:
        return "email"
    return "id"


class PostgresStore:
    """Postgres-backed auth store.

    Calls made inside :meth:`transaction` share one pooled connection and
    commit together; calls made outside it each run in their own transaction.
    """

    def __init__(self, dsn: str, *, ensure_schema: bool = True) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._local = threading.local()
        if ensure_schema:
            self._ensure_schema()

    def _connect(self):
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            return contextlib.nullcontext(conn)
        return self.pool.connection()

    @contextlib.contextmanager
    def transaction(self) -> Iterator["PostgresStore"]:
        """Bind one connection to the calling thread for the enclosed writes."""
        if getattr(self._local, "conn", None) is not None:
            yield self
            return
        with self.pool.connection() as conn:
            self._local.conn = conn
            try:
                yield self
            finally:
                self._local.conn = None

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in SCHEMA_STATEMENTS:
                conn.execute(statement)

    def close(self) -> None:
        self.pool.close()

    # -- row mapping ------------------------------------------------------

    @staticmethod
    def _row_to_user(row: Dict[str, Any]) -> User:
        data = dict(row)
        for key in ("banned_until", "created_at", "updated_at", "last_login_at", "deleted_at"):
            if data.get(key) is not None:
                data[key] = ensure_utc(data[key])
        if isinstance(data.get("metadata"), str):
            data["metadata"] = json.loads(data["metadata"])
        return User(**data)

    @staticmethod
    def _row_to_session(row: Dict[str, Any]) -> Session:
        data = dict(row)
        for key in ("created_at", "expires_at", "last_activity_at", "revoked_at"):
            if data.get(key) is not None:
                data[key] = ensure_utc(data[key])
        return Session(**data)

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
        now = utcnow()
        user = User(
            id=str(uuid.uuid4()),
            email=email,
            username=username,
            password_hash=password_hash,
            display_name=display_name,
            avatar_url=avatar_url,
            email_verified=email_verified,
            is_active=is_active,
            metadata=dict(metadata) if metadata else {},
            created_at=now,
            updated_at=now,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (id, email, username, password_hash, display_name,
                        avatar_url, email_verified, is_active, metadata, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user.id,
                        user.email,
                        user.username,
                        user.password_hash,
                        user.display_name,
                        user.avatar_url,
                        user.email_verified,
                        user.is_active,
                        json.dumps(user.metadata),
                        now,
                        now,
                    ),
                )
        except errors.UniqueViolation as exc:
            field = _constraint_field(exc)
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM app_user WHERE email = %s", (email,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM app_user WHERE username = %s", (username,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def update_user(self, user_id: str, **fields) -> Optional[User]:
        unknown = set(fields) - _UPDATABLE_USER_COLUMNS
        if unknown:
            raise ValueError(f"cannot update user fields: {sorted(unknown)}")
        if "metadata" in fields and fields["metadata"] is not None:
            fields["metadata"] = json.dumps(fields["metadata"])
        assignments = ", ".join(f"{column} = %s" for column in fields)
        params = list(fields.values())
        set_clause = f"{assignments}, updated_at = now()" if assignments else "updated_at = now()"
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"UPDATE app_user SET {set_clause} WHERE id = %s RETURNING {_USER_COLUMNS}",
                    (*params, user_id),
                ).fetchone()
        except errors.UniqueViolation as exc:
            field = _constraint_field(exc)
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        return self._row_to_user(row) if row else None

    def touch_last_login(self, user_id: str, at: Optional[datetime] = None) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE app_user SET last_login_at = %s WHERE id = %s",
                (at or utcnow(), user_id),
            )

    # -- sessions ---------------------------------------------------------

    def create_session(self, session: Session) -> Session:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session (id, user_id, refresh_token, created_at, expires_at,
                        last_activity_at, user_agent, ip_addr)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        session.id,
                        session.user_id,
                        session.refresh_token,
                        session.created_at,
                        session.expires_at,
                        session.last_activity_at,
                        session.user_agent,
                        session.ip_addr,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": session.user_id})
        except errors.UniqueViolation:
            raise ConstraintViolation("session already exists", {"field": "id"})
        return session

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_SESSION_COLUMNS} FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        return self._row_to_session(row) if row else None

    def list_user_sessions(self, user_id: str) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {_SESSION_COLUMNS} FROM auth_session WHERE user_id = %s ORDER BY created_at",
                (user_id,),
            ).fetchall()
        return [self._row_to_session(row) for row in rows]

    def find_active_session(
        self, user_id: str, refresh_token: str, now: Optional[datetime] = None
    ) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                SELECT {_SESSION_COLUMNS} FROM auth_session
                WHERE user_id = %s AND refresh_token = %s
                  AND revoked_at IS NULL AND expires_at > %s
                """,
                (user_id, refresh_token, now or utcnow()),
            ).fetchone()
        return self._row_to_session(row) if row else None

    def rotate_session_token(
        self,
        session_id: str,
        expected_token: str,
        new_token: str,
        expires_at: datetime,
        now: Optional[datetime] = None,
    ) -> bool:
        now = now or utcnow()
        # Row lock taken by UPDATE serializes racing rotations; the loser
        # re-evaluates the predicate against the committed token and matches nothing.
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_session
                SET refresh_token = %s, expires_at = %s, last_activity_at = %s
                WHERE id = %s AND refresh_token = %s
                  AND revoked_at IS NULL AND expires_at > %s
                RETURNING id
                """,
                (new_token, expires_at, now, session_id, expected_token, now),
            ).fetchone()
        return row is not None

    def revoke_session(self, session_id: str, reason: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_session SET revoked_at = now(), revoked_reason = %s
                WHERE id = %s AND revoked_at IS NULL
                RETURNING id
                """,
                (reason, session_id),
            ).fetchone()
        return row is not None

    def revoke_device_sessions(
        self, user_id: str, user_agent: Optional[str], reason: str
    ) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE auth_session SET revoked_at = now(), revoked_reason = %s
                WHERE user_id = %s AND user_agent IS NOT DISTINCT FROM %s
                  AND revoked_at IS NULL
                """,
                (reason, user_id, user_agent),
            )
            return cur.rowcount or 0

    # -- auth attempts ----------------------------------------------------

    def record_auth_attempt(self, attempt: AuthAttempt) -> AuthAttempt:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO auth_attempt (id, email, user_id, success, failure_reason,
                    ip_addr, user_agent, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    attempt.id,
                    attempt.email,
                    attempt.user_id,
                    attempt.success,
                    attempt.failure_reason,
                    attempt.ip_addr,
                    attempt.user_agent,
                    attempt.created_at,
                ),
            )
        return attempt

    def count_failed_attempts(
        self, email: str, ip_addr: Optional[str], since: datetime
    ) -> int:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT count(*) AS failures FROM auth_attempt
                WHERE success = FALSE AND created_at >= %s
                  AND (email = %s OR (%s::text IS NOT NULL AND ip_addr = %s))
                """,
                (since, email, ip_addr, ip_addr),
            ).fetchone()
        return int(row["failures"]) if row else 0

    def list_auth_attempts(self, email: Optional[str] = None) -> List[AuthAttempt]:
        with self._connect() as conn:
            if email is None:
                rows = conn.execute(
                    "SELECT * FROM auth_attempt ORDER BY created_at"
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM auth_attempt WHERE email = %s ORDER BY created_at",
                    (email,),
                ).fetchall()
        return [
            AuthAttempt(**{**row, "created_at": ensure_utc(row["created_at"])})
            for row in rows
        ]
