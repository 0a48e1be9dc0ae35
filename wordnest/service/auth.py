from __future__ import annotations

import uuid
from dataclasses import dataclass, replace
from datetime import datetime
from typing import ContextManager, List, Optional, Protocol

from wordnest.logging import get_logger
from wordnest.service.errors import (
    EmailAlreadyExistsError,
    InvalidCredentialsError,
    InvalidTokenError,
    SessionNotFoundError,
    TooManyAttemptsError,
    UserBannedError,
    UserInactiveError,
    UserNotFoundError,
    UsernameAlreadyExistsError,
    ValidationError,
)
from wordnest.service.passwords import CredentialHasher
from wordnest.service.throttle import AttemptThrottle
from wordnest.service.tokens import TokenPair, TokenService
from wordnest.storage.errors import ConstraintViolation
from wordnest.storage.models import (
    AuthAttempt,
    FailureReason,
    RevokeReason,
    Session,
    User,
)

logger = get_logger(__name__)

INVALID_CREDENTIALS_MESSAGE = "Invalid email or password"


class AuthStore(Protocol):
    def transaction(self) -> ContextManager["AuthStore"]:
        ...

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
        metadata: Optional[dict] = None,
    ) -> User:
        ...

    def get_user(self, user_id: str) -> Optional[User]:
        ...

    def get_user_by_email(self, email: str) -> Optional[User]:
        ...

    def get_user_by_username(self, username: str) -> Optional[User]:
        ...

    def update_user(self, user_id: str, **fields) -> Optional[User]:
        ...

    def touch_last_login(self, user_id: str, at: Optional[datetime] = None) -> None:
        ...

    def create_session(self, session: Session) -> Session:
        ...

    def get_session(self, session_id: str) -> Optional[Session]:
        ...

    def list_user_sessions(self, user_id: str) -> List[Session]:
        ...

    def find_active_session(
        self, user_id: str, refresh_token: str, now: Optional[datetime] = None
    ) -> Optional[Session]:
        ...

    def rotate_session_token(
        self,
        session_id: str,
        expected_token: str,
        new_token: str,
        expires_at: datetime,
        now: Optional[datetime] = None,
    ) -> bool:
        ...

    def revoke_session(self, session_id: str, reason: str) -> bool:
        ...

    def revoke_device_sessions(
        self, user_id: str, user_agent: Optional[str], reason: str
    ) -> int:
        ...

    def record_auth_attempt(self, attempt: AuthAttempt) -> AuthAttempt:
        ...

    def count_failed_attempts(
        self, email: str, ip_addr: Optional[str], since: datetime
    ) -> int:
        ...


@dataclass(frozen=True)
class ClientInfo:
    """Origin metadata of an auth request."""

    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass
class AuthResult:
    user: User
    session: Session
    tokens: TokenPair


def normalize_email(email: str) -> str:
    return email.strip().lower()


class AuthService:
    """Login, registration, refresh, logout and identity lookup.

    Session rows are the revocation boundary: a refresh token that verifies
    is still refused unless it equals the value stored on an active session.
    """

    def __init__(
        self,
        store: AuthStore,
        tokens: TokenService,
        *,
        hasher: Optional[CredentialHasher] = None,
        throttle: Optional[AttemptThrottle] = None,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.hasher = hasher or CredentialHasher()
        self.throttle = throttle or AttemptThrottle(store)
        self.logger = logger

    # -- helpers ----------------------------------------------------------

    def _record_attempt(
        self,
        email: str,
        success: bool,
        client: ClientInfo,
        *,
        user_id: Optional[str] = None,
        reason: Optional[FailureReason] = None,
    ) -> None:
        """Write the audit row; a failed write never changes the auth outcome."""
        try:
            self.store.record_auth_attempt(
                AuthAttempt.new(
                    email,
                    success,
                    user_id=user_id,
                    failure_reason=reason,
                    ip_addr=client.ip_addr,
                    user_agent=client.user_agent,
                )
            )
        except Exception as exc:
            self.logger.warning(
                "auth_attempt_write_failed",
                email=email,
                success=success,
                error=str(exc),
            )

    def _ban_detail(self, user: User) -> dict:
        return {
            "reason": user.ban_reason,
            "bannedUntil": user.banned_until.isoformat() if user.banned_until else None,
        }

    def _ensure_usable(self, user: User, now: datetime) -> None:
        if user.ban_in_force(now):
            raise UserBannedError("Your account has been banned", detail=self._ban_detail(user))
        if not user.is_active or user.deleted_at is not None:
            raise UserInactiveError("Your account is inactive")

    def _open_session(
        self, tx: AuthStore, user: User, client: ClientInfo, now: datetime
    ) -> tuple[Session, TokenPair]:
        # The id is allocated up front so the refresh token can embed it and
        # the row is written once with its real token value.
        session_id = str(uuid.uuid4())
        pair = self.tokens.issue_pair(user.id, user.email, session_id, now=now)
        session = Session.new(
            user.id,
            pair.refresh_token,
            self.tokens.refresh_expiry(now),
            user_agent=client.user_agent,
            ip_addr=client.ip_addr,
            session_id=session_id,
        )
        return tx.create_session(session), pair

    # -- operations -------------------------------------------------------

    async def login(
        self, email: str, password: str, client: ClientInfo = ClientInfo()
    ) -> AuthResult:
        email = normalize_email(email)
        if not self.throttle.check_admission(email, client.ip_addr):
            self._record_attempt(
                email, False, client, reason=FailureReason.TOO_MANY_ATTEMPTS
            )
            raise TooManyAttemptsError(
                "Too many login attempts. Please try again later.",
                detail={"windowMinutes": int(self.throttle.window.total_seconds() // 60)},
            )

        user = self.store.get_user_by_email(email)
        if not user or user.deleted_at is not None:
            self._record_attempt(email, False, client, reason=FailureReason.USER_NOT_FOUND)
            self.logger.info("auth_login_unknown_email", email=email)
            raise InvalidCredentialsError(INVALID_CREDENTIALS_MESSAGE)

        if not user.has_password:
            self._record_attempt(
                email, False, client, user_id=user.id, reason=FailureReason.NO_PASSWORD
            )
            self.logger.info("auth_login_passwordless_account", user_id=user.id)
            raise InvalidCredentialsError(INVALID_CREDENTIALS_MESSAGE)

        if not self.hasher.verify(password, user.password_hash):
            self._record_attempt(
                email,
                False,
                client,
                user_id=user.id,
                reason=FailureReason.INVALID_CREDENTIALS,
            )
            self.logger.info("auth_login_bad_password", user_id=user.id)
            raise InvalidCredentialsError(INVALID_CREDENTIALS_MESSAGE)

        now = self.tokens.now()
        if user.ban_in_force(now):
            self._record_attempt(
                email, False, client, user_id=user.id, reason=FailureReason.USER_BANNED
            )
            raise UserBannedError("Your account has been banned", detail=self._ban_detail(user))
        if not user.is_active:
            self._record_attempt(
                email, False, client, user_id=user.id, reason=FailureReason.USER_INACTIVE
            )
            raise UserInactiveError("Your account is inactive")

        with self.store.transaction() as tx:
            revoked = tx.revoke_device_sessions(
                user.id, client.user_agent, RevokeReason.NEW_LOGIN.value
            )
            session, pair = self._open_session(tx, user, client, now)
            tx.touch_last_login(user.id, now)
            if self.hasher.needs_rehash(user.password_hash):
                tx.update_user(user.id, password_hash=self.hasher.hash(password))
        self._record_attempt(email, True, client, user_id=user.id)
        self.logger.info(
            "auth_login_success",
            user_id=user.id,
            session_id=session.id,
            revoked_sessions=revoked,
        )
        return AuthResult(user=replace(user, last_login_at=now), session=session, tokens=pair)

    async def register(
        self,
        email: str,
        password: str,
        client: ClientInfo = ClientInfo(),
        *,
        username: Optional[str] = None,
        display_name: Optional[str] = None,
    ) -> AuthResult:
        email = normalize_email(email)
        report = self.hasher.validate_strength(password)
        if not report.is_valid:
            raise ValidationError(
                "Password does not meet requirements",
                detail={"password": report.errors},
            )
        if self.store.get_user_by_email(email):
            raise EmailAlreadyExistsError("User with this email already exists")
        if username and self.store.get_user_by_username(username):
            raise UsernameAlreadyExistsError("Username is already taken")

        password_hash = self.hasher.hash(password)
        now = self.tokens.now()
        try:
            with self.store.transaction() as tx:
                user = tx.create_user(
                    email,
                    username=username,
                    password_hash=password_hash,
                    display_name=display_name,
                )
                session, pair = self._open_session(tx, user, client, now)
        except ConstraintViolation as exc:
            # Lost a race with a concurrent registration
            if exc.field == "username":
                raise UsernameAlreadyExistsError("Username is already taken")
            raise EmailAlreadyExistsError("User with this email already exists")
        self._record_attempt(email, True, client, user_id=user.id)
        self.logger.info("auth_register_success", user_id=user.id, session_id=session.id)
        return AuthResult(user=user, session=session, tokens=pair)

    async def refresh(self, refresh_token: Optional[str]) -> AuthResult:
        if not refresh_token:
            raise InvalidTokenError("Refresh token is required")
        claims = self.tokens.verify_refresh(refresh_token)
        now = self.tokens.now()

        session = self.store.find_active_session(claims.user_id, refresh_token, now)
        if not session or session.id != claims.session_id:
            self.logger.info(
                "refresh_session_not_found",
                user_id=claims.user_id,
                session_id=claims.session_id,
            )
            raise SessionNotFoundError("Session not found or expired")

        user = self.store.get_user(claims.user_id)
        if not user:
            raise SessionNotFoundError("Session not found or expired")
        self._ensure_usable(user, now)

        pair = self.tokens.issue_pair(user.id, user.email, session.id, now=now)
        expires_at = self.tokens.refresh_expiry(now)
        with self.store.transaction() as tx:
            rotated = tx.rotate_session_token(
                session.id, refresh_token, pair.refresh_token, expires_at, now
            )
            if not rotated:
                self.logger.warning(
                    "refresh_rotation_conflict", user_id=user.id, session_id=session.id
                )
                raise SessionNotFoundError("Session not found or expired")
            tx.touch_last_login(user.id, now)
        self.logger.info("auth_refresh_success", user_id=user.id, session_id=session.id)
        session = replace(
            session,
            refresh_token=pair.refresh_token,
            expires_at=expires_at,
            last_activity_at=now,
        )
        return AuthResult(user=replace(user, last_login_at=now), session=session, tokens=pair)

    async def logout(self, refresh_token: Optional[str]) -> bool:
        """Revoke the session behind ``refresh_token``. Never raises."""
        if not refresh_token:
            return False
        try:
            claims = self.tokens.verify_refresh(refresh_token)
            session = self.store.get_session(claims.session_id)
            if not session or session.user_id != claims.user_id:
                return False
            revoked = self.store.revoke_session(session.id, RevokeReason.LOGOUT.value)
        except InvalidTokenError:
            self.logger.info("logout_token_rejected")
            return False
        except Exception as exc:
            self.logger.error("logout_revoke_failed", error=str(exc))
            return False
        if revoked:
            self.logger.info("auth_logout", user_id=claims.user_id, session_id=session.id)
        return revoked

    async def me(self, access_token: Optional[str]) -> User:
        if not access_token:
            raise InvalidTokenError("Access token is required")
        claims = self.tokens.verify_access(access_token)
        user = self.store.get_user(claims.user_id)
        if not user or user.deleted_at is not None:
            raise UserNotFoundError("User not found")
        self._ensure_usable(user, self.tokens.now())
        return user
