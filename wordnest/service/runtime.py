from __future__ import annotations

import threading
from datetime import timedelta
from typing import Optional
from urllib.parse import urlparse, urlunparse

from wordnest.config import Settings, get_settings, reset_settings_cache
from wordnest.logging import get_logger
from wordnest.service.auth import AuthService
from wordnest.service.identity import (
    AccessTokenResolver,
    IdentityResolverChain,
    OAuthSessionResolver,
)
from wordnest.service.oauth import OAuthService
from wordnest.service.oauth_session import OAuthSessionCodec
from wordnest.service.passwords import CredentialHasher
from wordnest.service.throttle import AttemptThrottle
from wordnest.service.tokens import TokenService
from wordnest.storage.memory import MemoryStore
from wordnest.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a DSN for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
            environment=self.settings.environment.value,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store = (
                MemoryStore(fs_root=self.settings.shared_fs_root)
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        self.store_type = store_type
        logger.info("runtime_store_initialized", store_type=store_type)

        self.tokens = TokenService.from_settings(self.settings)
        self.throttle = AttemptThrottle(
            self.store,
            window=self.settings.throttle_window,
            max_attempts=self.settings.auth_throttle_max_attempts,
        )
        self.auth = AuthService(
            self.store,
            self.tokens,
            hasher=CredentialHasher(),
            throttle=self.throttle,
        )
        self.oauth_sessions = OAuthSessionCodec(
            self.settings.oauth_session_secret,
            max_age=timedelta(days=self.settings.oauth_session_max_age_days),
        )
        self.oauth = OAuthService(self.store, self.oauth_sessions, self.settings)
        self.identity = IdentityResolverChain(
            [
                OAuthSessionResolver(self.oauth_sessions, self.settings.oauth_session_cookie),
                AccessTokenResolver(self.tokens),
            ]
        )


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking: the unlocked check is the fast path, the
    locked check prevents two threads from both building a runtime.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("reset_runtime_for_tests requires TEST_MODE=true")
        if isinstance(runtime.store if runtime else None, PostgresStore):
            runtime.store.close()
        runtime = Runtime(settings)
        return runtime
