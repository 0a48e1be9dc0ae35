from __future__ import annotations

import threading
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, List, Optional

from wordnest.client.errors import get_error_message
from wordnest.logging import get_logger

logger = get_logger(__name__)

Listener = Callable[["AuthState", "AuthState"], None]


@dataclass(frozen=True)
class AuthState:
    user: Optional[Dict[str, Any]] = None
    tokens: Optional[Dict[str, str]] = None
    is_authenticated: bool = False
    is_loading: bool = False
    is_refreshing: bool = False
    error: Optional[str] = None
    error_message: Optional[str] = None

    @property
    def access_token(self) -> Optional[str]:
        return (self.tokens or {}).get("accessToken")

    @property
    def refresh_token(self) -> Optional[str]:
        return (self.tokens or {}).get("refreshToken")

    @property
    def user_id(self) -> Optional[str]:
        return (self.user or {}).get("id")

    def persisted(self) -> Dict[str, Any]:
        """The slice shared across tabs."""
        return {
            "user": self.user,
            "tokens": self.tokens,
            "isAuthenticated": self.is_authenticated,
        }


class AuthStateContainer:
    """Holds the client's auth state and notifies listeners on every transition.

    The container knows nothing about storage or HTTP; persistence and
    cross-tab sync attach from the outside through :meth:`subscribe`.
    """

    def __init__(self, state: Optional[AuthState] = None) -> None:
        self._state = state or AuthState()
        self._listeners: List[Listener] = []
        self._lock = threading.RLock()

    @property
    def state(self) -> AuthState:
        return self._state

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def _set(self, **changes: Any) -> AuthState:
        with self._lock:
            previous = self._state
            self._state = replace(previous, **changes)
            current = self._state
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(current, previous)
            except Exception as exc:
                logger.error("auth_state_listener_failed", error=str(exc))
        return current

    def set_authenticated(self, user: Dict[str, Any], tokens: Dict[str, str]) -> AuthState:
        return self._set(
            user=dict(user),
            tokens=dict(tokens),
            is_authenticated=True,
            error=None,
            error_message=None,
        )

    def clear(self) -> AuthState:
        return self._set(
            user=None,
            tokens=None,
            is_authenticated=False,
            error=None,
            error_message=None,
        )

    def restore(
        self,
        user: Optional[Dict[str, Any]],
        tokens: Optional[Dict[str, str]],
        is_authenticated: bool,
    ) -> AuthState:
        """Adopt a persisted snapshot as-is (hydration and other tabs)."""
        return self._set(user=user, tokens=tokens, is_authenticated=bool(is_authenticated))

    def set_error(self, code: str, message: Optional[str] = None) -> AuthState:
        return self._set(
            error=code,
            error_message=message or get_error_message(code),
            is_loading=False,
            is_refreshing=False,
        )

    def clear_error(self) -> AuthState:
        return self._set(error=None, error_message=None)

    def confirm_user(self, user: Dict[str, Any]) -> AuthState:
        """Adopt the server's view of the user; tokens are left as they are."""
        return self._set(user=dict(user), is_authenticated=True)

    def update_user(self, **fields: Any) -> AuthState:
        if self._state.user is None:
            logger.warning("auth_state_update_without_user")
            return self._state
        return self._set(user={**self._state.user, **fields})

    def set_loading(self, loading: bool, *, clear_error: bool = False) -> AuthState:
        if clear_error:
            return self._set(is_loading=loading, error=None, error_message=None)
        return self._set(is_loading=loading)

    def set_refreshing(self, refreshing: bool) -> AuthState:
        return self._set(is_refreshing=refreshing)
