from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Protocol

from wordnest.logging import get_logger

logger = get_logger(__name__)


class AttemptCounter(Protocol):
    def count_failed_attempts(
        self, email: str, ip_addr: Optional[str], since: datetime
    ) -> int:
        ...


class AttemptThrottle:
    """Rolling-window admission control for password logins.

    Failed attempts are counted when either the email or the client IP
    matches, so one account cannot be attacked from many addresses and one
    address cannot spray many accounts. The throttle only reads; callers
    record the attempt outcome themselves.
    """

    def __init__(
        self,
        store: AttemptCounter,
        *,
        window: timedelta = timedelta(minutes=15),
        max_attempts: int = 15,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be positive")
        self.store = store
        self.window = window
        self.max_attempts = max_attempts
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def failed_attempts(self, email: str, ip_addr: Optional[str]) -> int:
        since = self._clock() - self.window
        return self.store.count_failed_attempts(email, ip_addr, since)

    def check_admission(self, email: str, ip_addr: Optional[str]) -> bool:
        failures = self.failed_attempts(email, ip_addr)
        if failures >= self.max_attempts:
            logger.warning(
                "auth_throttled",
                email=email,
                ip_addr=ip_addr,
                failures=failures,
                max_attempts=self.max_attempts,
            )
            return False
        return True
