# shopguard/core/security/rate_limiter.py
"""
Sliding-window attempt counter with temporary blacklisting.

Two independent instances run side by side: a strict one for login attempts
and a looser one for general request throttling. Times are monotonic seconds
from the injected clock.
"""

import logging
import math
from typing import Any, Dict, Optional

from pydantic import BaseModel

from shopguard.core.clock import SystemClock
from shopguard.core.config import Settings, settings
from shopguard.core.service_base import BaseStore

logger = logging.getLogger(__name__)


class RateLimitEntry(BaseModel):
    count: int
    first_attempt: float
    last_attempt: float
    reset_time: float


class BlacklistEntry(BaseModel):
    blocked_at: float
    unblock_time: float


class RateLimiter(BaseStore):
    """
    Per-identifier attempt counter.

    A blacklist record takes precedence over the counter until its unblock
    time passes.
    """

    def __init__(
        self,
        name: str,
        max_attempts: int,
        window_ms: int,
        block_duration_ms: Optional[int] = None,
        clock: Optional[SystemClock] = None,
    ):
        super().__init__(clock=clock)
        if max_attempts < 1 or window_ms < 1:
            raise ValueError("max_attempts and window_ms must be positive")
        self.name = name
        self.max_attempts = max_attempts
        self.window = window_ms / 1000.0
        self.block_duration = block_duration_ms / 1000.0 if block_duration_ms else None

        self._entries: Dict[str, RateLimitEntry] = {}
        self._blacklist: Dict[str, BlacklistEntry] = {}

        self._limited_count = 0
        self._blacklisted_count = 0

    def is_limited(self, identifier: str) -> bool:
        """Count one attempt for identifier and report whether it is over the limit"""
        now = self.clock.monotonic()

        with self._lock:
            blocked = self._blacklist.get(identifier)
            if blocked:
                if now < blocked.unblock_time:
                    self._limited_count += 1
                    return True
                del self._blacklist[identifier]

            entry = self._entries.get(identifier)
            if entry is None or now > entry.reset_time:
                self._entries[identifier] = RateLimitEntry(
                    count=1,
                    first_attempt=now,
                    last_attempt=now,
                    reset_time=now + self.window,
                )
                return False

            if entry.count >= self.max_attempts:
                entry.last_attempt = now
                self._limited_count += 1
                if self.block_duration:
                    self._blacklist[identifier] = BlacklistEntry(
                        blocked_at=now,
                        unblock_time=now + self.block_duration,
                    )
                    self._blacklisted_count += 1
                    logger.warning(
                        f"🚫 [{self.name}] {identifier} blacklisted for {int(self.block_duration)}s"
                    )
                return True

            entry.count += 1
            entry.last_attempt = now
            return False

    def is_blacklisted(self, identifier: str) -> bool:
        now = self.clock.monotonic()
        with self._lock:
            blocked = self._blacklist.get(identifier)
            return bool(blocked and now < blocked.unblock_time)

    def remaining_attempts(self, identifier: str) -> int:
        now = self.clock.monotonic()
        with self._lock:
            blocked = self._blacklist.get(identifier)
            if blocked and now < blocked.unblock_time:
                return 0
            entry = self._entries.get(identifier)
            if entry is None or now > entry.reset_time:
                return self.max_attempts
            return max(0, self.max_attempts - entry.count)

    def retry_after(self, identifier: str) -> int:
        """Whole seconds until the identifier may try again (0 if it may now)"""
        now = self.clock.monotonic()
        with self._lock:
            blocked = self._blacklist.get(identifier)
            if blocked and now < blocked.unblock_time:
                return math.ceil(blocked.unblock_time - now)
            entry = self._entries.get(identifier)
            if entry and now <= entry.reset_time and entry.count >= self.max_attempts:
                return math.ceil(entry.reset_time - now)
            return 0

    def reset(self, identifier: str) -> None:
        with self._lock:
            self._entries.pop(identifier, None)
            self._blacklist.pop(identifier, None)

    def cleanup(self) -> int:
        """Drop lapsed counters and blacklist records; returns how many were evicted"""
        now = self.clock.monotonic()
        with self._lock:
            stale_entries = [k for k, e in self._entries.items() if now > e.reset_time]
            stale_blocks = [k for k, b in self._blacklist.items() if now >= b.unblock_time]
            for key in stale_entries:
                del self._entries[key]
            for key in stale_blocks:
                del self._blacklist[key]

        evicted = len(stale_entries) + len(stale_blocks)
        if evicted:
            logger.info(f"🧹 [{self.name}] Cleaned up {evicted} rate limit records")
        return evicted

    def get_metrics(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "name": self.name,
                "tracked_identifiers": len(self._entries),
                "blacklisted": len(self._blacklist),
                "limited_requests": self._limited_count,
                "total_blacklisted": self._blacklisted_count,
                "max_attempts": self.max_attempts,
                "window_seconds": self.window,
            }


def create_login_rate_limiter(
    config: Optional[Settings] = None,
    clock: Optional[SystemClock] = None
) -> RateLimiter:
    config = config or settings
    return RateLimiter(
        "login",
        max_attempts=config.RATE_LIMIT_LOGIN_ATTEMPTS,
        window_ms=config.RATE_LIMIT_LOGIN_WINDOW_MS,
        block_duration_ms=config.RATE_LIMIT_LOGIN_BLOCK_MS,
        clock=clock,
    )


def create_general_rate_limiter(
    config: Optional[Settings] = None,
    clock: Optional[SystemClock] = None
) -> RateLimiter:
    config = config or settings
    return RateLimiter(
        "general",
        max_attempts=config.RATE_LIMIT_GENERAL,
        window_ms=config.RATE_LIMIT_GENERAL_WINDOW_MS,
        block_duration_ms=config.RATE_LIMIT_GENERAL_BLOCK_MS,
        clock=clock,
    )
