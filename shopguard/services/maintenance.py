# shopguard/services/maintenance.py
"""
Periodic background sweep.

Evicts expired sessions, lapsed rate-limit and blacklist records and stale
carts, then flushes pending audit events to the Redis mirror. Each store
does its own locking, so a sweep never sees a half-updated entry.
"""

import asyncio
import logging
from typing import Dict, Optional

from shopguard.core.config import Settings, settings
from shopguard.services.auth_service import AuthService
from shopguard.services.cart_service import SecureCartStore
from shopguard.services.redis_service import RedisService

logger = logging.getLogger(__name__)

AUDIT_FLUSH_BATCH = 500


class SecurityMaintenance:

    def __init__(
        self,
        auth_service: AuthService,
        cart_store: Optional[SecureCartStore] = None,
        redis_service: Optional[RedisService] = None,
        config: Optional[Settings] = None,
    ):
        self.auth_service = auth_service
        self.cart_store = cart_store
        self.redis_service = redis_service
        self.config = config or settings
        self.interval = self.config.CLEANUP_INTERVAL_SECONDS
        self._task: Optional[asyncio.Task] = None
        self.runs = 0

    async def run_once(self) -> Dict[str, int]:
        """One sweep over every store; returns eviction counts"""
        auth = self.auth_service
        result = {
            "sessions": auth.session_store.sweep_expired(),
            "login_limiter": auth.login_limiter.cleanup(),
            "general_limiter": auth.general_limiter.cleanup(),
            "carts": self.cart_store.sweep_expired() if self.cart_store else 0,
            "audit_flushed": await self.flush_audit(),
        }
        self.runs += 1
        if any(result.values()):
            logger.info(f"🧹 Maintenance run {self.runs}: {result}")
        return result

    async def flush_audit(self) -> int:
        """Mirror pending audit events to Redis; events stay queued on failure"""
        if not self.redis_service or not self.redis_service.is_connected():
            return 0

        audit_log = self.auth_service.audit_log
        events = audit_log.drain_pending(AUDIT_FLUSH_BATCH)
        if not events:
            return 0

        # Oldest first, so LPUSH leaves the newest at the head
        written = await self.redis_service.push_capped(
            self.config.AUDIT_REDIS_KEY,
            [e.model_dump(mode="json") for e in events],
            self.config.AUDIT_LOG_CAPACITY,
        )
        if not written:
            audit_log.requeue(events)
            logger.warning(f"⚠️ Audit mirror write failed, {len(events)} event(s) requeued")
            return 0
        return len(events)

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.run_once()
            except Exception:
                logger.error("❌ Maintenance run failed", exc_info=True)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._loop())
            logger.info(f"🧹 Maintenance task started (every {self.interval}s)")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("🧹 Maintenance task stopped")

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()
