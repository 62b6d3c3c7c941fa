# shopguard/services/redis_service.py
"""
Redis-backed audit mirror.

Redis is optional: without REDIS_URL, or when the first ping fails, the
mirror stays disabled and startup carries on. Writes report success as a
bool so the caller can requeue.
"""
import json
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
import logging

import redis.asyncio as redis

from shopguard.core.config import settings
from shopguard.core.service_base import BaseService

logger = logging.getLogger(__name__)


@dataclass
class RedisConfig:
    url: Optional[str] = None
    socket_timeout: float = 5.0


class RedisService(BaseService):

    def __init__(self, config: Optional[RedisConfig] = None):
        super().__init__()
        self.config = config or RedisConfig(url=settings.REDIS_URL)

    async def _connect(self) -> Optional[redis.Redis]:
        if not self.config.url:
            logger.warning("⚠️ No REDIS_URL configured, audit mirroring disabled")
            return None

        client = redis.from_url(
            self.config.url,
            decode_responses=True,
            socket_timeout=self.config.socket_timeout,
        )
        try:
            await client.ping()
        except Exception as e:
            logger.warning(f"⚠️ Redis unreachable ({e}), audit mirroring disabled")
            return None

        logger.info("✅ Redis connection successful")
        return client

    def is_connected(self) -> bool:
        return self._client is not None

    async def push_capped(self, key: str, items: List[Dict[str, Any]], max_length: int) -> bool:
        """
        Push JSON items onto the head of a list and trim it to max_length.

        Returns:
            True if written, False if Redis is unavailable or the write failed
        """
        if not self._client or not items:
            return False

        try:
            values = [json.dumps(item, default=str) for item in items]
            await self._client.lpush(key, *values)
            await self._client.ltrim(key, 0, max_length - 1)
            return True
        except Exception as e:
            logger.error(f"❌ Redis push failed for key '{key}': {e}")
            return False

    async def health_check(self) -> Dict[str, Any]:
        if not self.config.url:
            return {"healthy": True, "status": "disabled"}
        if not self._client:
            return {"healthy": False, "status": "not_connected"}

        try:
            await self._client.ping()
        except Exception as e:
            return {"healthy": False, "status": "error", "error": str(e)}
        return {"healthy": True, "status": "connected"}

    async def _cleanup(self) -> None:
        if self._client:
            await self._client.aclose()
