# shopguard/core/service_base.py
"""
Base classes for the audit mirror backend and the in-memory stores.

BaseService gives an optional external backend an idempotent
initialize/shutdown pair. BaseStore gives each in-memory security store one
coarse lock, a clock and a metrics hook.
"""
from abc import ABC, abstractmethod
from typing import Optional, Dict, Any
import logging
import threading

from shopguard.core.clock import SystemClock, system_clock
from shopguard.core.exceptions import ServiceError

logger = logging.getLogger(__name__)


class BaseService(ABC):
    """Lifecycle for a service backed by an external client"""

    def __init__(self):
        self.service_name = self.__class__.__name__
        self._initialized = False
        self._client = None

    @abstractmethod
    async def _connect(self) -> Any:
        """Connected client, or None when the backend is disabled"""

    @abstractmethod
    async def health_check(self) -> Dict[str, Any]:
        """Dict with "healthy" and "status" keys"""

    async def _cleanup(self) -> None:
        pass

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> None:
        """Connect once; repeated calls are no-ops"""
        if self._initialized:
            return

        try:
            self._client = await self._connect()
        except Exception as e:
            logger.error(f"❌ Failed to initialize {self.service_name}", exc_info=True)
            raise ServiceError(
                service_name=self.service_name,
                message=f"Failed to initialize {self.service_name}",
                details={'error_type': type(e).__name__},
            )
        self._initialized = True
        logger.info(f"✅ {self.service_name} initialized")

    async def shutdown(self) -> None:
        if not self._initialized:
            return

        try:
            await self._cleanup()
        except Exception:
            logger.error(f"Error during {self.service_name} shutdown", exc_info=True)
        self._client = None
        self._initialized = False
        logger.info(f"🛑 {self.service_name} shut down")


class BaseStore(ABC):
    """
    Base for the in-memory security stores.

    Every read-modify-write, including background sweeps, runs under
    self._lock. Operations are microseconds long and never do I/O while
    holding it.
    """

    def __init__(self, clock: Optional[SystemClock] = None):
        self._lock = threading.RLock()
        self.clock = clock or system_clock

    @abstractmethod
    def get_metrics(self) -> Dict[str, Any]:
        """Counters for monitoring endpoints"""
