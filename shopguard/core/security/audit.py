# shopguard/core/security/audit.py
"""
Bounded, append-only security audit trail.

record() never blocks beyond the store lock and never raises: a broken audit
write is logged and dropped so it cannot take a login or logout down with it.
Events are also echoed to the logging system and queued for the optional
Redis mirror, which the maintenance task drains.
"""

import logging
import secrets
from collections import deque
from typing import Any, Deque, Dict, List, Optional

from shopguard.core.clock import SystemClock
from shopguard.core.config import Settings, settings
from shopguard.core.service_base import BaseStore
from shopguard.models.auth_models import AuditEvent, AuditEventType
from shopguard.models.request_context import RequestContext

logger = logging.getLogger(__name__)


class AuditLog(BaseStore):

    def __init__(
        self,
        capacity: Optional[int] = None,
        clock: Optional[SystemClock] = None,
        config: Optional[Settings] = None,
    ):
        super().__init__(clock=clock)
        config = config or settings
        self.capacity = capacity or config.AUDIT_LOG_CAPACITY
        self._events: Deque[AuditEvent] = deque(maxlen=self.capacity)
        self._pending: Deque[AuditEvent] = deque(maxlen=self.capacity)
        self._recorded = 0
        self._dropped = 0

    def record(
        self,
        event_type: AuditEventType,
        ctx: Optional[RequestContext] = None,
        user_id: Optional[str] = None,
        session_id: Optional[str] = None,
        success: bool = True,
        error: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[AuditEvent]:
        try:
            now = self.clock.now()
            event = AuditEvent(
                id=f"audit-{int(now.timestamp() * 1000)}-{secrets.token_hex(4)}",
                event_type=event_type,
                user_id=user_id,
                session_id=session_id,
                ip_address=ctx.client_ip if ctx else "unknown",
                user_agent=ctx.user_agent if ctx else "unknown",
                timestamp=now,
                success=success,
                error=error,
                metadata=metadata or {},
            )
            with self._lock:
                self._events.append(event)
                self._pending.append(event)
                self._recorded += 1
        except Exception:
            with self._lock:
                self._dropped += 1
            logger.error(f"Failed to record audit event {event_type}", exc_info=True)
            return None

        self._log_event(event)
        return event

    def _log_event(self, event: AuditEvent) -> None:
        who = event.user_id or "anonymous"
        message = f"🔏 AUDIT {event.event_type.value} user={who} ip={event.ip_address}"
        if event.success:
            logger.info(message)
        else:
            logger.warning(f"{message} error={event.error}")

    def query(
        self,
        limit: int = 100,
        event_type: Optional[AuditEventType] = None,
        user_id: Optional[str] = None,
    ) -> List[AuditEvent]:
        """Most recent events first"""
        if limit <= 0:
            return []
        with self._lock:
            snapshot = list(self._events)

        results = []
        for event in reversed(snapshot):
            if event_type and event.event_type != event_type:
                continue
            if user_id and event.user_id != user_id:
                continue
            results.append(event)
            if len(results) >= limit:
                break
        return results

    def drain_pending(self, max_items: Optional[int] = None) -> List[AuditEvent]:
        """Hand over events not yet mirrored, oldest first"""
        with self._lock:
            count = len(self._pending) if max_items is None else min(max_items, len(self._pending))
            return [self._pending.popleft() for _ in range(count)]

    def requeue(self, events: List[AuditEvent]) -> None:
        """Put back events whose mirror write failed"""
        with self._lock:
            for event in reversed(events):
                if len(self._pending) >= self.capacity:
                    break
                self._pending.appendleft(event)

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)

    def get_metrics(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "events": len(self._events),
                "capacity": self.capacity,
                "total_recorded": self._recorded,
                "pending_mirror": len(self._pending),
                "dropped": self._dropped,
            }
