# shopguard/core/security/session_security.py
"""
Server-side session store.

The client only holds a signed cookie carrying the session id; everything
else (role snapshot, expiry, binding data) stays here. Design decisions:
1. Fail closed - tampered or unknown cookies never yield a session
2. Lazy expiry - validate() evicts expired sessions, sweep_expired() catches the rest
3. Drift policy - IP or device drift is always audited; it only ends the
   session when strict binding is configured
4. Copies out - callers get copies, never the stored objects
"""

import logging
import secrets
from datetime import timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple

from starlette.responses import Response

from shopguard.core.clock import SystemClock
from shopguard.core.config import Settings, settings
from shopguard.core.exceptions import CookieTamperedError
from shopguard.core.security.audit import AuditLog
from shopguard.core.security.cookies import SignedCookie, create_session_cookie
from shopguard.core.service_base import BaseStore
from shopguard.models.auth_models import (
    AuditEventType,
    Permission,
    Session,
    SessionOptions,
    SessionStatus,
    SessionValidation,
    UserRole,
)
from shopguard.models.request_context import RequestContext

logger = logging.getLogger(__name__)

# (event_type, user_id, session_id, success, error, metadata)
PendingAudit = Tuple[AuditEventType, Optional[str], Optional[str], bool, Optional[str], Dict[str, Any]]


class SessionStore(BaseStore):

    def __init__(
        self,
        config: Optional[Settings] = None,
        audit_log: Optional[AuditLog] = None,
        clock: Optional[SystemClock] = None,
        cookie: Optional[SignedCookie] = None,
    ):
        super().__init__(clock=clock)
        self.config = config or settings
        self.audit_log = audit_log or AuditLog(clock=self.clock, config=self.config)
        self.cookie = cookie or create_session_cookie(self.config)

        self._sessions: Dict[str, Session] = {}

        # Metrics for monitoring
        self._creation_count = 0
        self._validation_failures = 0
        self._expired_count = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _new_session_id(self) -> str:
        millis = int(self.clock.now().timestamp() * 1000)
        return f"sess-{millis}-{secrets.token_hex(16)}"

    def _lifetime(self, remember: bool, custom_minutes: Optional[int] = None) -> timedelta:
        if custom_minutes:
            return timedelta(minutes=custom_minutes)
        if remember:
            return timedelta(seconds=self.config.REMEMBER_ME_MAX_AGE)
        return timedelta(seconds=self.config.SESSION_MAX_AGE)

    def create(
        self,
        ctx: RequestContext,
        user_id: str,
        role: UserRole,
        permissions: Iterable[Permission],
        options: Optional[SessionOptions] = None,
    ) -> Session:
        """
        Create and store a session for an authenticated user.

        Expiry is now + 30 days for remembered sessions and now + 1 day
        otherwise, unless options.custom_expiry_minutes overrides it.
        """
        options = options or SessionOptions()
        now = self.clock.now()

        with self._lock:
            session_id = self._new_session_id()
            while session_id in self._sessions:
                session_id = self._new_session_id()

            session = Session(
                session_id=session_id,
                user_id=user_id,
                role=role,
                permissions=frozenset(permissions),
                created_at=now,
                expires_at=now + self._lifetime(options.remember, options.custom_expiry_minutes),
                last_activity=now,
                ip_address=ctx.client_ip,
                user_agent=ctx.user_agent,
                device_fingerprint=ctx.device_fingerprint,
                is_remembered=options.remember,
                two_factor_verified=options.two_factor_verified,
                is_elevated=options.elevate,
                elevated_until=(
                    now + timedelta(minutes=self.config.SESSION_ELEVATION_MINUTES)
                    if options.elevate else None
                ),
            )

            evicted = self._enforce_session_limit(user_id)
            self._sessions[session_id] = session
            self._creation_count += 1

        for old in evicted:
            self.audit_log.record(
                AuditEventType.SESSION_REVOKED,
                ctx,
                user_id=old.user_id,
                session_id=old.session_id,
                metadata={"reason": "concurrent_session_limit"},
            )
        self.audit_log.record(
            AuditEventType.SESSION_CREATED,
            ctx,
            user_id=user_id,
            session_id=session_id,
            metadata={"remember": options.remember, "elevated": options.elevate},
        )

        logger.info(f"🔐 Created session {session_id[:16]}... for user {user_id}")
        return session.model_copy(deep=True)

    def _enforce_session_limit(self, user_id: str) -> List[Session]:
        """Make room for one more session; caller holds the lock"""
        limit = self.config.MAX_CONCURRENT_SESSIONS
        if limit <= 0:
            return []

        user_sessions = sorted(
            (s for s in self._sessions.values() if s.user_id == user_id),
            key=lambda s: s.last_activity,
        )
        evicted = []
        while len(user_sessions) >= limit:
            oldest = user_sessions.pop(0)
            del self._sessions[oldest.session_id]
            evicted.append(oldest)

        if evicted:
            logger.info(f"🔐 Evicted {len(evicted)} old session(s) for user {user_id}")
        return evicted

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def read_cookie(self, ctx: RequestContext) -> Optional[str]:
        """
        Session id from the signed cookie, or None if absent.

        Raises:
            CookieTamperedError: If the signature does not verify
        """
        payload = self.cookie.parse(ctx.cookies)
        if payload is None:
            return None
        if not isinstance(payload, dict) or not isinstance(payload.get("sid"), str):
            raise CookieTamperedError("Unexpected session cookie payload", cookie_name=self.cookie.name)
        return payload["sid"]

    def validate(self, ctx: RequestContext) -> SessionValidation:
        """Resolve and check the session behind the request's cookie"""
        try:
            session_id = self.read_cookie(ctx)
        except CookieTamperedError as e:
            with self._lock:
                self._validation_failures += 1
            logger.warning(f"🔒 Tampered session cookie from {ctx.client_ip}")
            self.audit_log.record(
                AuditEventType.COOKIE_TAMPERED,
                ctx,
                success=False,
                error=e.message,
                metadata={"cookie": self.cookie.name},
            )
            return SessionValidation(reason=SessionStatus.TAMPERED)

        if not session_id:
            return SessionValidation(reason=SessionStatus.NOT_FOUND)

        return self.validate_session_id(session_id, ctx)

    def validate_session_id(self, session_id: str, ctx: RequestContext) -> SessionValidation:
        now = self.clock.now()
        pending: List[PendingAudit] = []

        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                self._validation_failures += 1
                logger.debug(f"Session {session_id[:16]}... not found")
                return SessionValidation(reason=SessionStatus.NOT_FOUND)

            if session.is_expired(now):
                del self._sessions[session_id]
                self._expired_count += 1
                pending.append((AuditEventType.SESSION_EXPIRED, session.user_id, session_id, True, None, {}))
                result = SessionValidation(reason=SessionStatus.EXPIRED)
            else:
                result = self._check_binding(session, ctx, pending)
                if result is None:
                    session.last_activity = now
                    if session.is_elevated and not session.elevation_active(now):
                        session.is_elevated = False
                        session.elevated_until = None
                    result = SessionValidation(
                        session=session.model_copy(deep=True),
                        is_valid=True,
                        reason=SessionStatus.VALID,
                    )

        self._flush(ctx, pending)
        if result.reason == SessionStatus.EXPIRED:
            logger.info(f"⏰ Session {session_id[:16]}... expired")
        return result

    def _check_binding(
        self,
        session: Session,
        ctx: RequestContext,
        pending: List[PendingAudit],
    ) -> Optional[SessionValidation]:
        """Audit IP/device drift; ends the session only under strict binding"""
        ip_changed = session.ip_address != ctx.client_ip
        device_changed = session.device_fingerprint != ctx.device_fingerprint
        if not (ip_changed or device_changed):
            return None

        metadata = {
            "ip_changed": ip_changed,
            "device_changed": device_changed,
            "original_ip": session.ip_address,
            "current_ip": ctx.client_ip,
        }

        strict_ip = ip_changed and self.config.SESSION_STRICT_IP_BINDING
        strict_device = device_changed and self.config.SESSION_STRICT_DEVICE_BINDING
        if not (strict_ip or strict_device):
            logger.warning(f"⚠️ Session {session.session_id[:16]}... drift detected, keeping session")
            pending.append((
                AuditEventType.SUSPICIOUS_ACTIVITY, session.user_id, session.session_id,
                True, None, {**metadata, "action": "logged"},
            ))
            return None

        del self._sessions[session.session_id]
        self._validation_failures += 1
        reason = SessionStatus.DEVICE_MISMATCH if strict_device else SessionStatus.IP_MISMATCH
        logger.warning(f"🚫 Session {session.session_id[:16]}... invalidated: {reason.value}")
        pending.append((
            AuditEventType.SUSPICIOUS_ACTIVITY, session.user_id, session.session_id,
            False, reason.value, {**metadata, "action": "invalidated"},
        ))
        return SessionValidation(reason=reason)

    def _flush(self, ctx: Optional[RequestContext], pending: List[PendingAudit]) -> None:
        for event_type, user_id, session_id, success, error, metadata in pending:
            self.audit_log.record(
                event_type,
                ctx,
                user_id=user_id,
                session_id=session_id,
                success=success,
                error=error,
                metadata=metadata,
            )

    def refresh(self, ctx: RequestContext) -> Optional[Session]:
        """Re-validate and extend; current IP and fingerprint become the new binding"""
        validation = self.validate(ctx)
        if not validation.is_valid or validation.session is None:
            return None

        now = self.clock.now()
        with self._lock:
            session = self._sessions.get(validation.session.session_id)
            if session is None:
                return None
            session.expires_at = now + self._lifetime(session.is_remembered)
            session.last_activity = now
            session.ip_address = ctx.client_ip
            session.user_agent = ctx.user_agent
            session.device_fingerprint = ctx.device_fingerprint
            refreshed = session.model_copy(deep=True)

        logger.debug(f"Session {refreshed.session_id[:16]}... refreshed")
        return refreshed

    def elevate(self, session_id: str, minutes: Optional[int] = None) -> Optional[Session]:
        """Open a time-boxed elevated window on an existing session"""
        now = self.clock.now()
        minutes = minutes or self.config.SESSION_ELEVATION_MINUTES
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None or session.is_expired(now):
                return None
            session.is_elevated = True
            session.elevated_until = now + timedelta(minutes=minutes)
            return session.model_copy(deep=True)

    # ------------------------------------------------------------------
    # Removal
    # ------------------------------------------------------------------

    def invalidate(
        self,
        session_id: str,
        ctx: Optional[RequestContext] = None,
        reason: str = "logout",
    ) -> bool:
        with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is None:
            return False

        self.audit_log.record(
            AuditEventType.LOGOUT if reason == "logout" else AuditEventType.SESSION_REVOKED,
            ctx,
            user_id=session.user_id,
            session_id=session_id,
            metadata={"reason": reason},
        )
        logger.debug(f"🗑️ Invalidated session {session_id[:16]}... ({reason})")
        return True

    def invalidate_all_for_user(
        self,
        user_id: str,
        ctx: Optional[RequestContext] = None,
        except_session_id: Optional[str] = None,
    ) -> int:
        with self._lock:
            doomed = [
                sid for sid, s in self._sessions.items()
                if s.user_id == user_id and sid != except_session_id
            ]
            for sid in doomed:
                del self._sessions[sid]

        for sid in doomed:
            self.audit_log.record(
                AuditEventType.SESSION_REVOKED,
                ctx,
                user_id=user_id,
                session_id=sid,
                metadata={"reason": "invalidate_all"},
            )
        if doomed:
            logger.info(f"🗑️ Invalidated {len(doomed)} session(s) for user {user_id}")
        return len(doomed)

    def sweep_expired(self) -> int:
        """Evict every session whose expiry has passed"""
        now = self.clock.now()
        with self._lock:
            expired_ids = [sid for sid, s in self._sessions.items() if s.is_expired(now)]
            for sid in expired_ids:
                del self._sessions[sid]
            self._expired_count += len(expired_ids)

        if expired_ids:
            logger.info(f"🧹 Cleaned up {len(expired_ids)} expired sessions")
        return len(expired_ids)

    # ------------------------------------------------------------------
    # Cookie transport
    # ------------------------------------------------------------------

    def sign(self, session: Session) -> str:
        """Signed cookie value for a session"""
        return self.cookie.encode({"sid": session.session_id})

    def set_cookie(self, response: Response, session: Session) -> None:
        """Attach the session cookie; it never outlives the server-side record"""
        max_age = self.config.REMEMBER_ME_MAX_AGE if session.is_remembered else self.config.SESSION_MAX_AGE
        remaining = int((session.expires_at - self.clock.now()).total_seconds())
        self.cookie.set_on(response, {"sid": session.session_id}, max_age=max(0, min(max_age, remaining)))

    def clear_cookie(self, response: Response) -> None:
        self.cookie.delete_on(response)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def get(self, session_id: str) -> Optional[Session]:
        with self._lock:
            session = self._sessions.get(session_id)
            return session.model_copy(deep=True) if session else None

    def get_user_sessions(self, user_id: str) -> List[Session]:
        with self._lock:
            return [
                s.model_copy(deep=True)
                for s in self._sessions.values()
                if s.user_id == user_id
            ]

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def get_session_info(self, session_id: str) -> Optional[Dict[str, Any]]:
        """
        Session details for debugging (no cookie value exposed).

        Used by admin/debug endpoints only.
        """
        session = self.get(session_id)
        if session is None:
            return None
        now = self.clock.now()
        return {
            "session_id": session.session_id,
            "user_id": session.user_id,
            "role": session.role.value,
            "created_at": session.created_at.isoformat(),
            "expires_at": session.expires_at.isoformat(),
            "last_activity": session.last_activity.isoformat(),
            "is_expired": session.is_expired(now),
            "is_remembered": session.is_remembered,
            "is_elevated": session.elevation_active(now),
            "cart_id": session.cart_id,
        }

    def get_metrics(self) -> Dict[str, Any]:
        with self._lock:
            active_users = {s.user_id for s in self._sessions.values()}
            return {
                "active_sessions": len(self._sessions),
                "active_users": len(active_users),
                "total_created": self._creation_count,
                "validation_failures": self._validation_failures,
                "expired_cleaned": self._expired_count,
            }
