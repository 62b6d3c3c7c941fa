# shopguard/services/auth_service.py
"""
Authentication and authorization orchestration.

Login outcomes come back as a LoginResult and never raise. Authorization
checks (require_auth / require_role / require_permission) raise
AuthenticationRequired or PermissionDenied, which the HTTP layer turns into
a redirect/401 or a 403. Anything unexpected is logged and surfaced as a
generic InternalError.
"""

import asyncio
import logging
import secrets
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Tuple
from urllib.parse import quote

from starlette.responses import Response

from shopguard.core.clock import SystemClock, system_clock
from shopguard.core.config import Settings, settings
from shopguard.core.exceptions import (
    AuthErrorCode,
    AuthFlowError,
    AuthenticationRequired,
    InternalError,
    ServiceError,
    permission_denied,
)
from shopguard.core.security.audit import AuditLog
from shopguard.core.security.csrf import CSRFGuard
from shopguard.core.security.passwords import PasswordHasher, validate_password_strength
from shopguard.core.security.rate_limiter import (
    RateLimiter,
    create_general_rate_limiter,
    create_login_rate_limiter,
)
from shopguard.core.security.session_security import SessionStore
from shopguard.models.auth_models import (
    AuditEventType,
    LoginCredentials,
    LoginError,
    LoginOptions,
    LoginResult,
    Permission,
    Session,
    SessionOptions,
    SessionStatus,
    User,
    UserRole,
    role_level,
)
from shopguard.models.request_context import RequestContext
from shopguard.services.user_repository import InMemoryUserRepository, UserRepository

logger = logging.getLogger(__name__)

INTERNAL_ERROR_MESSAGE = "An unexpected error occurred. Please try again."

# SessionStatus -> code reported to callers; tampering looks like a missing session
VALIDATION_CODES = {
    SessionStatus.NOT_FOUND: AuthErrorCode.SESSION_NOT_FOUND,
    SessionStatus.TAMPERED: AuthErrorCode.SESSION_NOT_FOUND,
    SessionStatus.EXPIRED: AuthErrorCode.SESSION_EXPIRED,
    SessionStatus.IP_MISMATCH: AuthErrorCode.DEVICE_MISMATCH,
    SessionStatus.DEVICE_MISMATCH: AuthErrorCode.DEVICE_MISMATCH,
}


class TwoFactorVerifier(ABC):
    """Extension point for checking second-factor codes"""

    @abstractmethod
    async def verify(self, user: User, code: str) -> bool:
        pass


def _failure(
    code: AuthErrorCode,
    message: str,
    details: Optional[Dict[str, Any]] = None,
    requires_two_factor: bool = False,
) -> LoginResult:
    return LoginResult(
        success=False,
        requires_two_factor=requires_two_factor,
        error=LoginError(code=code.value, message=message, details=details or {}),
    )


def _safe_redirect(target: Optional[str], default: str) -> str:
    """Only same-site absolute paths are honoured"""
    if target and target.startswith("/") and not target.startswith("//") and "\\" not in target:
        return target
    return default


class AuthService:

    def __init__(
        self,
        users: UserRepository,
        session_store: SessionStore,
        login_limiter: RateLimiter,
        general_limiter: RateLimiter,
        csrf_guard: CSRFGuard,
        audit_log: AuditLog,
        config: Optional[Settings] = None,
        hasher: Optional[PasswordHasher] = None,
        two_factor_verifier: Optional[TwoFactorVerifier] = None,
    ):
        self.users = users
        self.session_store = session_store
        self.login_limiter = login_limiter
        self.general_limiter = general_limiter
        self.csrf_guard = csrf_guard
        self.audit_log = audit_log
        self.config = config or settings
        self.hasher = hasher or PasswordHasher(self.config.BCRYPT_ROUNDS)
        self.two_factor_verifier = two_factor_verifier

        # Unknown emails are checked against this so both paths cost one bcrypt verify
        self._dummy_hash = self.hasher.hash(secrets.token_urlsafe(24))

    # ------------------------------------------------------------------
    # Login / logout
    # ------------------------------------------------------------------

    async def login(
        self,
        ctx: RequestContext,
        credentials: LoginCredentials,
        options: Optional[LoginOptions] = None,
    ) -> LoginResult:
        """
        Authenticate with email and password.

        Order: rate limit -> presence -> lookup -> password verify (dummy
        verify for unknown users) -> account checks -> two-factor -> session.
        """
        options = options or LoginOptions()
        try:
            return await self._login(ctx, credentials, options)
        except Exception as e:
            logger.error(f"🚨 Login system error for {ctx.client_ip}", exc_info=True)
            self.audit_log.record(
                AuditEventType.LOGIN_FAILED,
                ctx,
                success=False,
                error="System error during login",
                metadata={"email": credentials.email, "error_type": type(e).__name__},
            )
            return _failure(AuthErrorCode.INTERNAL_ERROR, INTERNAL_ERROR_MESSAGE)

    async def _login(
        self,
        ctx: RequestContext,
        credentials: LoginCredentials,
        options: LoginOptions,
    ) -> LoginResult:
        client_ip = ctx.client_ip
        email = credentials.email.strip().lower()
        logger.info(f"🔐 Login attempt for: {email or '<empty>'} from {client_ip}")

        # 1. Rate limiting, before any credential work
        if self.login_limiter.is_limited(client_ip):
            remaining = self.login_limiter.remaining_attempts(client_ip)
            retry_after = self.login_limiter.retry_after(client_ip)
            self.audit_log.record(
                AuditEventType.LOGIN_FAILED,
                ctx,
                success=False,
                error="Rate limited",
                metadata={"email": email, "remaining_attempts": remaining, "rate_limit_type": "ip"},
            )
            return _failure(
                AuthErrorCode.RATE_LIMITED,
                "Too many login attempts. Please try again later.",
                {"remaining_attempts": remaining, "retry_after_seconds": retry_after},
            )

        # 2. Presence
        if not email or not credentials.password:
            self.audit_log.record(
                AuditEventType.LOGIN_FAILED, ctx, success=False,
                error="Missing credentials", metadata={"email": email},
            )
            return _failure(AuthErrorCode.INVALID_CREDENTIALS, "Email and password are required")

        # 3. Strength is only reported; existing accounts may predate the rules
        strength = validate_password_strength(credentials.password, self.config)
        if not strength.is_valid:
            logger.warning(f"⚠️ Weak password used for login: {email} ({len(strength.errors)} rule(s) failed)")

        # 4. Lookup and verification, one bcrypt verify either way
        record = await self.users.get_by_email(email)
        if record is not None:
            password_valid = await asyncio.to_thread(
                self.hasher.verify, credentials.password, record.password_hash
            )
        else:
            await asyncio.to_thread(self.hasher.verify, credentials.password, self._dummy_hash)
            password_valid = False

        if record is None or not password_valid:
            self.audit_log.record(
                AuditEventType.LOGIN_FAILED,
                ctx,
                user_id=record.id if record else None,
                success=False,
                error="Invalid credentials",
                metadata={"email": email, "user_found": record is not None},
            )
            return _failure(AuthErrorCode.INVALID_CREDENTIALS, "Invalid email or password")

        # 5. Account state
        if not record.is_active:
            self.audit_log.record(
                AuditEventType.LOGIN_FAILED, ctx, user_id=record.id,
                success=False, error="Account disabled",
            )
            return _failure(AuthErrorCode.ACCOUNT_DISABLED, "Account has been disabled. Please contact support.")

        if options.require_email_verification and not record.email_verified:
            self.audit_log.record(
                AuditEventType.LOGIN_FAILED, ctx, user_id=record.id,
                success=False, error="Email not verified",
            )
            return _failure(
                AuthErrorCode.EMAIL_NOT_VERIFIED,
                "Please verify your email address before logging in",
            )

        user = record.to_public()
        if user.two_factor_enabled:
            failure = await self._check_two_factor(ctx, user, credentials.two_factor_code)
            if failure is not None:
                return failure

        # 6. Success
        session = self.session_store.create(
            ctx,
            user.id,
            user.role,
            user.permissions,
            SessionOptions(remember=credentials.remember_me, two_factor_verified=user.two_factor_enabled),
        )
        self.login_limiter.reset(client_ip)

        now = self.session_store.clock.now()
        await self.users.record_login(user.id, now)
        user = user.model_copy(update={"last_login_at": now})

        self.audit_log.record(
            AuditEventType.LOGIN_SUCCESS,
            ctx,
            user_id=user.id,
            session_id=session.session_id,
            metadata={
                "role": user.role.value,
                "department": user.department,
                "remembered": credentials.remember_me,
                "two_factor_used": user.two_factor_enabled,
                "login_method": "email_password",
            },
        )
        logger.info(f"✅ Login successful for: {email}")

        return LoginResult(
            success=True,
            user=user,
            session=session,
            redirect_to=_safe_redirect(options.redirect_to, self.config.DEFAULT_LOGIN_REDIRECT),
        )

    async def _check_two_factor(
        self,
        ctx: RequestContext,
        user: User,
        code: Optional[str],
    ) -> Optional[LoginResult]:
        """None if the second factor passed, otherwise the failure to return"""
        if not code:
            self.audit_log.record(
                AuditEventType.LOGIN_FAILED, ctx, user_id=user.id,
                success=False, error="2FA required",
            )
            return _failure(
                AuthErrorCode.TWO_FACTOR_REQUIRED,
                "Two-factor authentication code required",
                requires_two_factor=True,
            )

        # No verifier configured means no code can be accepted
        verified = bool(self.two_factor_verifier and await self.two_factor_verifier.verify(user, code))
        if not verified:
            self.audit_log.record(
                AuditEventType.LOGIN_FAILED, ctx, user_id=user.id,
                success=False, error="Invalid 2FA code",
            )
            return _failure(
                AuthErrorCode.TWO_FACTOR_REQUIRED,
                "Invalid two-factor authentication code",
                requires_two_factor=True,
            )
        return None

    async def logout(self, ctx: RequestContext, response: Response) -> None:
        """End the current session and clear its cookie on the response"""
        validation = self.session_store.validate(ctx)
        if validation.is_valid and validation.session:
            self.session_store.invalidate(validation.session.session_id, ctx)
            logger.info(f"👋 Logout for user {validation.session.user_id}")
        self.session_store.clear_cookie(response)

    async def logout_all_devices(self, ctx: RequestContext) -> int:
        """End every session of the current user, this one included"""
        user, _ = await self.require_auth(ctx)
        count = self.session_store.invalidate_all_for_user(user.id, ctx)
        logger.info(f"👋 Logged out {count} session(s) for user {user.id}")
        return count

    # ------------------------------------------------------------------
    # Authorization
    # ------------------------------------------------------------------

    def _login_redirect(self, ctx: RequestContext) -> str:
        return f"{self.config.LOGIN_URL}?redirectTo={quote(ctx.path, safe='')}"

    async def require_auth(self, ctx: RequestContext) -> Tuple[User, Session]:
        """
        Resolve the authenticated user.

        Raises:
            AuthenticationRequired: No valid session, or its user is gone/disabled
            InternalError: Unexpected failure while resolving
        """
        try:
            validation = self.session_store.validate(ctx)
            if not validation.is_valid or validation.session is None:
                raise AuthenticationRequired(
                    code=VALIDATION_CODES.get(validation.reason, AuthErrorCode.SESSION_NOT_FOUND),
                    redirect_to=self._login_redirect(ctx),
                )

            session = validation.session
            record = await self.users.get_by_id(session.user_id)
            if record is None or not record.is_active:
                logger.info(f"🚫 User {session.user_id} unavailable, clearing session")
                self.session_store.invalidate(session.session_id, ctx, reason="user_unavailable")
                raise AuthenticationRequired(redirect_to=self.config.LOGIN_URL)

            return record.to_public(), session

        except AuthFlowError:
            raise
        except Exception:
            logger.error("🚨 Failed to resolve authenticated user", exc_info=True)
            raise InternalError()

    async def require_role(
        self,
        ctx: RequestContext,
        role: UserRole,
        allow_higher_roles: bool = True,
    ) -> Tuple[User, Session]:
        user, session = await self.require_auth(ctx)
        user_level = role_level(user.role)
        required_level = role_level(role)
        allowed = user_level >= required_level if allow_higher_roles else user_level == required_level

        self.audit_log.record(
            AuditEventType.PERMISSION_GRANTED if allowed else AuditEventType.PERMISSION_DENIED,
            ctx,
            user_id=user.id,
            session_id=session.session_id,
            success=allowed,
            error=None if allowed else "Insufficient role",
            metadata={
                "required_role": UserRole(role).value,
                "user_role": user.role.value,
                "allow_higher_roles": allow_higher_roles,
            },
        )
        if not allowed:
            logger.warning(f"🚫 Role {user.role.value} denied, {UserRole(role).value} required")
            raise permission_denied("Insufficient role", required=UserRole(role).value)
        return user, session

    async def require_permission(
        self,
        ctx: RequestContext,
        permission: Permission,
    ) -> Tuple[User, Session]:
        user, session = await self.require_auth(ctx)
        allowed = user.has_permission(permission)

        self.audit_log.record(
            AuditEventType.PERMISSION_GRANTED if allowed else AuditEventType.PERMISSION_DENIED,
            ctx,
            user_id=user.id,
            session_id=session.session_id,
            success=allowed,
            error=None if allowed else "Missing permission",
            metadata={"required_permission": Permission(permission).value},
        )
        if not allowed:
            logger.warning(f"🚫 User {user.id} lacks permission {Permission(permission).value}")
            raise permission_denied("Insufficient permissions", required=Permission(permission).value)
        return user, session

    async def has_role(self, ctx: RequestContext, role: UserRole, allow_higher_roles: bool = True) -> bool:
        try:
            await self.require_role(ctx, role, allow_higher_roles)
            return True
        except AuthFlowError:
            return False

    async def has_permission(self, ctx: RequestContext, permission: Permission) -> bool:
        try:
            await self.require_permission(ctx, permission)
            return True
        except AuthFlowError:
            return False

    # ------------------------------------------------------------------
    # Helpers for the HTTP layer
    # ------------------------------------------------------------------

    async def get_current_user(self, ctx: RequestContext) -> Optional[User]:
        """Current user or None; throttled by the general rate limiter"""
        if self.general_limiter.is_limited(ctx.client_ip):
            logger.warning(f"⚠️ General rate limit exceeded for IP: {ctx.client_ip}")
            return None
        try:
            user, _ = await self.require_auth(ctx)
        except AuthFlowError:
            return None
        return user

    async def refresh_current_session(self, ctx: RequestContext) -> Optional[Session]:
        return self.session_store.refresh(ctx)

    def validate_csrf(self, ctx: RequestContext, submitted: Optional[str]) -> bool:
        return self.csrf_guard.validate(ctx, submitted)

    async def get_session_info(self, ctx: RequestContext) -> Dict[str, Any]:
        validation = self.session_store.validate(ctx)
        user = None
        if validation.session:
            record = await self.users.get_by_id(validation.session.user_id)
            user = record.to_public() if record else None
        return {
            "is_valid": validation.is_valid,
            "reason": validation.reason.value,
            "session": self.session_store.get_session_info(validation.session.session_id)
            if validation.session else None,
            "user": user.model_dump(mode="json") if user else None,
            "timestamp": self.session_store.clock.now().isoformat(),
            "client_ip": ctx.client_ip,
            "user_agent": ctx.user_agent,
        }

    def get_security_health(self) -> Dict[str, Any]:
        return {
            "rate_limiting": {
                "login": self.login_limiter.get_metrics(),
                "general": self.general_limiter.get_metrics(),
            },
            "sessions": self.session_store.get_metrics(),
            "audit": self.audit_log.get_metrics(),
            "security": {
                "csrf_enabled": self.csrf_guard.enabled,
                "is_production": self.config.is_production,
                "password_min_length": self.config.PASSWORD_MIN_LENGTH,
                "bcrypt_rounds": self.hasher.rounds,
                "strict_ip_binding": self.config.SESSION_STRICT_IP_BINDING,
                "strict_device_binding": self.config.SESSION_STRICT_DEVICE_BINDING,
            },
            "timestamp": self.session_store.clock.now().isoformat(),
        }


def create_auth_service(
    config: Optional[Settings] = None,
    users: Optional[UserRepository] = None,
    clock: Optional[SystemClock] = None,
    two_factor_verifier: Optional[TwoFactorVerifier] = None,
) -> AuthService:
    """Wire an AuthService with its own audit log, limiters, session store and CSRF guard"""
    config = config or settings
    clock = clock or system_clock
    hasher = PasswordHasher(config.BCRYPT_ROUNDS)
    audit_log = AuditLog(clock=clock, config=config)
    session_store = SessionStore(config=config, audit_log=audit_log, clock=clock)
    return AuthService(
        users=users or InMemoryUserRepository(hasher),
        session_store=session_store,
        login_limiter=create_login_rate_limiter(config, clock),
        general_limiter=create_general_rate_limiter(config, clock),
        csrf_guard=CSRFGuard(config, audit_log=audit_log),
        audit_log=audit_log,
        config=config,
        hasher=hasher,
        two_factor_verifier=two_factor_verifier,
    )


# Global instance - initialized in main.py
auth_service: Optional[AuthService] = None


def get_auth_service() -> AuthService:
    """
    Get the global auth service instance.

    Follows FastAPI dependency injection pattern.
    """
    if auth_service is None:
        raise ServiceError("AuthService not initialized", service_name="AuthService")
    return auth_service


def init_auth_service(
    config: Optional[Settings] = None,
    users: Optional[UserRepository] = None,
) -> AuthService:
    """Initialize the global auth service"""
    global auth_service
    auth_service = create_auth_service(config, users)
    logger.info("🔐 Initialized AuthService")
    return auth_service
