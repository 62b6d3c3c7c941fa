# shopguard/models/auth_models.py
"""
Identity, session and audit models.

Roles are an ordered set (guest < user < manager < admin). Permissions are a
finite set of named grants; ROLE_PERMISSIONS is the static table mapping
each role to its default grants.
"""

import hashlib
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field, model_validator


class UserRole(str, Enum):
    """Ordered user roles, lowest first"""
    GUEST = "guest"
    USER = "user"
    MANAGER = "manager"
    ADMIN = "admin"


ROLE_HIERARCHY: List[UserRole] = [
    UserRole.GUEST,
    UserRole.USER,
    UserRole.MANAGER,
    UserRole.ADMIN,
]


def role_level(role: UserRole) -> int:
    """Position of a role in ROLE_HIERARCHY (guest is 0)"""
    return ROLE_HIERARCHY.index(UserRole(role))


class Permission(str, Enum):
    """Named grants; a user carries a frozenset of these"""
    # Basic
    READ = "read"
    WRITE = "write"
    DELETE = "delete"

    # User management
    USER_CREATE = "user_create"
    USER_READ = "user_read"
    USER_UPDATE = "user_update"
    USER_DELETE = "user_delete"

    # Content management
    CONTENT_CREATE = "content_create"
    CONTENT_PUBLISH = "content_publish"
    CONTENT_MODERATE = "content_moderate"

    # System
    SYSTEM_CONFIG = "system_config"
    SYSTEM_ADMIN = "system_admin"
    ANALYTICS_VIEW = "analytics_view"

    # Commerce
    ORDER_VIEW = "order_view"
    ORDER_MANAGE = "order_manage"
    INVENTORY_MANAGE = "inventory_manage"


ROLE_PERMISSIONS: Dict[UserRole, FrozenSet[Permission]] = {
    UserRole.GUEST: frozenset({Permission.READ}),
    UserRole.USER: frozenset({
        Permission.READ,
        Permission.WRITE,
        Permission.CONTENT_CREATE,
        Permission.ORDER_VIEW,
    }),
    UserRole.MANAGER: frozenset({
        Permission.READ,
        Permission.WRITE,
        Permission.DELETE,
        Permission.USER_READ,
        Permission.USER_UPDATE,
        Permission.CONTENT_CREATE,
        Permission.CONTENT_PUBLISH,
        Permission.CONTENT_MODERATE,
        Permission.ANALYTICS_VIEW,
        Permission.ORDER_VIEW,
        Permission.ORDER_MANAGE,
        Permission.INVENTORY_MANAGE,
    }),
    UserRole.ADMIN: frozenset(Permission),
}


def permissions_for_role(role: UserRole) -> FrozenSet[Permission]:
    return ROLE_PERMISSIONS.get(UserRole(role), frozenset())


def derive_cart_id(user_id: str, session_id: str) -> str:
    """Cart id is a pure function of (user_id, session_id)"""
    digest = hashlib.sha256(f"{user_id}-{session_id}".encode("utf-8")).hexdigest()
    return f"cart-{user_id}-{digest[:8]}"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class User(BaseModel):
    """Identity record owned by the user repository; read-only to the core"""
    id: str
    email: str
    name: str
    role: UserRole = UserRole.USER
    permissions: FrozenSet[Permission] = Field(default_factory=frozenset)
    department: Optional[str] = None
    is_active: bool = True
    email_verified: bool = False
    two_factor_enabled: bool = False
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    last_login_at: Optional[datetime] = None

    def has_permission(self, permission: Permission) -> bool:
        return permission in self.permissions


class UserRecord(User):
    """Stored form of a user; the hash never leaves the repository layer"""
    password_hash: str

    def to_public(self) -> User:
        return User(**self.model_dump(exclude={"password_hash"}))


class SessionOptions(BaseModel):
    """Options for SessionStore.create"""
    remember: bool = False
    elevate: bool = False
    custom_expiry_minutes: Optional[int] = Field(default=None, gt=0)
    two_factor_verified: bool = False


class Session(BaseModel):
    """
    Server-side record behind the signed session cookie.

    Role and permissions are a snapshot taken at creation. The cart id is
    computed, never stored.
    """
    session_id: str
    user_id: str
    role: UserRole
    permissions: FrozenSet[Permission] = Field(default_factory=frozenset)
    created_at: datetime
    expires_at: datetime
    last_activity: datetime
    ip_address: str = "unknown"
    user_agent: str = "unknown"
    device_fingerprint: str = ""
    is_remembered: bool = False
    two_factor_verified: bool = False
    is_elevated: bool = False
    elevated_until: Optional[datetime] = None

    @computed_field
    @property
    def cart_id(self) -> str:
        return derive_cart_id(self.user_id, self.session_id)

    @model_validator(mode="after")
    def check_expiry(self) -> "Session":
        if self.expires_at <= self.created_at:
            raise ValueError("expires_at must be later than created_at")
        return self

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now

    def elevation_active(self, now: datetime) -> bool:
        """Elevation counts only while elevated_until lies in the future"""
        return bool(self.is_elevated and self.elevated_until and self.elevated_until > now)


class SessionStatus(str, Enum):
    VALID = "valid"
    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    TAMPERED = "tampered"
    IP_MISMATCH = "ip_mismatch"
    DEVICE_MISMATCH = "device_mismatch"


class SessionValidation(BaseModel):
    """Outcome of SessionStore.validate"""
    session: Optional[Session] = None
    is_valid: bool = False
    reason: SessionStatus = SessionStatus.NOT_FOUND


class LoginCredentials(BaseModel):
    email: str = ""
    password: str = ""
    remember_me: bool = False
    two_factor_code: Optional[str] = None


class LoginOptions(BaseModel):
    redirect_to: Optional[str] = None
    require_email_verification: bool = True


class LoginError(BaseModel):
    code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class LoginResult(BaseModel):
    """Structured login outcome; login never raises"""
    success: bool
    user: Optional[User] = None
    session: Optional[Session] = None
    redirect_to: Optional[str] = None
    requires_two_factor: bool = False
    error: Optional[LoginError] = None


class AuditEventType(str, Enum):
    """Closed set of audited security events"""
    LOGIN_SUCCESS = "login_success"
    LOGIN_FAILED = "login_failed"
    LOGOUT = "logout"
    SESSION_CREATED = "session_created"
    SESSION_EXPIRED = "session_expired"
    SESSION_REVOKED = "session_revoked"
    PASSWORD_CHANGED = "password_changed"
    PERMISSION_DENIED = "permission_denied"
    PERMISSION_GRANTED = "permission_granted"
    ACCOUNT_LOCKED = "account_locked"
    SUSPICIOUS_ACTIVITY = "suspicious_activity"
    COOKIE_TAMPERED = "cookie_tampered"
    CART_MODIFIED = "cart_modified"
    USER_CREATED = "user_created"
    USER_UPDATED = "user_updated"
    USER_DELETED = "user_deleted"


class AuditEvent(BaseModel):
    """Immutable audit record"""
    model_config = ConfigDict(frozen=True)

    id: str
    event_type: AuditEventType
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    ip_address: str = "unknown"
    user_agent: str = "unknown"
    timestamp: datetime
    success: bool = True
    error: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
