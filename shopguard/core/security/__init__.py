"""
Security layer for ShopGuard.

Centralizes all security-related primitives:
- Server-side sessions behind signed cookies
- Sliding-window rate limiting with blacklisting
- CSRF tokens
- Bounded audit trail
- Password hashing and response headers

Business services (cart, auth orchestration) sit on top of this layer and
never reach into the stores' internals.
"""

from .audit import AuditLog
from .cookies import SignedCookie
from .csrf import CSRFGuard
from .headers import get_security_headers
from .passwords import PasswordHasher, validate_password_strength
from .rate_limiter import RateLimiter, create_general_rate_limiter, create_login_rate_limiter
from .session_security import SessionStore

__all__ = [
    'AuditLog',
    'CSRFGuard',
    'PasswordHasher',
    'RateLimiter',
    'SessionStore',
    'SignedCookie',
    'create_general_rate_limiter',
    'create_login_rate_limiter',
    'get_security_headers',
    'validate_password_strength',
]
