# shopguard/core/exceptions.py
"""
Exceptions for the session and security core.

Login failures are never raised; they come back as a LoginResult. The
exceptions here cover authorization signals (AuthenticationRequired,
PermissionDenied), tampered cookies, cart rule violations and
configuration problems.
"""

from enum import Enum
from typing import Optional, Dict, Any


class AuthErrorCode(str, Enum):
    """Closed taxonomy of authentication and authorization outcomes"""
    INVALID_CREDENTIALS = "invalid_credentials"
    RATE_LIMITED = "rate_limited"
    ACCOUNT_DISABLED = "account_disabled"
    EMAIL_NOT_VERIFIED = "email_not_verified"
    TWO_FACTOR_REQUIRED = "two_factor_required"
    SESSION_NOT_FOUND = "session_not_found"
    SESSION_EXPIRED = "session_expired"
    TAMPERED = "tampered"
    DEVICE_MISMATCH = "device_mismatch"
    PERMISSION_DENIED = "permission_denied"
    INTERNAL_ERROR = "internal_error"


class ShopGuardError(Exception):
    """Base exception for all security core errors"""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        """
        Initialize base exception.

        Args:
            message: Human-readable error message
            details: Optional additional error details
        """
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class AuthFlowError(ShopGuardError):
    """
    Expected authorization outcome carrying an AuthErrorCode.

    These are routine control-flow signals; the HTTP layer turns them into
    a redirect, a 401 or a 403.
    """

    status_code = 400

    def __init__(
        self,
        message: str,
        code: AuthErrorCode,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, details)
        self.code = code
        self.details['code'] = code.value

    def to_dict(self) -> Dict[str, Any]:
        """Client-safe representation (no internal details)"""
        return {"code": self.code.value, "message": self.message}


class AuthenticationRequired(AuthFlowError):
    """No valid session; caller should redirect to login or answer 401"""

    status_code = 401

    def __init__(
        self,
        message: str = "Authentication required",
        code: AuthErrorCode = AuthErrorCode.SESSION_NOT_FOUND,
        redirect_to: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, code, details)
        self.redirect_to = redirect_to
        if redirect_to:
            self.details['redirect_to'] = redirect_to

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        if self.redirect_to:
            data["redirect_to"] = self.redirect_to
        return data


class PermissionDenied(AuthFlowError):
    """Authenticated, but the role or permission check failed (403)"""

    status_code = 403

    def __init__(
        self,
        message: str = "Forbidden",
        required: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, AuthErrorCode.PERMISSION_DENIED, details)
        self.required = required
        if required:
            self.details['required'] = required


class InternalError(AuthFlowError):
    """Unexpected failure, already logged; message is safe to show"""

    status_code = 500

    def __init__(
        self,
        message: str = "An unexpected error occurred. Please try again.",
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, AuthErrorCode.INTERNAL_ERROR, details)


class CookieTamperedError(ShopGuardError):
    """Signed cookie failed verification or could not be decoded"""

    def __init__(
        self,
        message: str,
        cookie_name: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, details)
        self.cookie_name = cookie_name

        if cookie_name:
            self.details['cookie'] = cookie_name


class CartError(ShopGuardError):
    """Cart rule violation; the cart is left unchanged"""

    def __init__(
        self,
        message: str,
        cart_id: Optional[str] = None,
        product_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, details)
        self.cart_id = cart_id
        self.product_id = product_id

        if cart_id:
            self.details['cart_id'] = cart_id
        if product_id:
            self.details['product_id'] = product_id


class ConfigurationError(ShopGuardError):
    """Errors in system configuration and initialization"""

    def __init__(
        self,
        message: str,
        component: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        """
        Initialize configuration error.

        Args:
            message: Error description
            component: Component with configuration issue
            details: Additional configuration context
        """
        super().__init__(message, details)
        self.component = component

        if component:
            self.details['component'] = component


class ServiceError(ShopGuardError):
    """Errors in external service interactions (Redis)"""

    def __init__(
        self,
        message: str,
        service_name: Optional[str] = None,
        operation: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, details)
        self.service_name = service_name
        self.operation = operation

        if service_name:
            self.details['service'] = service_name
        if operation:
            self.details['operation'] = operation


# Convenience functions for creating common errors

def permission_denied(message: str, required: str) -> PermissionDenied:
    """Create a 403 signal naming the missing role or permission."""
    return PermissionDenied(message, required=required)


def cart_error(message: str, cart_id: str = None, product_id: str = None) -> CartError:
    """Create a cart error with cart context."""
    return CartError(message, cart_id=cart_id, product_id=product_id)
