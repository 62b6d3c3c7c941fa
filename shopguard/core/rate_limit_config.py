# shopguard/core/rate_limit_config.py
"""
Per-route rate limiting for the HTTP surface (slowapi).

These limits sit in front of the security core's own RateLimiter instances
and only protect the endpoints from floods.
"""

from fastapi import Request
from slowapi import Limiter
from slowapi.util import get_remote_address

from shopguard.models.request_context import RequestContext


def get_real_ip(request: Request) -> str:
    """
    Get the real IP address, considering proxy headers.

    Uses the same header order as the security core, so slowapi and the
    login limiter key on the same client.
    """
    ip = RequestContext.from_request(request).client_ip
    if ip != "unknown":
        return ip

    # Fallback to direct connection IP
    return get_remote_address(request)


# Route limits, keyed by endpoint group
ROUTE_LIMITS = {
    "login": "20/minute",
    "session": "60/minute",
    "cart": "60/minute",
    "admin": "30/minute",
}

RATE_LIMIT_MESSAGES = {
    "default": "Too many requests. Please wait a moment and try again.",
    "login": "Too many login requests. Please wait a minute.",
}


def get_rate_limit_message(endpoint: str) -> str:
    """Get custom error message for rate limited endpoint"""
    return RATE_LIMIT_MESSAGES.get(endpoint, RATE_LIMIT_MESSAGES["default"])


limiter = Limiter(key_func=get_real_ip)
