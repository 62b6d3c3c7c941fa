# shopguard/core/security/headers.py
"""Security response headers sent with every response"""

from typing import Dict, Optional

from shopguard.core.config import Settings, settings


def get_security_headers(config: Optional[Settings] = None) -> Dict[str, str]:
    """Header set for the current environment; HSTS only in production"""
    config = config or settings
    headers = {
        "Content-Security-Policy": config.CSP_POLICY,
        "X-Content-Type-Options": "nosniff",
        "X-Frame-Options": "DENY",
        "X-XSS-Protection": "1; mode=block",
        "Referrer-Policy": "strict-origin-when-cross-origin",
        "Permissions-Policy": "geolocation=(), microphone=(), camera=()",
        "X-Permitted-Cross-Domain-Policies": "none",
    }
    if config.is_production:
        headers["Strict-Transport-Security"] = f"max-age={config.HSTS_MAX_AGE}; includeSubDomains"
    return headers
