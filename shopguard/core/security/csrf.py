# shopguard/core/security/csrf.py
"""
CSRF protection for state-changing requests.

Double-submit pattern: the token lives in a signed, httpOnly, SameSite=Strict
cookie and must be echoed back in the X-CSRF-Token header (or a form field).
"""

import hmac
import logging
import secrets
from typing import Optional

from starlette.responses import Response

from shopguard.core.config import Settings, settings
from shopguard.core.exceptions import CookieTamperedError
from shopguard.core.security.audit import AuditLog
from shopguard.core.security.cookies import SignedCookie, create_csrf_cookie
from shopguard.models.auth_models import AuditEventType
from shopguard.models.request_context import RequestContext

logger = logging.getLogger(__name__)

CSRF_HEADER_NAME = "x-csrf-token"
CSRF_FORM_FIELD = "csrf_token"


class CSRFGuard:

    def __init__(
        self,
        config: Optional[Settings] = None,
        cookie: Optional[SignedCookie] = None,
        audit_log: Optional[AuditLog] = None,
    ):
        self.config = config or settings
        self.cookie = cookie or create_csrf_cookie(self.config)
        self.audit_log = audit_log
        # Hex encoding doubles the byte count
        self.token_length = self.config.CSRF_TOKEN_BYTES * 2

    @property
    def enabled(self) -> bool:
        return self.config.CSRF_PROTECTION

    def issue_token(self) -> str:
        return secrets.token_hex(self.config.CSRF_TOKEN_BYTES)

    def set_cookie(self, response: Response, token: str) -> None:
        self.cookie.set_on(response, token)

    def issue(self, response: Response) -> str:
        """New token, stored in the CSRF cookie on the response"""
        token = self.issue_token()
        self.set_cookie(response, token)
        return token

    def validate(self, ctx: RequestContext, submitted: Optional[str]) -> bool:
        if not self.enabled:
            logger.debug("CSRF protection disabled; accepting request")
            return True

        if not submitted or len(submitted) != self.token_length:
            logger.warning(f"⚠️ CSRF token missing or malformed from {ctx.client_ip}")
            return False

        try:
            stored = self.cookie.parse(ctx.cookies)
        except CookieTamperedError as e:
            logger.warning(f"⚠️ Tampered CSRF cookie from {ctx.client_ip}")
            if self.audit_log:
                self.audit_log.record(
                    AuditEventType.COOKIE_TAMPERED,
                    ctx,
                    success=False,
                    error=e.message,
                    metadata={"cookie": self.cookie.name},
                )
            return False

        if not isinstance(stored, str) or len(stored) != self.token_length:
            logger.warning(f"⚠️ No CSRF cookie for request from {ctx.client_ip}")
            return False

        if not hmac.compare_digest(stored.encode("utf-8"), submitted.encode("utf-8")):
            logger.warning(f"⚠️ CSRF token mismatch from {ctx.client_ip}")
            return False

        return True
