# shopguard/core/security/cookies.py
"""
Cookie serialization contract.

Signed cookies are itsdangerous URL-safe timed tokens, salted with the cookie
name so a CSRF token can never be replayed as a session cookie. The first
configured secret signs; every configured secret is accepted when reading,
so secrets can be rotated without logging everybody out.
"""

import logging
from typing import Any, Dict, List, Optional

from itsdangerous import BadData, BadSignature, SignatureExpired, URLSafeTimedSerializer
from starlette.responses import Response

from shopguard.core.config import Settings, settings
from shopguard.core.exceptions import ConfigurationError, CookieTamperedError

logger = logging.getLogger(__name__)

SESSION_COOKIE_NAME = "session"
CSRF_COOKIE_NAME = "csrf-token"
PREFS_COOKIE_NAME = "theme"


class SignedCookie:
    """One named cookie with fixed attributes and optional signing"""

    def __init__(
        self,
        name: str,
        secrets: Optional[List[str]] = None,
        max_age: int = 86_400,
        http_only: bool = True,
        secure: bool = False,
        same_site: str = "strict",
        path: str = "/",
        signed: bool = True,
        signature_max_age: Optional[int] = None,
    ):
        if signed and not secrets:
            raise ConfigurationError(f"Signed cookie '{name}' needs a secret", component="cookies")
        self.name = name
        self.max_age = max_age
        self.http_only = http_only
        self.secure = secure
        self.same_site = same_site
        self.path = path
        self.signed = signed
        # Upper bound on token age, independent of the server-side record
        self.signature_max_age = signature_max_age or max_age
        self._serializer = None
        if signed:
            # itsdangerous signs with the last key and verifies with all of them
            self._serializer = URLSafeTimedSerializer(
                secret_key=list(reversed(secrets)),
                salt=f"shopguard-cookie-{name}",
            )

    def encode(self, value: Any) -> str:
        if not self.signed:
            return str(value)
        return self._serializer.dumps(value)

    def decode(self, raw: str) -> Any:
        """
        Verify and decode a cookie value.

        Raises:
            CookieTamperedError: Bad or expired signature, or undecodable payload
        """
        if not self.signed:
            return raw
        try:
            return self._serializer.loads(raw, max_age=self.signature_max_age)
        except SignatureExpired:
            raise CookieTamperedError("Cookie signature expired", cookie_name=self.name)
        except BadSignature:
            raise CookieTamperedError("Cookie signature mismatch", cookie_name=self.name)
        except (BadData, UnicodeError) as e:
            raise CookieTamperedError(
                "Cookie payload could not be decoded",
                cookie_name=self.name,
                details={"error_type": type(e).__name__},
            )

    def parse(self, cookies: Dict[str, str]) -> Optional[Any]:
        """Decoded value, or None if the cookie is absent"""
        raw = cookies.get(self.name)
        if not raw:
            return None
        return self.decode(raw)

    def set_on(self, response: Response, value: Any, max_age: Optional[int] = None) -> None:
        response.set_cookie(
            key=self.name,
            value=self.encode(value),
            max_age=self.max_age if max_age is None else max_age,
            path=self.path,
            secure=self.secure,
            httponly=self.http_only,
            samesite=self.same_site,
        )

    def delete_on(self, response: Response) -> None:
        response.delete_cookie(
            key=self.name,
            path=self.path,
            secure=self.secure,
            httponly=self.http_only,
            samesite=self.same_site,
        )


def create_session_cookie(config: Optional[Settings] = None) -> SignedCookie:
    config = config or settings
    return SignedCookie(
        SESSION_COOKIE_NAME,
        secrets=config.cookie_secrets,
        max_age=config.SESSION_MAX_AGE,
        secure=config.is_production,
        same_site="strict",
        # Remembered sessions outlive the default cookie lifetime
        signature_max_age=max(config.SESSION_MAX_AGE, config.REMEMBER_ME_MAX_AGE),
    )


def create_csrf_cookie(config: Optional[Settings] = None) -> SignedCookie:
    config = config or settings
    return SignedCookie(
        CSRF_COOKIE_NAME,
        secrets=config.cookie_secrets,
        max_age=config.CSRF_MAX_AGE,
        secure=config.is_production,
        same_site="strict",
    )


def create_prefs_cookie(config: Optional[Settings] = None) -> SignedCookie:
    """UI preferences only; readable by scripts and never trusted"""
    config = config or settings
    return SignedCookie(
        PREFS_COOKIE_NAME,
        max_age=config.PREFS_COOKIE_MAX_AGE,
        http_only=False,
        secure=config.is_production,
        same_site="lax",
        signed=False,
    )
