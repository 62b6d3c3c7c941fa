# shopguard/core/config.py
from typing import List, Optional
import logging

from pydantic import Field
from pydantic_settings import BaseSettings

from shopguard.core.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

DEV_COOKIE_SECRET = "dev-secret-change-in-production"
MIN_COOKIE_SECRET_LENGTH = 32


class Settings(BaseSettings):
    """Security core settings, read from the environment or .env"""
    APP_NAME: str = "ShopGuard"
    ENVIRONMENT: str = "development"
    DEBUG: bool = False

    # Cookie signing
    COOKIE_SECRET: str = DEV_COOKIE_SECRET
    COOKIE_SECRET_FALLBACKS: List[str] = Field(default_factory=list)

    # Rate limiting
    RATE_LIMIT_LOGIN_ATTEMPTS: int = 5
    RATE_LIMIT_LOGIN_WINDOW_MS: int = 300_000       # 5 minutes
    RATE_LIMIT_LOGIN_BLOCK_MS: int = 3_600_000      # 1 hour
    RATE_LIMIT_GENERAL: int = 100
    RATE_LIMIT_GENERAL_WINDOW_MS: int = 900_000     # 15 minutes
    RATE_LIMIT_GENERAL_BLOCK_MS: int = 900_000      # 15 minutes

    # Passwords
    PASSWORD_MIN_LENGTH: int = 8
    PASSWORD_REQUIRE_UPPERCASE: bool = True
    PASSWORD_REQUIRE_LOWERCASE: bool = True
    PASSWORD_REQUIRE_NUMBERS: bool = True
    PASSWORD_REQUIRE_SYMBOLS: bool = True
    BCRYPT_ROUNDS: int = 12

    # CSRF
    CSRF_PROTECTION: bool = True
    CSRF_TOKEN_BYTES: int = 32
    CSRF_MAX_AGE: int = 3600

    # Sessions
    SESSION_MAX_AGE: int = 86_400                   # 24 hours
    REMEMBER_ME_MAX_AGE: int = 2_592_000            # 30 days
    MAX_CONCURRENT_SESSIONS: int = 5
    SESSION_ELEVATION_MINUTES: int = 15
    SESSION_STRICT_IP_BINDING: bool = False
    SESSION_STRICT_DEVICE_BINDING: bool = False

    # Audit
    AUDIT_LOG_CAPACITY: int = 1000
    AUDIT_REDIS_KEY: str = "shopguard:audit"

    # Cart
    GUEST_CART_TTL_DAYS: int = 7
    CART_MAX_QUANTITY_PER_REQUEST: int = 10
    CART_CURRENCY: str = "USD"

    # Security headers
    CSP_POLICY: str = "default-src 'self'; script-src 'self' 'unsafe-inline'; style-src 'self' 'unsafe-inline';"
    HSTS_MAX_AGE: int = 31_536_000                  # 1 year
    PREFS_COOKIE_MAX_AGE: int = 31_536_000

    # Routing
    DEFAULT_LOGIN_REDIRECT: str = "/dashboard"
    LOGIN_URL: str = "/auth/login"

    # Background maintenance
    CLEANUP_INTERVAL_SECONDS: int = 300

    # Demo accounts for the in-memory user repository
    SEED_DEMO_USERS: bool = True

    # Optional audit mirror
    REDIS_URL: Optional[str] = None

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "extra": "ignore"
    }

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() == "production"

    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT.lower() == "development"

    @property
    def cookie_secrets(self) -> List[str]:
        """Active secret first, then rotated-out secrets still accepted for reading"""
        return [self.COOKIE_SECRET, *self.COOKIE_SECRET_FALLBACKS]


# Module-level singleton
settings = Settings()


def validate_security_settings(config: Optional[Settings] = None) -> bool:
    """
    Check the cookie secret before the app starts serving.

    In production a weak or default secret is fatal. In development it is
    only reported, so local runs work without a .env file.

    Returns:
        True if the configuration is production grade, False otherwise

    Raises:
        ConfigurationError: In production, if COOKIE_SECRET is unusable
    """
    config = config or settings
    problems = []

    if len(config.COOKIE_SECRET) < MIN_COOKIE_SECRET_LENGTH:
        problems.append(f"COOKIE_SECRET must be at least {MIN_COOKIE_SECRET_LENGTH} characters")
    if config.COOKIE_SECRET == DEV_COOKIE_SECRET:
        problems.append("COOKIE_SECRET must be changed from the development default")

    if not problems:
        logger.info("✅ Security configuration validated")
        return True

    if config.is_production:
        raise ConfigurationError(
            "; ".join(problems),
            component="cookies",
            details={"environment": config.ENVIRONMENT}
        )

    for problem in problems:
        logger.warning(f"⚠️ {problem} (ignored outside production)")
    return False
