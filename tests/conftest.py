# tests/conftest.py
"""
Shared fixtures for the security core tests.

Environment overrides run before any shopguard import so the module-level
settings pick up a fast bcrypt cost and a production-grade cookie secret.
"""

import os
import tempfile

os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("COOKIE_SECRET", "test-cookie-secret-0123456789abcdef-0123456789")
os.environ.setdefault("LOG_DIR", tempfile.mkdtemp(prefix="shopguard-logs-"))

from datetime import datetime, timedelta, timezone
from typing import Callable

import pytest

from shopguard.core.clock import SystemClock
from shopguard.core.config import Settings
from shopguard.core.security.audit import AuditLog
from shopguard.core.security.csrf import CSRFGuard
from shopguard.core.security.passwords import PasswordHasher
from shopguard.core.security.rate_limiter import create_general_rate_limiter, create_login_rate_limiter
from shopguard.core.security.session_security import SessionStore
from shopguard.models.request_context import RequestContext
from shopguard.services.auth_service import AuthService
from shopguard.services.cart_service import SecureCartStore
from shopguard.services.product_catalog import ProductCatalog
from shopguard.services.user_repository import InMemoryUserRepository, seed_demo_users

TEST_SECRET = "test-cookie-secret-0123456789abcdef-0123456789"


class ManualClock(SystemClock):
    """Clock that only moves when a test says so"""

    def __init__(self, start: datetime = None):
        self._now = start or datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)
        self._monotonic = 10_000.0

    def now(self) -> datetime:
        return self._now

    def monotonic(self) -> float:
        return self._monotonic

    def advance(self, seconds: float = 0, **kwargs) -> None:
        delta = timedelta(seconds=seconds, **kwargs)
        self._now += delta
        self._monotonic += delta.total_seconds()


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def make_settings() -> Callable[..., Settings]:
    """Settings factory with test defaults; keyword overrides win"""
    def factory(**overrides) -> Settings:
        values = {
            "COOKIE_SECRET": TEST_SECRET,
            "BCRYPT_ROUNDS": 4,
            "ENVIRONMENT": "development",
            "REDIS_URL": None,
        }
        values.update(overrides)
        return Settings(**values)
    return factory


@pytest.fixture
def test_settings(make_settings):
    return make_settings()


@pytest.fixture
def make_ctx() -> Callable[..., RequestContext]:
    def factory(
        ip: str = "203.0.113.10",
        user_agent: str = "Mozilla/5.0 (pytest)",
        **extra_headers
    ) -> RequestContext:
        headers = {
            "user-agent": user_agent,
            "accept-language": "en-US,en;q=0.9",
            "accept-encoding": "gzip, deflate",
        }
        headers.update({k.replace("_", "-"): v for k, v in extra_headers.items()})
        return RequestContext(headers=headers, client_host=ip, path="/account")
    return factory


@pytest.fixture
def ctx(make_ctx):
    return make_ctx()


@pytest.fixture
def audit_log(clock, test_settings):
    return AuditLog(clock=clock, config=test_settings)


@pytest.fixture
def session_store(test_settings, audit_log, clock):
    return SessionStore(config=test_settings, audit_log=audit_log, clock=clock)


@pytest.fixture
def hasher():
    return PasswordHasher(rounds=4)


@pytest.fixture
def user_repo(hasher):
    repo = InMemoryUserRepository(hasher)
    seed_demo_users(repo)
    return repo


@pytest.fixture
def catalog():
    return ProductCatalog()


@pytest.fixture
def cart_store(session_store, catalog, test_settings):
    return SecureCartStore(session_store, catalog=catalog, config=test_settings)


@pytest.fixture
def make_auth_service(user_repo, audit_log, clock, hasher):
    """AuthService factory sharing the test clock and audit log"""
    def factory(config: Settings, **kwargs) -> AuthService:
        return AuthService(
            users=kwargs.pop("users", user_repo),
            session_store=SessionStore(config=config, audit_log=audit_log, clock=clock),
            login_limiter=create_login_rate_limiter(config, clock),
            general_limiter=create_general_rate_limiter(config, clock),
            csrf_guard=CSRFGuard(config, audit_log=audit_log),
            audit_log=audit_log,
            config=config,
            hasher=hasher,
            **kwargs
        )
    return factory


@pytest.fixture
def auth_service(make_auth_service, test_settings):
    return make_auth_service(test_settings)

