# shopguard/core/security/passwords.py
"""Password hashing (bcrypt) and strength rules"""

import logging
import re
import secrets
import string
from typing import List, Optional

import bcrypt
from pydantic import BaseModel, Field

from shopguard.core.config import Settings, settings

logger = logging.getLogger(__name__)

# bcrypt only looks at the first 72 bytes; newer releases refuse longer input
BCRYPT_MAX_BYTES = 72

SYMBOL_PATTERN = re.compile(r"[!@#$%^&*(),.?\":{}|<>_\-+=\[\]\\/;'`~]")


def _encode(password: str) -> bytes:
    return password.encode("utf-8")[:BCRYPT_MAX_BYTES]


class PasswordHasher:
    """Thin wrapper so the cost factor comes from settings and tests can lower it"""

    def __init__(self, rounds: Optional[int] = None):
        self.rounds = rounds or settings.BCRYPT_ROUNDS

    def hash(self, password: str) -> str:
        return bcrypt.hashpw(_encode(password), bcrypt.gensalt(rounds=self.rounds)).decode("utf-8")

    def verify(self, password: str, password_hash: str) -> bool:
        return bcrypt.checkpw(_encode(password), password_hash.encode("utf-8"))


class PasswordStrength(BaseModel):
    is_valid: bool
    score: int = 0
    errors: List[str] = Field(default_factory=list)


def validate_password_strength(password: str, config: Optional[Settings] = None) -> PasswordStrength:
    """Check a password against the configured complexity rules"""
    config = config or settings
    errors = []
    checks = 0
    passed = 0

    checks += 1
    if len(password) < config.PASSWORD_MIN_LENGTH:
        errors.append(f"Password must be at least {config.PASSWORD_MIN_LENGTH} characters")
    else:
        passed += 1

    rules = [
        (config.PASSWORD_REQUIRE_UPPERCASE, r"[A-Z]", "an uppercase letter"),
        (config.PASSWORD_REQUIRE_LOWERCASE, r"[a-z]", "a lowercase letter"),
        (config.PASSWORD_REQUIRE_NUMBERS, r"\d", "a number"),
    ]
    for required, pattern, label in rules:
        if not required:
            continue
        checks += 1
        if re.search(pattern, password):
            passed += 1
        else:
            errors.append(f"Password must contain {label}")

    if config.PASSWORD_REQUIRE_SYMBOLS:
        checks += 1
        if SYMBOL_PATTERN.search(password):
            passed += 1
        else:
            errors.append("Password must contain a special character")

    return PasswordStrength(
        is_valid=not errors,
        score=round(100 * passed / checks),
        errors=errors,
    )


def generate_secure_password(length: int = 16) -> str:
    """Random password that satisfies every default complexity rule"""
    if length < 4:
        raise ValueError("length must be at least 4")
    symbols = "!@#$%^&*"
    required = [
        secrets.choice(string.ascii_uppercase),
        secrets.choice(string.ascii_lowercase),
        secrets.choice(string.digits),
        secrets.choice(symbols),
    ]
    alphabet = string.ascii_letters + string.digits + symbols
    rest = [secrets.choice(alphabet) for _ in range(length - len(required))]
    chars = required + rest
    secrets.SystemRandom().shuffle(chars)
    return "".join(chars)
