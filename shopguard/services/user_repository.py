# shopguard/services/user_repository.py
"""
User lookup collaborator.

The security core only reads users. UserRepository is the seam a database
backed implementation plugs into; InMemoryUserRepository backs the demo app
and the tests.
"""

import logging
import threading
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from shopguard.core.security.passwords import PasswordHasher
from shopguard.models.auth_models import (
    Permission,
    User,
    UserRecord,
    UserRole,
    permissions_for_role,
)

logger = logging.getLogger(__name__)

DEMO_PASSWORD = "password"


class UserRepository(ABC):

    @abstractmethod
    async def get_by_email(self, email: str) -> Optional[UserRecord]:
        pass

    @abstractmethod
    async def get_by_id(self, user_id: str) -> Optional[UserRecord]:
        pass

    @abstractmethod
    async def record_login(self, user_id: str, at: datetime) -> None:
        """Stamp last_login_at after a successful login"""
        pass


class InMemoryUserRepository(UserRepository):

    def __init__(self, hasher: Optional[PasswordHasher] = None):
        self.hasher = hasher or PasswordHasher()
        self._users: Dict[str, UserRecord] = {}
        self._lock = threading.RLock()

    def add_user(
        self,
        email: str,
        password: str,
        name: str,
        role: UserRole = UserRole.USER,
        permissions: Optional[Iterable[Permission]] = None,
        user_id: Optional[str] = None,
        **flags,
    ) -> User:
        """Store a user; flags are passed through (is_active, email_verified, ...)"""
        record = UserRecord(
            id=user_id or str(uuid.uuid4()),
            email=email.strip().lower(),
            name=name,
            role=role,
            permissions=frozenset(permissions) if permissions is not None else permissions_for_role(role),
            password_hash=self.hasher.hash(password),
            **flags,
        )
        with self._lock:
            if any(u.email == record.email for u in self._users.values()):
                raise ValueError(f"User with email {record.email} already exists")
            self._users[record.id] = record
        return record.to_public()

    async def get_by_email(self, email: str) -> Optional[UserRecord]:
        needle = email.strip().lower()
        with self._lock:
            for user in self._users.values():
                if user.email == needle:
                    return user.model_copy(deep=True)
        return None

    async def get_by_id(self, user_id: str) -> Optional[UserRecord]:
        with self._lock:
            user = self._users.get(user_id)
            return user.model_copy(deep=True) if user else None

    async def record_login(self, user_id: str, at: datetime) -> None:
        with self._lock:
            user = self._users.get(user_id)
            if user:
                user.last_login_at = at
                user.updated_at = at

    def list_users(self) -> List[User]:
        with self._lock:
            return [u.to_public() for u in self._users.values()]


def seed_demo_users(repository: InMemoryUserRepository) -> List[User]:
    """Admin, manager and user accounts, all active and verified, password 'password'"""
    demo = [
        ("1", "admin@example.com", "Admin User", UserRole.ADMIN, "IT"),
        ("2", "manager@example.com", "Manager User", UserRole.MANAGER, "Sales"),
        ("3", "user@example.com", "Regular User", UserRole.USER, None),
    ]
    users = [
        repository.add_user(
            email,
            DEMO_PASSWORD,
            name,
            role=role,
            user_id=user_id,
            department=department,
            is_active=True,
            email_verified=True,
            two_factor_enabled=False,
        )
        for user_id, email, name, role, department in demo
    ]
    logger.info(f"👤 Seeded {len(users)} demo users")
    return users
