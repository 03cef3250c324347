from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    ADMIN = "admin"
    TEACHER = "teacher"
    STUDENT = "student"
    PARENT = "parent"


class AccountStatus(str, Enum):
    """Persisted status column. ``locked`` is set by the lockout policy."""

    ACTIVE = "active"
    LOCKED = "locked"
    SUSPENDED = "suspended"
    DELETED = "deleted"


@dataclass
class Account:
    id: str
    email: str
    username: str
    password_hash: str
    role: Role = Role.STUDENT
    verified: bool = False
    status: AccountStatus = AccountStatus.ACTIVE
    failed_login_count: int = 0
    locked_until: Optional[datetime] = None
    reset_token: Optional[str] = None
    reset_token_expires: Optional[datetime] = None
    last_login: Optional[datetime] = None
    email_verified_at: Optional[datetime] = None
    first_name: str = ""
    last_name: str = ""
    phone: Optional[str] = None
    address: Optional[str] = None
    date_of_birth: Optional[str] = None
    password_algo: str = "argon2id"
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        email: str,
        username: str,
        password_hash: str,
        *,
        role: Role = Role.STUDENT,
        first_name: str = "",
        last_name: str = "",
        phone: Optional[str] = None,
        address: Optional[str] = None,
        date_of_birth: Optional[str] = None,
    ) -> "Account":
        return cls(
            id=str(uuid.uuid4()),
            email=email.lower(),
            username=username,
            password_hash=password_hash,
            role=role,
            first_name=first_name,
            last_name=last_name,
            phone=phone,
            address=address,
            date_of_birth=date_of_birth,
        )

    @property
    def display_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip() or self.username


@dataclass
class AuditLogEntry:
    action: str
    account_id: Optional[str] = None
    details: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
