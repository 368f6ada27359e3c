"""
auth/models.py -- Domain dataclasses for identity and verification entities.

Pattern: Data class (pure data container, zero logic). Dataclasses own domain
shape; stores and services do the work. The only logic here is the static
role-name table, which is a pure lookup.

Layer rule: no imports from notify/ and no SQLAlchemy. Timestamps are
timezone-aware UTC datetimes on the Python side; the store owns the
on-disk representation.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum, IntEnum


class Role(IntEnum):
    """Ordered privilege levels. Higher number = more privilege."""

    USER = 1
    MODERATOR = 2
    ADMIN = 3
    SUPER_ADMIN = 4
    OWNER = 5


ROLE_NAMES: dict[int, str] = {
    Role.USER: "User",
    Role.MODERATOR: "Moderator",
    Role.ADMIN: "Admin",
    Role.SUPER_ADMIN: "SuperAdmin",
    Role.OWNER: "Owner",
}

MIN_ROLE = int(Role.USER)
MAX_ROLE = int(Role.OWNER)


def role_name(role: int) -> str:
    return ROLE_NAMES.get(role, "Unknown")


class AccountStatus(str, Enum):
    pending = "pending"
    active = "active"
    suspended = "suspended"
    locked = "locked"
    deleted = "deleted"


@dataclass
class Account:
    """An identity record.

    Deleted accounts are never removed from the store -- status flips to
    "deleted" so the username/email/phone stay reserved and the audit trail
    survives.
    """

    firstname: str
    lastname: str
    username: str
    email: str
    role: int = Role.USER
    status: str = AccountStatus.active.value
    phone: str | None = None
    email_verified: bool = False
    phone_verified: bool = False
    id: int | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_deleted(self) -> bool:
        return self.status == AccountStatus.deleted.value


@dataclass
class Credential:
    """Salted password digest. Exactly one live record per account.

    salt and salted_hash always travel together: a password change replaces
    both in one write.
    """

    account_id: int
    salted_hash: str
    salt: str


@dataclass
class EmailVerification:
    account_id: int
    email: str
    token: str
    expires_at: datetime
    verified: bool = False
    verified_at: datetime | None = None
    id: int | None = None
    created_at: datetime | None = None


@dataclass
class PhoneVerification:
    """SMS code record. attempts counts failed verify calls for this code."""

    account_id: int
    phone: str
    code: str  # 6 digits, leading zeros preserved
    expires_at: datetime
    attempts: int = 0
    verified: bool = False
    verified_at: datetime | None = None
    id: int | None = None
    created_at: datetime | None = None


@dataclass
class PasswordReset:
    """Password reset request. The raw token is never persisted -- only its SHA-256."""

    account_id: int
    token_hash: str
    expires_at: datetime
    used: bool = False
    used_at: datetime | None = None
    id: int | None = None
    created_at: datetime | None = None


@dataclass(frozen=True)
class Claims:
    """Verified bearer-token payload. Produced only by TokenIssuer."""

    account_id: int
    role: int
    issued_at: datetime
    expires_at: datetime
