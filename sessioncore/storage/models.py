from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(moment: datetime) -> datetime:
    """Aware UTC view of ``moment``; naive values are taken to be UTC already."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


class Role(str, Enum):
    """Roles carried in token claims; ``admin`` implies ``user``."""

    USER = "user"
    ADMIN = "admin"


@dataclass(frozen=True)
class LockoutState:
    failed_attempts: int = 0
    locked_until: Optional[datetime] = None


@dataclass
class Identity:
    id: str
    email: str
    password_hash: str
    role: Role = Role.USER
    lockout: LockoutState = field(default_factory=LockoutState)
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)
    last_login_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        email: str,
        password_hash: str,
        *,
        role: Role = Role.USER,
        is_active: bool = True,
    ) -> "Identity":
        return cls(
            id=str(uuid.uuid4()),
            email=email.strip().lower(),
            password_hash=password_hash,
            role=Role(role),
            is_active=is_active,
        )

    def public(self) -> "PublicIdentity":
        return PublicIdentity(id=self.id, email=self.email, role=self.role)


@dataclass(frozen=True)
class PublicIdentity:
    """What callers may show about an identity; no hash, no lockout counters."""

    id: str
    email: str
    role: Role


@dataclass(frozen=True)
class RevocationEntry:
    token_id: str
    subject_id: Optional[str]
    expires_at: datetime


@dataclass(frozen=True)
class SubjectRevocation:
    subject_id: str
    revoked_before: datetime
    expires_at: datetime
