from __future__ import annotations

import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional


def utcnow() -> datetime:
    """Timezone-aware UTC now; every persisted timestamp is UTC."""

    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes read back from storage as UTC."""

    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def normalize_email(email: str) -> str:
    return email.strip().lower()


@dataclass
class Role:
    id: str
    name: str

    @classmethod
    def new(cls, name: str) -> "Role":
        return cls(id=str(uuid.uuid4()), name=name)


@dataclass
class User:
    id: str
    email: str
    password_hash: str
    first_name: str
    last_name: str
    role_id: str
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        email: str,
        password_hash: str,
        first_name: str,
        last_name: str,
        role_id: str,
    ) -> "User":
        return cls(
            id=str(uuid.uuid4()),
            email=normalize_email(email),
            password_hash=password_hash,
            first_name=first_name,
            last_name=last_name,
            role_id=role_id,
            is_active=True,
            created_at=utcnow(),
        )


@dataclass
class RefreshToken:
    """Opaque refresh token record.

    ``replaced_by`` is a forward link to the token that superseded this one
    during rotation; it is kept for chain tracing only.
    """

    id: str
    user_id: str
    token: str
    expires_at: datetime
    revoked: bool = False
    created_at: datetime = field(default_factory=utcnow)
    replaced_by: Optional[str] = None

    @classmethod
    def new(cls, user_id: str, ttl_days: int = 30) -> "RefreshToken":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            # 32 random bytes -> 256 bits of entropy
            token=secrets.token_urlsafe(32),
            expires_at=now + timedelta(days=ttl_days),
            revoked=False,
            created_at=now,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        current = now or utcnow()
        return as_utc(current) >= as_utc(self.expires_at)

    def is_active(self, now: Optional[datetime] = None) -> bool:
        return not self.revoked and not self.is_expired(now)
