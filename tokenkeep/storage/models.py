from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: int
    email: str
    role: str = "user"
    is_active: bool = True
    email_verified_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    @property
    def email_verified(self) -> bool:
        return self.email_verified_at is not None


@dataclass
class RefreshTokenRecord:
    """Persisted refresh token. ``revoked_at is None`` means active."""

    id: Optional[int]
    subject_id: int
    token: str
    expires_at: datetime
    revoked_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls, subject_id: int, token: str, ttl_seconds: int, *, now: datetime
    ) -> "RefreshTokenRecord":
        return cls(
            id=None,
            subject_id=subject_id,
            token=token,
            expires_at=now + timedelta(seconds=ttl_seconds),
            created_at=now,
        )

    def is_usable(self, now: datetime) -> bool:
        return self.revoked_at is None and self.expires_at > now


@dataclass
class BlacklistEntry:
    """An access-token jti revoked before its natural expiry."""

    jti: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class SingleUseTokenRecord:
    purpose: str
    subject_key: str
    token: str
    created_at: datetime = field(default_factory=utcnow)
