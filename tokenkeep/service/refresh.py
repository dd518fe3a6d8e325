from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional, Protocol

from tokenkeep.config import TokenConfig
from tokenkeep.logging import get_logger
from tokenkeep.service.codec import SignedTokenCodec
from tokenkeep.service.errors import AuthenticationError, NotFoundError, Result
from tokenkeep.service.security import generate_token, looks_like_opaque_token, token_prefix
from tokenkeep.storage.errors import ConstraintViolation
from tokenkeep.storage.models import RefreshTokenRecord, User

logger = get_logger(__name__)

# Retries when a freshly generated token collides with an existing one
_MAX_ISSUE_ATTEMPTS = 3


class RefreshTokenStore(Protocol):
    def insert_refresh_token(self, record: RefreshTokenRecord) -> RefreshTokenRecord: ...

    def get_usable_refresh_token(
        self, token: str, now: datetime
    ) -> Optional[RefreshTokenRecord]: ...

    def rotate_refresh_token(
        self, token: str, replacement: RefreshTokenRecord, now: datetime
    ) -> bool: ...

    def revoke_refresh_token(self, token: str, now: datetime) -> bool: ...

    def revoke_subject_refresh_tokens(self, subject_id: int, now: datetime) -> int: ...

    def delete_expired_refresh_tokens(self, now: datetime) -> int: ...

    def get_user(self, user_id: int) -> Optional[User]: ...


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "bearer"

    def as_dict(self) -> dict[str, object]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": self.token_type,
            "expires_in": self.expires_in,
        }


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RefreshTokenLifecycle:
    """Issue, rotate and revoke long-lived opaque refresh tokens."""

    def __init__(
        self,
        store: RefreshTokenStore,
        codec: SignedTokenCodec,
        config: TokenConfig,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.codec = codec
        self.config = config
        self._clock = clock

    def _now(self) -> datetime:
        return self._clock()

    def _new_record(self, subject_id: int, now: datetime) -> RefreshTokenRecord:
        return RefreshTokenRecord.new(
            subject_id, generate_token(), self.config.refresh_ttl_seconds, now=now
        )

    def issue(self, subject_id: int) -> str:
        """Persist a new refresh token for ``subject_id`` and return its value."""
        now = self._now()
        for attempt in range(1, _MAX_ISSUE_ATTEMPTS + 1):
            record = self._new_record(subject_id, now)
            try:
                self.store.insert_refresh_token(record)
            except ConstraintViolation:
                # 256-bit collisions are not expected; retry rather than fail login
                logger.warning("refresh_token_collision", subject_id=subject_id, attempt=attempt)
                continue
            logger.info("refresh_token_issued", subject_id=subject_id)
            return record.token
        raise ConstraintViolation("could not allocate a unique refresh token")

    def issue_pair(self, subject_id: int, role: str) -> TokenPair:
        """Mint an access token and a refresh token together, as at login."""
        return TokenPair(
            access_token=self.codec.encode(subject_id, role),
            refresh_token=self.issue(subject_id),
            expires_in=self.config.access_ttl_seconds,
        )

    def refresh(self, presented_token: str) -> Result[TokenPair]:
        """Exchange a usable refresh token for a new access/refresh pair.

        The presented token is revoked and its replacement inserted in one
        conditional store call. If that call reports the token was no longer
        usable, another caller won the race and this one fails.
        """
        invalid = AuthenticationError("invalid or expired refresh token")
        if not looks_like_opaque_token(presented_token):
            return Result.failure(invalid)

        now = self._now()
        record = self.store.get_usable_refresh_token(presented_token, now)
        if record is None:
            logger.warning(
                "refresh_token_rejected", token_prefix=token_prefix(presented_token)
            )
            return Result.failure(invalid)

        user = self.store.get_user(record.subject_id)
        if user is None or not user.is_active:
            logger.warning("refresh_token_subject_inactive", subject_id=record.subject_id)
            return Result.failure(invalid)

        replacement = self._new_record(record.subject_id, now)
        try:
            rotated = self.store.rotate_refresh_token(presented_token, replacement, now)
        except ConstraintViolation:
            logger.warning("refresh_token_collision", subject_id=record.subject_id, attempt=1)
            replacement = self._new_record(record.subject_id, now)
            rotated = self.store.rotate_refresh_token(presented_token, replacement, now)
        if not rotated:
            logger.warning(
                "refresh_token_replay_detected",
                subject_id=record.subject_id,
                token_prefix=token_prefix(presented_token),
            )
            return Result.failure(invalid)

        logger.info("refresh_token_rotated", subject_id=record.subject_id)
        return Result.success(
            TokenPair(
                access_token=self.codec.encode(user.id, user.role),
                refresh_token=replacement.token,
                expires_in=self.config.access_ttl_seconds,
            )
        )

    def revoke(self, presented_token: str) -> Result[None]:
        if not presented_token or not self.store.revoke_refresh_token(
            presented_token, self._now()
        ):
            return Result.failure(NotFoundError("refresh token not found"))
        logger.info("refresh_token_revoked", token_prefix=token_prefix(presented_token))
        return Result.success()

    def revoke_all(self, subject_id: int) -> Result[int]:
        """Revoke every active refresh token of ``subject_id``.

        Always succeeds; the value is how many records were revoked, which is
        zero for a subject with no active tokens.
        """
        revoked = self.store.revoke_subject_refresh_tokens(subject_id, self._now())
        logger.info("refresh_tokens_revoked_for_subject", subject_id=subject_id, count=revoked)
        return Result.success(revoked)

    def cleanup_expired(self) -> int:
        removed = self.store.delete_expired_refresh_tokens(self._now())
        if removed:
            logger.info("refresh_tokens_purged", count=removed)
        return removed
