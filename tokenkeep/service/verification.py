from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable, Optional, Protocol

from tokenkeep.logging import get_logger
from tokenkeep.service.errors import NotFoundError, Result
from tokenkeep.service.notifier import Notifier
from tokenkeep.service.password_reset import normalize_email
from tokenkeep.service.security import email_digest
from tokenkeep.service.single_use import SingleUseSecureToken
from tokenkeep.storage.models import User

logger = get_logger(__name__)


class VerificationStore(Protocol):
    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def mark_email_verified(self, user_id: int, verified_at: datetime) -> Optional[User]: ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EmailVerificationFlow:
    def __init__(
        self,
        store: VerificationStore,
        tokens: SingleUseSecureToken,
        notifier: Notifier,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.notifier = notifier
        self._clock = clock

    def request_verification(self, email: str) -> Result[None]:
        """Send a verification link; silent for unknown or verified addresses."""
        normalized = normalize_email(email)
        user = self.store.get_user_by_email(normalized) if normalized else None
        if user is None:
            logger.info("email_verification_requested_unknown", email_hash=email_digest(normalized))
            return Result.success()
        if user.email_verified:
            logger.info("email_verification_already_verified", user_id=user.id)
            return Result.success()
        token = self.tokens.issue(normalized)
        self.notifier.send_email_verification(user.email, token)
        logger.info("email_verification_requested", user_id=user.id)
        return Result.success()

    def verify(self, email: str, token: str) -> Result[None]:
        """Mark the address verified. Repeating it for a verified user succeeds."""
        normalized = normalize_email(email)
        user = self.store.get_user_by_email(normalized) if normalized else None
        if user is not None and user.email_verified:
            self.tokens.discard(normalized)
            return Result.success()
        consumed = self.tokens.consume(normalized, token)
        if not consumed.ok:
            return consumed
        if user is None:
            logger.warning("email_verification_missing_user", email_hash=email_digest(normalized))
            return Result.failure(NotFoundError("invalid or expired token"))
        self.store.mark_email_verified(user.id, self._clock())
        logger.info("email_verified", user_id=user.id)
        return Result.success()
