from __future__ import annotations

from typing import Optional, Protocol

from tokenkeep.logging import get_logger
from tokenkeep.service.errors import NotFoundError, Result, ValidationError
from tokenkeep.service.notifier import Notifier
from tokenkeep.service.passwords import PasswordManager
from tokenkeep.service.refresh import RefreshTokenLifecycle
from tokenkeep.service.security import PasswordPolicy, email_digest
from tokenkeep.service.single_use import SingleUseSecureToken
from tokenkeep.storage.models import User

logger = get_logger(__name__)


class UserStore(Protocol):
    def get_user_by_email(self, email: str) -> Optional[User]: ...


def normalize_email(email: Optional[str]) -> str:
    return (email or "").strip().lower()


class PasswordResetFlow:
    """Forgot-password flow keyed by e-mail address.

    Requesting a reset never reveals whether the address belongs to an
    account. Completing one replaces the password and revokes every refresh
    token the user holds so other devices have to log in again.
    """

    def __init__(
        self,
        store: UserStore,
        tokens: SingleUseSecureToken,
        refresh: RefreshTokenLifecycle,
        notifier: Notifier,
        policy: PasswordPolicy,
        passwords: PasswordManager,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.refresh = refresh
        self.notifier = notifier
        self.policy = policy
        self.passwords = passwords

    def request_reset(self, email: str) -> Result[None]:
        normalized = normalize_email(email)
        user = self.store.get_user_by_email(normalized) if normalized else None
        if user is None or not user.is_active:
            logger.info("password_reset_requested_unknown", email_hash=email_digest(normalized))
            return Result.success()
        token = self.tokens.issue(normalized)
        self.notifier.send_password_reset(user.email, token)
        logger.info("password_reset_requested", user_id=user.id)
        return Result.success()

    def validate_token(self, email: str, token: str) -> Result[None]:
        if not self.tokens.is_valid(normalize_email(email), token):
            return Result.failure(NotFoundError("invalid or expired token"))
        return Result.success()

    def reset_password(self, email: str, token: str, new_password: str) -> Result[None]:
        violations = self.policy.violations(new_password)
        if violations:
            return Result.failure(
                ValidationError(
                    "password does not meet requirements", detail={"password": violations}
                )
            )
        normalized = normalize_email(email)
        consumed = self.tokens.consume(normalized, token)
        if not consumed.ok:
            return consumed
        user = self.store.get_user_by_email(normalized)
        if user is None:
            logger.warning("password_reset_user_missing", email_hash=email_digest(normalized))
            return Result.failure(NotFoundError("invalid or expired token"))
        self.passwords.save_password(user.id, new_password)
        self.refresh.revoke_all(user.id)
        logger.info("password_reset_completed", user_id=user.id)
        return Result.success()
