from __future__ import annotations

from typing import Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from tokenkeep.logging import get_logger
from tokenkeep.service.errors import AuthenticationError, Result
from tokenkeep.service.security import email_digest
from tokenkeep.storage.models import User

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"


class CredentialStore(Protocol):
    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def save_password(self, user_id: int, password_hash: str, password_algo: str) -> None: ...

    def get_password_record(self, user_id: int) -> Optional[tuple[str, str]]: ...


class PasswordManager:
    """argon2id password hashing plus the credential check used at login."""

    def __init__(self, store: CredentialStore, *, hasher: Optional[PasswordHasher] = None) -> None:
        self.store = store
        self._pwd_hasher = hasher or PasswordHasher(type=Type.ID)

    def hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    def save_password(self, user_id: int, password: str) -> None:
        """Hash and save a new password for a user."""
        pwd_hash, algo = self.hash_password(password)
        self.store.save_password(user_id, pwd_hash, algo)

    def verify_password(self, user_id: int, password: str) -> bool:
        record = self.store.get_password_record(user_id)
        if not record:
            logger.warning("password_record_missing", user_id=user_id)
            return False
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            logger.warning("password_verification_failed", user_id=user_id)
            return False

    def authenticate(self, email: str, password: str) -> Result[User]:
        """Check e-mail/password; every failure reads the same to the caller."""
        invalid = AuthenticationError("invalid credentials")
        user = self.store.get_user_by_email(email) if email else None
        if user is None or not user.is_active:
            logger.warning("login_rejected", email_hash=email_digest(email or ""))
            return Result.failure(invalid)
        if not password or not self.verify_password(user.id, password):
            return Result.failure(invalid)
        return Result.success(user)
