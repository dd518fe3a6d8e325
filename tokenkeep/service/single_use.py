from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Protocol

from tokenkeep.logging import get_logger
from tokenkeep.service.errors import NotFoundError, Result
from tokenkeep.service.security import constant_time_compare, generate_token, token_prefix
from tokenkeep.storage.models import SingleUseTokenRecord

logger = get_logger(__name__)

PASSWORD_RESET = "password_reset"
EMAIL_VERIFICATION = "email_verification"


class SingleUseTokenStore(Protocol):
    def replace_single_use_token(self, record: SingleUseTokenRecord) -> None: ...

    def list_single_use_tokens(
        self, purpose: str, subject_key: str
    ) -> List[SingleUseTokenRecord]: ...

    def delete_single_use_token(self, purpose: str, subject_key: str, token: str) -> bool: ...

    def delete_single_use_tokens(self, purpose: str, subject_key: str) -> int: ...

    def delete_stale_single_use_tokens(self, purpose: str, created_before: datetime) -> int: ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SingleUseSecureToken:
    """Time-boxed, one-time opaque token bound to a subject key.

    One instance per ``purpose``; instances share a store but never see each
    other's records. Issuing replaces any pending token for the same key.
    """

    def __init__(
        self,
        store: SingleUseTokenStore,
        *,
        purpose: str,
        window_minutes: int,
        consume_on_success: bool = True,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        if window_minutes <= 0:
            raise ValueError("window_minutes must be positive")
        self.store = store
        self.purpose = purpose
        self.window_minutes = window_minutes
        self.consume_on_success = consume_on_success
        self._clock = clock

    def _now(self) -> datetime:
        return self._clock()

    def issue(self, subject_key: str) -> str:
        token = generate_token()
        self.store.replace_single_use_token(
            SingleUseTokenRecord(
                purpose=self.purpose,
                subject_key=subject_key,
                token=token,
                created_at=self._now(),
            )
        )
        logger.info("single_use_token_issued", purpose=self.purpose)
        return token

    def _matching_record(
        self, subject_key: str, presented_token: str, window_minutes: int
    ) -> Optional[SingleUseTokenRecord]:
        if not subject_key or not presented_token:
            return None
        window = timedelta(minutes=window_minutes)
        now = self._now()
        match: Optional[SingleUseTokenRecord] = None
        # Compare against every record so timing does not reveal which one matched
        for record in self.store.list_single_use_tokens(self.purpose, subject_key):
            fresh = now - record.created_at <= window
            if constant_time_compare(record.token, presented_token) and fresh:
                match = record
        return match

    def is_valid(
        self, subject_key: str, presented_token: str, window_minutes: Optional[int] = None
    ) -> bool:
        window = window_minutes if window_minutes is not None else self.window_minutes
        return self._matching_record(subject_key, presented_token, window) is not None

    def consume(self, subject_key: str, presented_token: str) -> Result[None]:
        """Validate the token and delete it so it cannot be presented again."""
        not_found = NotFoundError("invalid or expired token")
        record = self._matching_record(subject_key, presented_token, self.window_minutes)
        if record is None:
            logger.warning(
                "single_use_token_rejected",
                purpose=self.purpose,
                token_prefix=token_prefix(presented_token),
            )
            return Result.failure(not_found)
        if not self.consume_on_success:
            return Result.success()
        # Conditional delete: only one of two concurrent consumers removes the row
        if not self.store.delete_single_use_token(self.purpose, subject_key, record.token):
            logger.warning(
                "single_use_token_consume_race",
                purpose=self.purpose,
                token_prefix=token_prefix(presented_token),
            )
            return Result.failure(not_found)
        logger.info("single_use_token_consumed", purpose=self.purpose)
        return Result.success()

    def discard(self, subject_key: str) -> int:
        return self.store.delete_single_use_tokens(self.purpose, subject_key)

    def cleanup_expired(self, window_minutes: Optional[int] = None) -> int:
        window = window_minutes if window_minutes is not None else self.window_minutes
        cutoff = self._now() - timedelta(minutes=window)
        removed = self.store.delete_stale_single_use_tokens(self.purpose, cutoff)
        if removed:
            logger.info("single_use_tokens_purged", purpose=self.purpose, count=removed)
        return removed
