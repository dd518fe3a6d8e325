from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional

from tokenkeep.storage.errors import ConstraintViolation
from tokenkeep.storage.models import (
    BlacklistEntry,
    RefreshTokenRecord,
    SingleUseTokenRecord,
    User,
)


class MemoryStore:
    """In-process backing store for tests and single-node development.

    Every method holds ``_data_lock`` for its whole body, which is what makes
    the conditional updates (refresh rotation, single-use consumption) atomic.
    Returned records are copies so callers cannot mutate stored state.
    """

    def __init__(self) -> None:
        self.users: Dict[int, User] = {}
        self.credentials: Dict[int, tuple[str, str]] = {}
        # token value -> record
        self.refresh_tokens: Dict[str, RefreshTokenRecord] = {}
        # jti -> entry
        self.blacklist: Dict[str, BlacklistEntry] = {}
        # (purpose, subject_key) -> records
        self.single_use_tokens: Dict[tuple[str, str], List[SingleUseTokenRecord]] = {}
        self._user_id_seq: int = 1
        self._refresh_id_seq: int = 1
        # RLock so helpers can be called from within other locked methods
        self._data_lock = threading.RLock()

    # users
    def create_user(
        self,
        email: str,
        *,
        role: str = "user",
        is_active: bool = True,
        email_verified_at: Optional[datetime] = None,
    ) -> User:
        normalized = email.strip().lower()
        with self._data_lock:
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=self._user_id_seq,
                email=normalized,
                role=role,
                is_active=is_active,
                email_verified_at=email_verified_at,
            )
            self._user_id_seq += 1
            self.users[user.id] = user
            return replace(user)

    def get_user(self, user_id: int) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = email.strip().lower()
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == normalized), None)
            return replace(user) if user else None

    def mark_email_verified(self, user_id: int, verified_at: datetime) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if user.email_verified_at is None:
                user.email_verified_at = verified_at
            return replace(user)

    def set_user_active(self, user_id: int, is_active: bool) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.is_active = is_active
            return replace(user)

    def save_password(self, user_id: int, password_hash: str, password_algo: str) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)

    def get_password_record(self, user_id: int) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # refresh tokens
    def insert_refresh_token(self, record: RefreshTokenRecord) -> RefreshTokenRecord:
        with self._data_lock:
            return self._insert_refresh_token(record)

    def _insert_refresh_token(self, record: RefreshTokenRecord) -> RefreshTokenRecord:
        if record.token in self.refresh_tokens:
            raise ConstraintViolation("refresh token already exists", {"field": "token"})
        stored = replace(record, id=self._refresh_id_seq)
        self._refresh_id_seq += 1
        self.refresh_tokens[stored.token] = stored
        return replace(stored)

    def get_usable_refresh_token(
        self, token: str, now: datetime
    ) -> Optional[RefreshTokenRecord]:
        with self._data_lock:
            record = self.refresh_tokens.get(token)
            if record is None or not record.is_usable(now):
                return None
            return replace(record)

    def rotate_refresh_token(
        self, token: str, replacement: RefreshTokenRecord, now: datetime
    ) -> bool:
        """Revoke ``token`` and insert ``replacement`` only if ``token`` is still usable."""
        with self._data_lock:
            record = self.refresh_tokens.get(token)
            if record is None or not record.is_usable(now):
                return False
            self._insert_refresh_token(replacement)
            record.revoked_at = now
            return True

    def revoke_refresh_token(self, token: str, now: datetime) -> bool:
        with self._data_lock:
            record = self.refresh_tokens.get(token)
            if record is None:
                return False
            if record.revoked_at is None:
                record.revoked_at = now
            return True

    def revoke_subject_refresh_tokens(self, subject_id: int, now: datetime) -> int:
        with self._data_lock:
            revoked = 0
            for record in self.refresh_tokens.values():
                if record.subject_id == subject_id and record.revoked_at is None:
                    record.revoked_at = now
                    revoked += 1
            return revoked

    def delete_expired_refresh_tokens(self, now: datetime) -> int:
        with self._data_lock:
            expired = [
                token for token, record in self.refresh_tokens.items()
                if record.expires_at < now
            ]
            for token in expired:
                self.refresh_tokens.pop(token, None)
            return len(expired)

    # access-token blacklist
    def add_blacklist_entry(self, entry: BlacklistEntry) -> BlacklistEntry:
        with self._data_lock:
            if entry.jti in self.blacklist:
                raise ConstraintViolation("jti already blacklisted", {"jti": entry.jti})
            self.blacklist[entry.jti] = replace(entry)
            return replace(entry)

    def is_blacklisted(self, jti: str, now: datetime) -> bool:
        with self._data_lock:
            entry = self.blacklist.get(jti)
            return entry is not None and entry.expires_at > now

    def delete_expired_blacklist_entries(self, now: datetime) -> int:
        with self._data_lock:
            expired = [
                jti for jti, entry in self.blacklist.items() if entry.expires_at <= now
            ]
            for jti in expired:
                self.blacklist.pop(jti, None)
            return len(expired)

    # single-use tokens
    def replace_single_use_token(self, record: SingleUseTokenRecord) -> None:
        with self._data_lock:
            self.single_use_tokens[(record.purpose, record.subject_key)] = [replace(record)]

    def list_single_use_tokens(
        self, purpose: str, subject_key: str
    ) -> List[SingleUseTokenRecord]:
        with self._data_lock:
            return [
                replace(record)
                for record in self.single_use_tokens.get((purpose, subject_key), [])
            ]

    def delete_single_use_token(self, purpose: str, subject_key: str, token: str) -> bool:
        with self._data_lock:
            records = self.single_use_tokens.get((purpose, subject_key), [])
            remaining = [record for record in records if record.token != token]
            if len(remaining) == len(records):
                return False
            if remaining:
                self.single_use_tokens[(purpose, subject_key)] = remaining
            else:
                self.single_use_tokens.pop((purpose, subject_key), None)
            return True

    def delete_single_use_tokens(self, purpose: str, subject_key: str) -> int:
        with self._data_lock:
            return len(self.single_use_tokens.pop((purpose, subject_key), []))

    def delete_stale_single_use_tokens(self, purpose: str, created_before: datetime) -> int:
        with self._data_lock:
            removed = 0
            for key in [k for k in self.single_use_tokens if k[0] == purpose]:
                records = self.single_use_tokens[key]
                fresh = [record for record in records if record.created_at >= created_before]
                removed += len(records) - len(fresh)
                if fresh:
                    self.single_use_tokens[key] = fresh
                else:
                    self.single_use_tokens.pop(key, None)
            return removed
