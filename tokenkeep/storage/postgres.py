from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from tokenkeep.logging import get_logger
from tokenkeep.storage.errors import ConstraintViolation
from tokenkeep.storage.models import (
    BlacklistEntry,
    RefreshTokenRecord,
    SingleUseTokenRecord,
    User,
    utcnow,
)

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id BIGSERIAL PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        role TEXT NOT NULL DEFAULT 'user',
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        email_verified_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_auth_credential (
        user_id BIGINT PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        last_updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_token (
        id BIGSERIAL PRIMARY KEY,
        subject_id BIGINT NOT NULL,
        token CHAR(64) NOT NULL UNIQUE,
        expires_at TIMESTAMPTZ NOT NULL,
        revoked_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS refresh_token_subject_idx ON refresh_token (subject_id)",
    "CREATE INDEX IF NOT EXISTS refresh_token_expires_idx ON refresh_token (expires_at)",
    """
    CREATE TABLE IF NOT EXISTS token_blacklist (
        jti TEXT PRIMARY KEY,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS token_blacklist_expires_idx ON token_blacklist (expires_at)",
    """
    CREATE TABLE IF NOT EXISTS single_use_token (
        purpose TEXT NOT NULL,
        subject_key TEXT NOT NULL,
        token CHAR(64) NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS single_use_token_subject_idx
        ON single_use_token (purpose, subject_key)
    """,
)


class PostgresStore:
    """Postgres-backed store for users and token state."""

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create token tables and indexes if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)
        self.logger.info("postgres_schema_ready", statements=len(_SCHEMA_STATEMENTS))

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _user_from_row(row: Dict[str, Any]) -> User:
        return User(
            id=int(row["id"]),
            email=row["email"],
            role=row.get("role", "user"),
            is_active=row.get("is_active", True),
            email_verified_at=row.get("email_verified_at"),
            created_at=row.get("created_at") or utcnow(),
        )

    @staticmethod
    def _refresh_from_row(row: Dict[str, Any]) -> RefreshTokenRecord:
        return RefreshTokenRecord(
            id=int(row["id"]),
            subject_id=int(row["subject_id"]),
            token=row["token"],
            expires_at=row["expires_at"],
            revoked_at=row.get("revoked_at"),
            created_at=row.get("created_at") or utcnow(),
        )

    # users
    def create_user(
        self,
        email: str,
        *,
        role: str = "user",
        is_active: bool = True,
        email_verified_at: Optional[datetime] = None,
    ) -> User:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (email, role, is_active, email_verified_at)
                    VALUES (%s, %s, %s, %s)
                    RETURNING *
                    """,
                    (email.strip().lower(), role, is_active, email_verified_at),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._user_from_row(row)

    def get_user(self, user_id: int) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email.strip().lower(),)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def mark_email_verified(self, user_id: int, verified_at: datetime) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET email_verified_at = COALESCE(email_verified_at, %s),
                    updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (verified_at, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def set_user_active(self, user_id: int, is_active: bool) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET is_active = %s, updated_at = now() WHERE id = %s RETURNING *",
                (is_active, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def save_password(self, user_id: int, password_hash: str, password_algo: str) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo, last_updated_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        last_updated_at = now()
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found for credentials", {"user_id": user_id})

    def get_password_record(self, user_id: int) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return str(row["password_hash"]), str(row["password_algo"])

    # refresh tokens
    @staticmethod
    def _insert_refresh_row(conn, record: RefreshTokenRecord) -> RefreshTokenRecord:
        row = conn.execute(
            """
            INSERT INTO refresh_token (subject_id, token, expires_at, revoked_at, created_at)
            VALUES (%s, %s, %s, %s, %s)
            RETURNING *
            """,
            (
                record.subject_id,
                record.token,
                record.expires_at,
                record.revoked_at,
                record.created_at,
            ),
        ).fetchone()
        return PostgresStore._refresh_from_row(row)

    def insert_refresh_token(self, record: RefreshTokenRecord) -> RefreshTokenRecord:
        try:
            with self._connect() as conn:
                return self._insert_refresh_row(conn, record)
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token already exists", {"field": "token"})

    def get_usable_refresh_token(
        self, token: str, now: datetime
    ) -> Optional[RefreshTokenRecord]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM refresh_token
                WHERE token = %s AND revoked_at IS NULL AND expires_at > %s
                """,
                (token, now),
            ).fetchone()
        return self._refresh_from_row(row) if row else None

    def rotate_refresh_token(
        self, token: str, replacement: RefreshTokenRecord, now: datetime
    ) -> bool:
        """Atomically revoke ``token`` and insert ``replacement``.

        The conditional UPDATE is the race guard: when two callers present the
        same token, Postgres serializes the row update and only one of them
        sees ``rowcount == 1``. The loser gets ``False`` and nothing is inserted.
        """
        try:
            with self._connect() as conn:
                with conn.transaction():
                    result = conn.execute(
                        """
                        UPDATE refresh_token
                        SET revoked_at = %s
                        WHERE token = %s AND revoked_at IS NULL AND expires_at > %s
                        """,
                        (now, token, now),
                    )
                    if result.rowcount == 0:
                        return False
                    self._insert_refresh_row(conn, replacement)
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token already exists", {"field": "token"})
        return True

    def revoke_refresh_token(self, token: str, now: datetime) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE refresh_token SET revoked_at = COALESCE(revoked_at, %s) WHERE token = %s",
                (now, token),
            )
            return result.rowcount > 0

    def revoke_subject_refresh_tokens(self, subject_id: int, now: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE refresh_token SET revoked_at = %s WHERE subject_id = %s AND revoked_at IS NULL",
                (now, subject_id),
            )
            return result.rowcount

    def delete_expired_refresh_tokens(self, now: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM refresh_token WHERE expires_at < %s", (now,)
            )
            return result.rowcount

    # access-token blacklist
    def add_blacklist_entry(self, entry: BlacklistEntry) -> BlacklistEntry:
        try:
            with self._connect() as conn:
                conn.execute(
                    "INSERT INTO token_blacklist (jti, expires_at, created_at) VALUES (%s, %s, %s)",
                    (entry.jti, entry.expires_at, entry.created_at),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("jti already blacklisted", {"jti": entry.jti})
        return entry

    def is_blacklisted(self, jti: str, now: datetime) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 AS hit FROM token_blacklist WHERE jti = %s AND expires_at > %s",
                (jti, now),
            ).fetchone()
        return row is not None

    def delete_expired_blacklist_entries(self, now: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM token_blacklist WHERE expires_at <= %s", (now,)
            )
            return result.rowcount

    # single-use tokens
    def replace_single_use_token(self, record: SingleUseTokenRecord) -> None:
        with self._connect() as conn:
            with conn.transaction():
                conn.execute(
                    "DELETE FROM single_use_token WHERE purpose = %s AND subject_key = %s",
                    (record.purpose, record.subject_key),
                )
                conn.execute(
                    """
                    INSERT INTO single_use_token (purpose, subject_key, token, created_at)
                    VALUES (%s, %s, %s, %s)
                    """,
                    (record.purpose, record.subject_key, record.token, record.created_at),
                )

    def list_single_use_tokens(
        self, purpose: str, subject_key: str
    ) -> List[SingleUseTokenRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT purpose, subject_key, token, created_at FROM single_use_token
                WHERE purpose = %s AND subject_key = %s
                ORDER BY created_at DESC
                """,
                (purpose, subject_key),
            ).fetchall()
        return [
            SingleUseTokenRecord(
                purpose=row["purpose"],
                subject_key=row["subject_key"],
                token=row["token"],
                created_at=row["created_at"],
            )
            for row in rows
        ]

    def delete_single_use_token(self, purpose: str, subject_key: str, token: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM single_use_token WHERE purpose = %s AND subject_key = %s AND token = %s",
                (purpose, subject_key, token),
            )
            return result.rowcount > 0

    def delete_single_use_tokens(self, purpose: str, subject_key: str) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM single_use_token WHERE purpose = %s AND subject_key = %s",
                (purpose, subject_key),
            )
            return result.rowcount

    def delete_stale_single_use_tokens(self, purpose: str, created_before: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM single_use_token WHERE purpose = %s AND created_at < %s",
                (purpose, created_before),
            )
            return result.rowcount
