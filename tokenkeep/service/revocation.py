from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable, Optional, Protocol

from tokenkeep.config import TokenConfig
from tokenkeep.logging import get_logger
from tokenkeep.service.bearer import BearerTokenExtractor
from tokenkeep.service.codec import SignedTokenCodec
from tokenkeep.service.errors import (
    AuthenticationError,
    BadRequestError,
    ConflictError,
    Result,
    ValidationError,
)
from tokenkeep.storage.errors import ConstraintViolation
from tokenkeep.storage.models import BlacklistEntry

logger = get_logger(__name__)

_REVOKED = "1"
_NOT_REVOKED = "0"


class BlacklistStore(Protocol):
    def add_blacklist_entry(self, entry: BlacklistEntry) -> BlacklistEntry: ...

    def is_blacklisted(self, jti: str, now: datetime) -> bool: ...

    def delete_expired_blacklist_entries(self, now: datetime) -> int: ...


class RevocationCache(Protocol):
    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def delete(self, key: str) -> int: ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def cache_key(jti: str) -> str:
    return f"auth:revoked:{jti}"


class RevocationRegistry:
    """Blacklist of access-token jtis revoked before their natural expiry.

    Lookups go through a short-TTL cache that stores negative results too, so a
    valid token costs one store query per ``revocation_cache_ttl_seconds``.
    A jti revoked after a negative lookup was cached stays accepted until that
    entry expires; set ``revocation_cache_write_through`` to close the window.
    """

    def __init__(
        self,
        store: BlacklistStore,
        config: TokenConfig,
        *,
        cache: Optional[RevocationCache] = None,
        codec: Optional[SignedTokenCodec] = None,
        extractor: Optional[BearerTokenExtractor] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.config = config
        self.cache = cache
        self.codec = codec
        self.extractor = extractor or BearerTokenExtractor()
        self._clock = clock

    def _now(self) -> datetime:
        return self._clock()

    async def revoke(self, jti: str, expires_at: int) -> Result[None]:
        """Blacklist ``jti`` until ``expires_at`` (unix seconds)."""
        if not jti:
            return Result.failure(ValidationError("jti is required", detail={"field": "jti"}))
        expiry = datetime.fromtimestamp(int(expires_at), tz=timezone.utc)
        now = self._now()
        try:
            self.store.add_blacklist_entry(BlacklistEntry(jti=jti, expires_at=expiry, created_at=now))
        except ConstraintViolation:
            return Result.failure(ConflictError("token already revoked", detail={"jti": jti}))
        logger.info("access_token_revoked", jti=jti, expires_at=int(expires_at))

        if self.cache is not None and self.config.revocation_cache_write_through:
            remaining = int((expiry - now).total_seconds())
            if remaining > 0:
                await self._cache_set(jti, _REVOKED, remaining)
        return Result.success()

    async def revoke_access_token(self, authorization_header: Optional[str]) -> Result[None]:
        """Revoke the access token carried in an ``Authorization`` header (logout)."""
        if self.codec is None:
            raise RuntimeError("revoke_access_token requires a codec")
        if not authorization_header or not authorization_header.strip():
            return Result.failure(BadRequestError("authorization header is required"))
        token = self.extractor.extract(authorization_header)
        if token is None:
            return Result.failure(BadRequestError("malformed authorization header"))
        claims = self.codec.decode(token)
        if claims is None:
            return Result.failure(AuthenticationError("invalid or expired access token"))
        return await self.revoke(claims.jti, claims.expires_at)

    async def is_revoked(self, jti: str) -> bool:
        cached = await self._cache_get(jti)
        if cached is not None:
            return cached == _REVOKED
        revoked = self.store.is_blacklisted(jti, self._now())
        await self._cache_set(
            jti, _REVOKED if revoked else _NOT_REVOKED, self.config.revocation_cache_ttl_seconds
        )
        return revoked

    async def invalidate(self, jti: str) -> None:
        """Drop any cached lookup for ``jti`` so the next check hits the store."""
        if self.cache is None:
            return
        try:
            await self.cache.delete(cache_key(jti))
        except Exception as exc:
            logger.warning("revocation_cache_delete_failed", jti=jti, error=str(exc))

    def cleanup_expired(self) -> int:
        removed = self.store.delete_expired_blacklist_entries(self._now())
        if removed:
            logger.info("blacklist_entries_purged", count=removed)
        return removed

    async def _cache_get(self, jti: str) -> Optional[str]:
        if self.cache is None:
            return None
        try:
            return await self.cache.get(cache_key(jti))
        except Exception as exc:
            # The store is authoritative; a cache outage only costs a query
            logger.warning("revocation_cache_read_failed", jti=jti, error=str(exc))
            return None

    async def _cache_set(self, jti: str, value: str, ttl_seconds: int) -> None:
        if self.cache is None:
            return
        try:
            await self.cache.set(cache_key(jti), value, ttl_seconds)
        except Exception as exc:
            logger.warning("revocation_cache_write_failed", jti=jti, error=str(exc))
