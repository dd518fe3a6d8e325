from __future__ import annotations

from typing import Dict, Optional
from urllib.parse import urlparse, urlunparse

from tokenkeep.config import Settings
from tokenkeep.logging import get_logger
from tokenkeep.service.bearer import AccessTokenAuthenticator, BearerTokenExtractor
from tokenkeep.service.codec import SignedTokenCodec
from tokenkeep.service.notifier import LoggingNotifier, Notifier
from tokenkeep.service.password_reset import PasswordResetFlow
from tokenkeep.service.passwords import PasswordManager
from tokenkeep.service.refresh import RefreshTokenLifecycle
from tokenkeep.service.revocation import RevocationRegistry
from tokenkeep.service.single_use import (
    EMAIL_VERIFICATION,
    PASSWORD_RESET,
    SingleUseSecureToken,
)
from tokenkeep.service.verification import EmailVerificationFlow
from tokenkeep.storage.memory import MemoryStore
from tokenkeep.storage.memory_cache import MemoryCache
from tokenkeep.storage.postgres import PostgresStore
from tokenkeep.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    ``redis://:secret@localhost:6379`` becomes ``redis://:***@localhost:6379``.
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Wires store, cache and token services together for one application.

    Each app owns its Runtime; nothing here is a module-level singleton.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        notifier: Optional[Notifier] = None,
    ) -> None:
        self.settings = settings or Settings.from_env()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        self.config = self.settings.token_config()

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)

        self.cache = self._build_cache()

        self.codec = SignedTokenCodec(self.config)
        self.extractor = BearerTokenExtractor()
        self.refresh_tokens = RefreshTokenLifecycle(self.store, self.codec, self.config)
        self.revocations = RevocationRegistry(
            self.store,
            self.config,
            cache=self.cache,
            codec=self.codec,
            extractor=self.extractor,
        )
        self.authenticator = AccessTokenAuthenticator(
            self.codec, self.revocations, extractor=self.extractor
        )
        self.password_reset_tokens = SingleUseSecureToken(
            self.store,
            purpose=PASSWORD_RESET,
            window_minutes=self.config.password_reset_window_minutes,
        )
        self.email_verification_tokens = SingleUseSecureToken(
            self.store,
            purpose=EMAIL_VERIFICATION,
            window_minutes=self.config.email_verification_window_minutes,
        )
        self.notifier = notifier or LoggingNotifier(self.settings.app_base_url)
        self.passwords = PasswordManager(self.store)
        self.password_reset = PasswordResetFlow(
            self.store,
            self.password_reset_tokens,
            self.refresh_tokens,
            self.notifier,
            self.config.password_policy(),
            self.passwords,
        )
        self.email_verification = EmailVerificationFlow(
            self.store, self.email_verification_tokens, self.notifier
        )
        logger.info("runtime_init_completed", cache_type=type(self.cache).__name__)

    def _build_cache(self):
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # The sync client avoids binding a pool to a per-test event loop
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                return cache
            except Exception as exc:
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for the revocation cache; start Redis or set "
                "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for an in-process cache."
            ) from redis_error

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            mode=fallback_mode,
        )
        return MemoryCache()

    def cleanup_expired(self) -> Dict[str, int]:
        """Purge expired refresh tokens, blacklist entries and stale one-time tokens."""
        counts = {
            "refresh_tokens": self.refresh_tokens.cleanup_expired(),
            "blacklist_entries": self.revocations.cleanup_expired(),
            "password_reset_tokens": self.password_reset_tokens.cleanup_expired(),
            "email_verification_tokens": self.email_verification_tokens.cleanup_expired(),
        }
        logger.info("token_cleanup_completed", **counts)
        return counts

    async def close(self) -> None:
        try:
            await self.cache.close()
        except Exception as exc:
            logger.warning("runtime_cache_close_failed", error=str(exc))
        close_store = getattr(self.store, "close", None)
        if callable(close_store):
            close_store()
