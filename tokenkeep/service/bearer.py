from __future__ import annotations

import re
from typing import TYPE_CHECKING, Optional

from tokenkeep.logging import get_logger
from tokenkeep.service.codec import AccessTokenClaims, SignedTokenCodec
from tokenkeep.service.errors import AuthenticationError, BadRequestError, Result

if TYPE_CHECKING:
    from tokenkeep.service.revocation import RevocationRegistry

logger = get_logger(__name__)

# Scheme is case-insensitive; the credential is a single whitespace-free run
_BEARER_RE = re.compile(r"^bearer\s+(\S+)$", re.IGNORECASE)


class BearerTokenExtractor:
    """Pull the raw token out of an ``Authorization: Bearer <token>`` header."""

    def extract(self, header_value: Optional[str]) -> Optional[str]:
        if not header_value:
            return None
        match = _BEARER_RE.match(header_value.strip())
        if not match:
            return None
        return match.group(1)


class AccessTokenAuthenticator:
    """Header -> extract -> decode -> revocation check, as used per request."""

    def __init__(
        self,
        codec: SignedTokenCodec,
        registry: "RevocationRegistry",
        *,
        extractor: Optional[BearerTokenExtractor] = None,
    ) -> None:
        self.codec = codec
        self.registry = registry
        self.extractor = extractor or BearerTokenExtractor()

    async def authenticate(self, header_value: Optional[str]) -> Result[AccessTokenClaims]:
        if not header_value or not header_value.strip():
            return Result.failure(BadRequestError("authorization header is required"))
        token = self.extractor.extract(header_value)
        if token is None:
            return Result.failure(BadRequestError("malformed authorization header"))
        claims = self.codec.decode(token)
        if claims is None:
            return Result.failure(AuthenticationError("invalid or expired access token"))
        if await self.registry.is_revoked(claims.jti):
            logger.warning("revoked_access_token_presented", subject_id=claims.subject_id, jti=claims.jti)
            return Result.failure(AuthenticationError("access token has been revoked"))
        return Result.success(claims)
