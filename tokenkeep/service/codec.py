from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import secrets
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from tokenkeep.config import TokenConfig
from tokenkeep.logging import get_logger
from tokenkeep.service.errors import AuthenticationError, Result
from tokenkeep.service.security import constant_time_compare, token_prefix

logger = get_logger(__name__)

_REQUIRED_CLAIMS = ("sub", "role", "jti", "iat", "exp")
# Issued headers and payloads are a few hundred characters at most
_MAX_SEGMENT_CHARS = 4096


@dataclass(frozen=True)
class AccessTokenClaims:
    subject_id: int
    role: str
    jti: str
    issued_at: int
    expires_at: int

    def as_dict(self) -> dict[str, Any]:
        return {
            "subject_id": self.subject_id,
            "role": self.role,
            "jti": self.jti,
            "issued_at": self.issued_at,
            "expires_at": self.expires_at,
        }


class _DecodeFailure(Exception):
    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class SignedTokenCodec:
    """HS256 access tokens: ``base64url(header).base64url(payload).base64url(sig)``.

    ``decode`` fails closed: every failure (bad structure, algorithm, signature,
    claims, issuer, expiry) collapses into ``None``. ``decode_result`` is the
    diagnostic variant that reports which check failed.
    """

    def __init__(self, config: TokenConfig, *, clock: Callable[[], float] = time.time) -> None:
        self.config = config
        self._clock = clock
        self._key = config.secret.encode("utf-8")

    def _now(self) -> int:
        return int(self._clock())

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(self._key, signing_input.encode("utf-8"), hashlib.sha256).digest()
        return self._encode_segment(digest)

    def encode(self, subject_id: int, role: str) -> str:
        now = self._now()
        header = {"alg": self.config.algorithm, "typ": "JWT"}
        payload = {
            "iss": self.config.issuer,
            "sub": int(subject_id),
            "role": role,
            "jti": secrets.token_hex(16),
            "iat": now,
            "nbf": now,
            "exp": now + self.config.access_ttl_seconds,
        }
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _verify(self, token: str) -> AccessTokenClaims:
        if not isinstance(token, str):
            raise _DecodeFailure("malformed")
        parts = token.split(".")
        if len(parts) != 3 or not all(parts):
            raise _DecodeFailure("malformed")
        header_b64, payload_b64, sig_b64 = parts
        if len(header_b64) > _MAX_SEGMENT_CHARS or len(payload_b64) > _MAX_SEGMENT_CHARS:
            raise _DecodeFailure("malformed")

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (binascii.Error, UnicodeDecodeError, ValueError, RecursionError):
            raise _DecodeFailure("malformed")
        if not isinstance(header, dict):
            raise _DecodeFailure("malformed")
        # Pin the algorithm so a forged header cannot downgrade verification
        if header.get("alg") != self.config.algorithm:
            raise _DecodeFailure("unsupported_algorithm")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not constant_time_compare(expected_sig, sig_b64):
            raise _DecodeFailure("bad_signature")

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (binascii.Error, UnicodeDecodeError, ValueError, RecursionError):
            raise _DecodeFailure("malformed")
        if not isinstance(payload, dict):
            raise _DecodeFailure("malformed")
        if any(payload.get(claim) in (None, "") for claim in _REQUIRED_CLAIMS):
            raise _DecodeFailure("missing_claims")

        sub, iat, exp = payload["sub"], payload["iat"], payload["exp"]
        # bool is an int subclass; a subject id of True is not a subject id
        if any(isinstance(v, bool) or not isinstance(v, int) for v in (sub, iat, exp)):
            raise _DecodeFailure("missing_claims")
        if not isinstance(payload["role"], str) or not isinstance(payload["jti"], str):
            raise _DecodeFailure("missing_claims")
        if payload.get("iss") != self.config.issuer:
            raise _DecodeFailure("invalid_issuer")

        now = self._now()
        nbf = payload.get("nbf")
        if isinstance(nbf, int) and not isinstance(nbf, bool) and nbf > now:
            raise _DecodeFailure("not_yet_valid")
        if exp <= now:
            raise _DecodeFailure("expired")

        return AccessTokenClaims(
            subject_id=sub,
            role=payload["role"],
            jti=payload["jti"],
            issued_at=iat,
            expires_at=exp,
        )

    def decode_result(self, token: str) -> Result[AccessTokenClaims]:
        try:
            claims = self._verify(token)
        except _DecodeFailure as failure:
            logger.warning(
                "access_token_decode_failed",
                reason=failure.reason,
                token_prefix=token_prefix(token if isinstance(token, str) else None),
            )
            return Result.failure(
                AuthenticationError(
                    "invalid or expired access token", detail={"reason": failure.reason}
                )
            )
        return Result.success(claims)

    def decode(self, token: str) -> Optional[AccessTokenClaims]:
        return self.decode_result(token).value

    def validate(self, token: str) -> bool:
        return self.decode(token) is not None

    def get_subject_id(self, token: str) -> Optional[int]:
        claims = self.decode(token)
        return claims.subject_id if claims else None

    def get_role(self, token: str) -> Optional[str]:
        claims = self.decode(token)
        return claims.role if claims else None
