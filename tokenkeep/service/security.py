from __future__ import annotations

import hashlib
import hmac
import re
import secrets
from dataclasses import dataclass
from typing import List, Optional

# 32 random bytes -> 64 lowercase hex characters
OPAQUE_TOKEN_BYTES = 32
_OPAQUE_TOKEN_RE = re.compile(r"^[0-9a-f]{64}$")


def generate_token(num_bytes: int = OPAQUE_TOKEN_BYTES) -> str:
    """Return a cryptographically secure random token as lowercase hex."""
    return secrets.token_hex(num_bytes)


def looks_like_opaque_token(value: Optional[str]) -> bool:
    if not value:
        return False
    return _OPAQUE_TOKEN_RE.match(value) is not None


def constant_time_compare(known: Optional[str], presented: Optional[str]) -> bool:
    """Compare a stored secret with user input without early exit on mismatch."""
    if known is None or presented is None:
        return False
    return hmac.compare_digest(known.encode("utf-8"), presented.encode("utf-8"))


def email_digest(email: str) -> str:
    """Stable digest used to correlate log lines without logging the address."""
    return hashlib.sha256(email.strip().lower().encode()).hexdigest()


def token_prefix(token: Optional[str]) -> str:
    return (token or "")[:8]


_LOWER = re.compile(r"[a-z]")
_UPPER = re.compile(r"[A-Z]")
_DIGIT = re.compile(r"\d")
_SPECIAL = re.compile(r"[\W_]")


@dataclass(frozen=True)
class PasswordPolicy:
    """Complexity rules a new password must satisfy."""

    min_length: int = 8
    max_length: int = 128
    require_lower: bool = True
    require_upper: bool = True
    require_digit: bool = True
    require_special: bool = True

    def violations(self, password: Optional[str]) -> List[str]:
        """Return the names of every rule the password breaks (empty if it passes)."""
        if not password:
            return ["required"]
        failed: List[str] = []
        if len(password) < self.min_length:
            failed.append("min_length")
        if len(password) > self.max_length:
            failed.append("max_length")
        if self.require_lower and not _LOWER.search(password):
            failed.append("lowercase")
        if self.require_upper and not _UPPER.search(password):
            failed.append("uppercase")
        if self.require_digit and not _DIGIT.search(password):
            failed.append("digit")
        if self.require_special and not _SPECIAL.search(password):
            failed.append("special")
        return failed

    def is_satisfied_by(self, password: Optional[str]) -> bool:
        return not self.violations(password)
