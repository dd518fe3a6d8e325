from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, Optional, TypeVar


class ServiceError(Exception):
    """Base class for token-engine errors.

    Each class carries a stable ``error_code`` and the HTTP ``status_code`` the
    API boundary renders it with. The engine never looks at ``status_code``:
    - unauthorized (401)
    - not_found (404)
    - conflict (409)
    - validation_error, bad_request (400)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Input failed validation, e.g. a weak new password (400)."""
    status_code = 400
    error_code = "validation_error"


class BadRequestError(ValidationError):
    """Request is malformed, e.g. missing Authorization header (400)."""
    error_code = "bad_request"


class AuthenticationError(ServiceError):
    """Invalid, expired, revoked or reused credential (401)."""
    status_code = 401
    error_code = "unauthorized"


class NotFoundError(ServiceError):
    """Referenced token does not exist or is no longer valid (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Uniqueness conflict, e.g. duplicate jti on the blacklist (409)."""
    status_code = 409
    error_code = "conflict"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


T = TypeVar("T")


@dataclass(frozen=True)
class Result(Generic[T]):
    """Tagged outcome of an engine operation: a value or a ServiceError."""

    value: Optional[T] = None
    error: Optional[ServiceError] = None

    @classmethod
    def success(cls, value: Optional[T] = None) -> "Result[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: ServiceError) -> "Result[T]":
        return cls(error=error)

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def kind(self) -> str:
        """``"ok"`` or the stable error code of the carried error."""
        return "ok" if self.error is None else self.error.error_code

    def unwrap(self) -> Optional[T]:
        if self.error is not None:
            raise self.error
        return self.value


__all__ = [
    "ServiceError",
    "ValidationError",
    "BadRequestError",
    "AuthenticationError",
    "NotFoundError",
    "ConflictError",
    "ServerError",
    "Result",
]
