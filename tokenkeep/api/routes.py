from __future__ import annotations

import asyncio
from typing import Optional, TypeVar

from fastapi import APIRouter, Depends, Header, Request

from tokenkeep.api.schemas import (
    EmailResendRequest,
    Envelope,
    LoginRequest,
    PasswordForgotRequest,
    PasswordResetConfirm,
    PrincipalResponse,
    SingleUseTokenRequest,
    TokenPairResponse,
    TokenRefreshRequest,
    TokenRevokeRequest,
)
from tokenkeep.logging import get_logger
from tokenkeep.service.codec import AccessTokenClaims
from tokenkeep.service.errors import Result
from tokenkeep.service.refresh import TokenPair
from tokenkeep.service.runtime import Runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

T = TypeVar("T")


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def _unwrap(result: Result[T]) -> Optional[T]:
    # Failed results surface through the ServiceError exception handler
    return result.unwrap()


async def get_principal(
    authorization: Optional[str] = Header(None),
    runtime: Runtime = Depends(get_runtime),
) -> AccessTokenClaims:
    return _unwrap(await runtime.authenticator.authenticate(authorization))


def _pair_response(pair: TokenPair) -> TokenPairResponse:
    return TokenPairResponse(**pair.as_dict())


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, runtime: Runtime = Depends(get_runtime)):
    """Exchange e-mail and password for an access/refresh token pair.

    Raises:
        401: If the credentials are invalid or the account is disabled
    """
    # argon2 verification is CPU bound; keep it off the event loop
    user = _unwrap(
        await asyncio.to_thread(runtime.passwords.authenticate, body.email, body.password)
    )
    pair = runtime.refresh_tokens.issue_pair(user.id, user.role)
    logger.info("login_succeeded", user_id=user.id)
    return Envelope(status="ok", data=_pair_response(pair))


@router.post("/auth/token/refresh", response_model=Envelope, tags=["auth"])
async def refresh_token(body: TokenRefreshRequest, runtime: Runtime = Depends(get_runtime)):
    pair = _unwrap(runtime.refresh_tokens.refresh(body.refresh_token))
    return Envelope(status="ok", data=_pair_response(pair))


@router.post("/auth/token/revoke", response_model=Envelope, tags=["auth"])
async def revoke_token(
    body: Optional[TokenRevokeRequest] = None,
    authorization: Optional[str] = Header(None),
    runtime: Runtime = Depends(get_runtime),
):
    """Log out: blacklist the presented access token and drop its refresh token."""
    _unwrap(await runtime.revocations.revoke_access_token(authorization))
    refresh_revoked = False
    if body is not None and body.refresh_token:
        refresh_revoked = runtime.refresh_tokens.revoke(body.refresh_token).ok
    return Envelope(
        status="ok", data={"status": "revoked", "refresh_token_revoked": refresh_revoked}
    )


@router.post("/auth/token/revoke-all", response_model=Envelope, tags=["auth"])
async def revoke_all_tokens(
    principal: AccessTokenClaims = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    count = _unwrap(runtime.refresh_tokens.revoke_all(principal.subject_id))
    return Envelope(status="ok", data={"status": "revoked", "count": count})


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def get_current_principal(
    principal: AccessTokenClaims = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    user = runtime.store.get_user(principal.subject_id)
    return Envelope(
        status="ok",
        data=PrincipalResponse(
            user_id=principal.subject_id,
            role=principal.role,
            jti=principal.jti,
            expires_at=principal.expires_at,
            email=user.email if user else None,
            email_verified=bool(user and user.email_verified),
        ),
    )


@router.post("/auth/password/forgot", response_model=Envelope, tags=["auth"])
async def forgot_password(body: PasswordForgotRequest, runtime: Runtime = Depends(get_runtime)):
    # Same response whether or not the address has an account
    await asyncio.to_thread(runtime.password_reset.request_reset, body.email)
    return Envelope(status="ok", data={"status": "sent"})


@router.post("/auth/password/validate", response_model=Envelope, tags=["auth"])
async def validate_reset_token(
    body: SingleUseTokenRequest, runtime: Runtime = Depends(get_runtime)
):
    _unwrap(runtime.password_reset.validate_token(body.email, body.token))
    return Envelope(status="ok", data={"status": "valid"})


@router.post("/auth/password/reset", response_model=Envelope, tags=["auth"])
async def reset_password(body: PasswordResetConfirm, runtime: Runtime = Depends(get_runtime)):
    _unwrap(
        await asyncio.to_thread(
            runtime.password_reset.reset_password, body.email, body.token, body.new_password
        )
    )
    return Envelope(status="ok", data={"status": "reset"})


@router.post("/auth/email/resend", response_model=Envelope, tags=["auth"])
async def resend_verification(body: EmailResendRequest, runtime: Runtime = Depends(get_runtime)):
    await asyncio.to_thread(runtime.email_verification.request_verification, body.email)
    return Envelope(status="ok", data={"status": "sent"})


@router.post("/auth/email/verify", response_model=Envelope, tags=["auth"])
async def verify_email(body: SingleUseTokenRequest, runtime: Runtime = Depends(get_runtime)):
    _unwrap(runtime.email_verification.verify(body.email, body.token))
    return Envelope(status="ok", data={"status": "verified"})
