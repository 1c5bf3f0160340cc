from __future__ import annotations

import asyncio
from typing import Optional

from fastapi import APIRouter, Depends, Header, Query

from photofilter.api.schemas import (
    AuthResponse,
    Envelope,
    LoginRequest,
    ProfileResponse,
    RefreshRequest,
    RegisterRequest,
    ResendVerificationRequest,
    ShareCreateRequest,
    SharedResourceResponse,
    ShareResponse,
    TokenResponse,
    UserResponse,
)
from photofilter.logging import get_logger
from photofilter.service.authenticator import Principal
from photofilter.service.errors import NotFoundError
from photofilter.service.runtime import get_runtime
from photofilter.service.sessions import TokenPair
from photofilter.storage.models import User

logger = get_logger(__name__)

router = APIRouter(prefix="/api")


def _user_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.subject_id,
        username=user.username,
        email=user.email,
        email_verified=user.email_verified,
        created_at=user.created_at,
    )


def _token_response(pair: TokenPair) -> TokenResponse:
    return TokenResponse(
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        token_type=pair.token_type,
        expires_in=pair.expires_in,
        access_expires_at=pair.access_expires_at,
        refresh_expires_at=pair.refresh_expires_at,
    )


async def get_principal(authorization: Optional[str] = Header(None)) -> Principal:
    """Resolve the bearer token; missing or expired -> 401, invalid -> 403."""
    runtime = get_runtime()
    return await runtime.authenticator.authenticate_header(authorization)


async def _send_verification(runtime, user: User) -> bool:
    token = await runtime.email_verification.issue(user)
    return await asyncio.to_thread(
        runtime.email.send_email_verification,
        user.email,
        user.username,
        token,
        ttl_hours=runtime.settings.email_verification_ttl_hours,
    )


@router.get("/health", response_model=Envelope, tags=["system"])
async def health():
    return Envelope(status="ok", data={"status": "healthy"})


@router.post("/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest):
    """Create a local account.

    When an email is given a verification link is sent and session tokens
    are only returned if that email went out.

    Raises:
        400: If the password is too short
        403: If signup is disabled
        409: If the username is taken
    """
    runtime = get_runtime()
    user = await runtime.sessions.register(body.username, body.password, body.email)
    email_sent = False
    if user.email:
        email_sent = await _send_verification(runtime, user)
    tokens = None
    if not user.email or email_sent:
        tokens = _token_response(await runtime.sessions.issue_session(user))
    if not user.email:
        message = "User registered successfully"
    elif email_sent:
        message = "User registered successfully. Please check your email to verify your account."
    else:
        message = "User registered successfully, but verification email could not be sent."
    return Envelope(
        status="ok",
        data=AuthResponse(
            user=_user_response(user),
            tokens=tokens,
            email_verification_required=bool(user.email),
            email_sent=email_sent,
            message=message,
        ),
    )


@router.post("/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest):
    runtime = get_runtime()
    user, pair = await runtime.sessions.login(body.username, body.password)
    return Envelope(
        status="ok",
        data=AuthResponse(
            user=_user_response(user),
            tokens=_token_response(pair),
            message="Login successful",
        ),
    )


@router.post("/refresh", response_model=Envelope, tags=["auth"])
async def refresh(body: RefreshRequest):
    """Exchange a refresh token for a new pair.

    Raises:
        401: If the refresh token is expired
        403: If it is invalid, revoked or already used
    """
    runtime = get_runtime()
    user, pair = await runtime.sessions.refresh(body.refresh_token)
    return Envelope(
        status="ok",
        data=AuthResponse(
            user=_user_response(user),
            tokens=_token_response(pair),
            message="Token refreshed successfully",
        ),
    )


@router.post("/logout", response_model=Envelope, tags=["auth"])
async def logout(principal: Principal = Depends(get_principal)):
    runtime = get_runtime()
    await runtime.sessions.logout(principal)
    return Envelope(status="ok", data={"message": "Logged out successfully"})


@router.get("/verify-email", response_model=Envelope, tags=["auth"])
async def verify_email(token: str = Query(..., min_length=1, max_length=256)):
    runtime = get_runtime()
    user = await runtime.email_verification.consume(token)
    pair = await runtime.sessions.issue_session(user)
    return Envelope(
        status="ok",
        data=AuthResponse(
            user=_user_response(user),
            tokens=_token_response(pair),
            message="Email verified successfully! You can now use all features.",
        ),
    )


@router.post("/resend-verification", response_model=Envelope, tags=["auth"])
async def resend_verification(body: ResendVerificationRequest):
    runtime = get_runtime()
    user = runtime.store.get_user_by_username(body.username)
    if not user:
        raise NotFoundError("user not found")
    email_sent = await _send_verification(runtime, user)
    return Envelope(
        status="ok",
        data={
            "email_sent": email_sent,
            "message": (
                "Verification email sent successfully"
                if email_sent
                else "Failed to send verification email"
            ),
        },
    )


@router.get("/profile", response_model=Envelope, tags=["auth"])
async def profile(principal: Principal = Depends(get_principal)):
    return Envelope(
        status="ok",
        data=ProfileResponse(
            id=principal.subject_id,
            username=principal.username,
            email=principal.email,
            email_verified=principal.email_verified,
            source=principal.source,
        ),
    )


@router.post("/shares", response_model=Envelope, status_code=201, tags=["shares"])
async def create_share(
    body: ShareCreateRequest, principal: Principal = Depends(get_principal)
):
    runtime = get_runtime()
    grant = await runtime.shares.create(
        principal, body.resource_id, body.variant, body.ttl_hours
    )
    base_url = runtime.settings.app_base_url.rstrip("/")
    return Envelope(
        status="ok",
        data=ShareResponse(
            token=grant.token,
            resource_id=grant.resource_id,
            variant=grant.resource_variant,
            expires_at=grant.expires_at,
            url=f"{base_url}/api/shares/{grant.token}",
        ),
    )


@router.get("/shares/{token}", response_model=Envelope, tags=["shares"])
async def resolve_share(token: str):
    """Anonymous, read-only lookup of the single resource variant a link grants."""
    runtime = get_runtime()
    grant = await runtime.shares.resolve(token)
    return Envelope(
        status="ok",
        data=SharedResourceResponse(
            resource_id=grant.resource_id,
            variant=grant.resource_variant,
            expires_at=grant.expires_at,
        ),
    )
