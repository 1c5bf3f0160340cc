from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Protocol, Tuple

from photofilter.config import Settings
from photofilter.logging import fingerprint, get_logger, token_prefix
from photofilter.service.authenticator import Principal
from photofilter.service.errors import (
    ConflictError,
    ForbiddenError,
    InvalidCredentialsError,
    InvalidTokenError,
    ServerError,
    TokenExpiredError,
    TokenNotRecognizedError,
    ValidationError,
)
from photofilter.service.passwords import PasswordHasher
from photofilter.service.tokens import ACCESS, REFRESH, LocalTokenCodec, VerifyStatus
from photofilter.storage.errors import ConstraintViolation
from photofilter.storage.models import User


class AuthStore(Protocol):
    """Credential store operations the auth services rely on."""

    def create_user(
        self,
        username: str,
        *,
        password_hash: Optional[str] = None,
        email: Optional[str] = None,
        email_verified: bool = False,
    ) -> User: ...

    def get_user_by_username(self, username: str) -> Optional[User]: ...

    def get_user(self, subject_id: str) -> Optional[User]: ...

    def set_password_hash(self, username: str, password_hash: str) -> Optional[User]: ...

    def add_refresh_token(
        self, username: str, token_fingerprint: str, *, keep: Optional[int] = None
    ) -> bool: ...

    def rotate_refresh_token(
        self,
        username: str,
        old_fingerprint: str,
        new_fingerprint: str,
        *,
        keep: Optional[int] = None,
    ) -> bool: ...

    def clear_refresh_tokens(self, username: str) -> None: ...

    def set_email_verification_token(
        self,
        username: str,
        token: str,
        *,
        issued_at: datetime,
        expires_at: Optional[datetime],
    ) -> Optional[User]: ...

    def consume_email_verification_token(
        self, token: str, *, now: Optional[datetime] = None
    ) -> Optional[User]: ...


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    expires_in: int
    token_type: str = "bearer"


class SessionManager:
    """Registration, login, refresh-token rotation and logout for local accounts.

    Refresh tokens are tracked per user as fingerprints in the credential
    store. A refresh only succeeds if the store atomically swaps the old
    fingerprint for the new one, so each refresh token is redeemable once.
    Logout clears the set; access tokens stay valid until they expire, which
    bounds the exposure window to the access-token TTL.
    """

    def __init__(
        self,
        store: AuthStore,
        codec: LocalTokenCodec,
        hasher: PasswordHasher,
        settings: Settings,
    ) -> None:
        self.store = store
        self.codec = codec
        self.hasher = hasher
        self.settings = settings
        self.logger = get_logger(__name__)
        self.access_ttl = timedelta(minutes=settings.access_token_ttl_minutes)
        self.refresh_ttl = timedelta(minutes=settings.refresh_token_ttl_minutes)
        self.max_refresh_tokens = settings.max_refresh_tokens_per_user

    async def register(
        self, username: str, password: str, email: Optional[str] = None
    ) -> User:
        if not self.settings.allow_signup:
            raise ForbiddenError("signup disabled")
        username = (username or "").strip()
        if not username:
            raise ValidationError("username is required", detail={"field": "username"})
        if not password or len(password) < self.settings.password_min_length:
            raise ValidationError(
                f"password must be at least {self.settings.password_min_length} characters",
                detail={"field": "password"},
            )
        password_hash = self.hasher.hash(password)
        try:
            user = self.store.create_user(
                username,
                password_hash=password_hash,
                email=(email or "").strip() or None,
                email_verified=False,
            )
        except ConstraintViolation as exc:
            raise ConflictError("username already exists", detail=exc.detail) from exc
        self.logger.info("user_registered", subject_id=user.subject_id, has_email=bool(user.email))
        return user

    async def login(self, username: str, password: str) -> Tuple[User, TokenPair]:
        user = self.store.get_user_by_username(username or "")
        if not user or not user.password_hash:
            self.hasher.dummy_verify(password)
            self.logger.info("login_failed", reason="unknown_user")
            raise InvalidCredentialsError()
        if not self.hasher.verify(password, user.password_hash):
            self.logger.info("login_failed", reason="bad_password", subject_id=user.subject_id)
            raise InvalidCredentialsError()
        if self.hasher.needs_rehash(user.password_hash):
            self.store.set_password_hash(user.username, self.hasher.hash(password))
            self.logger.info("password_rehashed", subject_id=user.subject_id)
        pair = await self.issue_session(user)
        self.logger.info("login_succeeded", subject_id=user.subject_id)
        return user, pair

    def _mint_pair(self, user: User) -> Tuple[TokenPair, str]:
        access = self.codec.issue(user, ACCESS, self.access_ttl)
        refresh = self.codec.issue(user, REFRESH, self.refresh_ttl)
        pair = TokenPair(
            access_token=access.token,
            refresh_token=refresh.token,
            access_expires_at=access.expires_at,
            refresh_expires_at=refresh.expires_at,
            expires_in=int(self.access_ttl.total_seconds()),
        )
        return pair, fingerprint(refresh.token)

    async def issue_session(self, user: User) -> TokenPair:
        pair, refresh_fp = self._mint_pair(user)
        if not self.store.add_refresh_token(
            user.username, refresh_fp, keep=self.max_refresh_tokens
        ):
            raise ServerError("user record missing while issuing session")
        return pair

    async def refresh(self, refresh_token: str) -> Tuple[User, TokenPair]:
        result = self.codec.verify(refresh_token, kind=REFRESH)
        if result.status is VerifyStatus.EXPIRED:
            raise TokenExpiredError("refresh token expired")
        if not result.ok:
            self.logger.info(
                "refresh_rejected",
                reason=result.reason,
                token_prefix=token_prefix(refresh_token),
            )
            raise InvalidTokenError("invalid refresh token")

        claims = result.claims
        user = self.store.get_user_by_username(str(claims.get("username", "")))
        if not user or user.subject_id != claims.get("sub"):
            raise TokenNotRecognizedError()
        old_fp = fingerprint(refresh_token)
        if old_fp not in user.refresh_tokens:
            self.logger.info(
                "refresh_token_not_on_file",
                subject_id=user.subject_id,
                token_fingerprint=old_fp[:12],
            )
            raise TokenNotRecognizedError()

        pair, new_fp = self._mint_pair(user)
        if not self.store.rotate_refresh_token(
            user.username, old_fp, new_fp, keep=self.max_refresh_tokens
        ):
            # A concurrent refresh consumed the same token first
            self.logger.info("refresh_rotation_lost_race", subject_id=user.subject_id)
            raise TokenNotRecognizedError()
        self.logger.info("refresh_rotated", subject_id=user.subject_id)
        return user, pair

    async def logout(self, principal: Principal) -> None:
        user = self.store.get_user_by_username(principal.username)
        if not user or user.subject_id != principal.subject_id:
            # External identities have no local refresh tokens to revoke
            self.logger.info("logout_no_local_account", source=principal.source)
            return
        self.store.clear_refresh_tokens(user.username)
        self.logger.info("logout", subject_id=user.subject_id)


__all__ = ["AuthStore", "SessionManager", "TokenPair"]
